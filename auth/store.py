"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_device are the mappers.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  MFA state transitions are conditional UPDATEs. enable_mfa() only flips an
  account to ENABLED when the stored secret is still the one the confirming
  code was checked against, and swap_recovery_codes() only writes when the
  stored list is unchanged since it was read. A concurrent writer makes the
  update affect zero rows instead of silently overwriting.

  Trusted devices store HMAC-SHA256 of the device token, never the raw token.

Timestamps: every time-dependent write takes an explicit datetime from the
caller's injected clock. created_at on users uses wall-clock time.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Account, AuditEvent, MfaStatus, TrustedDevice

logger = logging.getLogger("timetrack.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("account_type", String(30), nullable=False, server_default="personal"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("mfa_status", String(30), nullable=False, server_default=MfaStatus.UNCONFIGURED.value),
    Column("mfa_secret", String(64)),
    Column("mfa_recovery_codes", Text),  # JSON array of bcrypt hashes, ordered
)

_trusted_devices = Table(
    "trusted_devices",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("device_name", String(255), nullable=False),
    Column("browser", String(100), nullable=False),
    Column("os", String(100), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("last_used_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL when the identifier matched no account
    Column("action", String(64), nullable=False),
    Column("details", Text, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("timestamp", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, TrustedDevice and audit rows.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(username="alice", hashed_password=hash_password("s3cret")))
        account = store.get_by_identifier("ALICE")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("Database ping failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=account.username,
                    email=account.email,
                    hashed_password=account.hashed_password,
                    account_type=account.account_type,
                    created_at=_iso(datetime.now(timezone.utc)),
                    is_active=1 if account.is_active else 0,
                    mfa_status=account.mfa_status.value,
                    mfa_secret=account.mfa_secret,
                    mfa_recovery_codes=json.dumps(account.recovery_code_hashes),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_identifier(self, identifier: str) -> Account | None:
        """Look up an account by username or email, case-insensitively."""
        needle = identifier.strip().lower()
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where(or_(func.lower(_users.c.username) == needle, func.lower(_users.c.email) == needle))
                .order_by(_users.c.id)
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_last_login(self, account_id: int, when: datetime) -> None:
        """Stamp last_login after every successful full authentication."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == account_id).values(last_login=_iso(when)))
            conn.commit()

    def update_password(self, account_id: int, expected_hash: str, new_hash: str) -> bool:
        """Replace the password hash only if it is still `expected_hash`.

        Two concurrent changes that both verified the same current password
        cannot both win.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == account_id) & (_users.c.hashed_password == expected_hash))
                .values(hashed_password=new_hash)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # MFA state transitions
    # ------------------------------------------------------------------

    def begin_mfa_setup(self, account_id: int, secret: str, code_hashes: list[str]) -> bool:
        """Store a fresh secret and recovery codes, moving to PENDING_CONFIRMATION.

        Refuses (returns False) when the account is already ENABLED, so a
        racing setup can never replace the secret of a confirmed enrolment.
        Calling this twice before confirming replaces the pending secret.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == account_id) & (_users.c.mfa_status != MfaStatus.ENABLED.value))
                .values(
                    mfa_status=MfaStatus.PENDING_CONFIRMATION.value,
                    mfa_secret=secret,
                    mfa_recovery_codes=json.dumps(code_hashes),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def enable_mfa(self, account_id: int, secret: str) -> bool:
        """Flip PENDING_CONFIRMATION -> ENABLED if the stored secret is still `secret`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == account_id)
                    & (_users.c.mfa_status == MfaStatus.PENDING_CONFIRMATION.value)
                    & (_users.c.mfa_secret == secret)
                )
                .values(mfa_status=MfaStatus.ENABLED.value)
            )
            conn.commit()
        return result.rowcount > 0

    def disable_mfa(self, account_id: int) -> bool:
        """Return to UNCONFIGURED and clear the secret and recovery codes."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(mfa_status=MfaStatus.UNCONFIGURED.value, mfa_secret=None, mfa_recovery_codes=json.dumps([]))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def get_recovery_code_hashes(self, account_id: int) -> list[str]:
        with self.engine.connect() as conn:
            raw = conn.execute(
                select(_users.c.mfa_recovery_codes).where(_users.c.id == account_id)
            ).scalar()
        return json.loads(raw) if raw else []

    def replace_recovery_codes(self, account_id: int, code_hashes: list[str]) -> bool:
        """Replace the whole list in one statement. Never appends."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(mfa_recovery_codes=json.dumps(code_hashes))
            )
            conn.commit()
        return result.rowcount > 0

    def swap_recovery_codes(self, account_id: int, expected: list[str], replacement: list[str]) -> bool:
        """Compare-and-swap the recovery code list.

        Writes `replacement` only if the stored list still serializes to
        `expected`. Returns False if another writer got there first, in which
        case nothing is modified.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == account_id) & (_users.c.mfa_recovery_codes == json.dumps(expected)))
                .values(mfa_recovery_codes=json.dumps(replacement))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _trusted_devices.insert().values(
                    id=device.id,
                    user_id=device.account_id,
                    token_hash=device.token_hash,
                    device_name=device.device_name,
                    browser=device.browser,
                    os=device.os,
                    ip_address=device.ip_address,
                    created_at=_iso(device.created_at),
                    last_used_at=_iso(device.last_used_at),
                    expires_at=_iso(device.expires_at),
                )
            )
            conn.commit()

    def get_trusted_device(self, account_id: int, token_hash: str) -> TrustedDevice | None:
        """Look up a device by its token hash, scoped to the owning account."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _trusted_devices.select().where(
                    (_trusted_devices.c.user_id == account_id) & (_trusted_devices.c.token_hash == token_hash)
                )
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def touch_trusted_device(self, device_id: str, when: datetime) -> None:
        """Update last_used_at only. expires_at is never modified after creation."""
        with self.engine.connect() as conn:
            conn.execute(
                _trusted_devices.update().where(_trusted_devices.c.id == device_id).values(last_used_at=_iso(when))
            )
            conn.commit()

    def list_trusted_devices(self, account_id: int) -> list[TrustedDevice]:
        """Return every device row for an account, expired ones included."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _trusted_devices.select().where(_trusted_devices.c.user_id == account_id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def delete_trusted_device(self, account_id: int, device_id: str) -> bool:
        """Delete one device. account_id is part of the WHERE clause to prevent IDOR."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _trusted_devices.delete().where(
                    (_trusted_devices.c.id == device_id) & (_trusted_devices.c.user_id == account_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_trusted_devices(self, account_id: int) -> int:
        """Delete every device of an account. Returns the number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_trusted_devices.delete().where(_trusted_devices.c.user_id == account_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def append_audit(self, audit_event: AuditEvent) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    user_id=audit_event.account_id,
                    action=audit_event.action,
                    details=json.dumps(audit_event.details, default=str),
                    ip_address=audit_event.ip_address,
                    user_agent=audit_event.user_agent,
                    timestamp=_iso(audit_event.timestamp),
                )
            )
            conn.commit()

    def recent_audit_actions(self, account_id: int, limit: int = 50) -> list[str]:
        """Return the newest audit actions for an account, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_audit_logs.c.action)
                .where(_audit_logs.c.user_id == account_id)
                .order_by(_audit_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [r.action for r in rows]

    def recent_audit_events(self, action: str, limit: int = 50) -> list[AuditEvent]:
        """Return the newest events of one action across all accounts, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_audit_logs)
                .where(_audit_logs.c.action == action)
                .order_by(_audit_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        account_type=row.account_type,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
        mfa_status=MfaStatus(row.mfa_status),
        mfa_secret=row.mfa_secret,
        recovery_code_hashes=json.loads(row.mfa_recovery_codes) if row.mfa_recovery_codes else [],
    )


def _row_to_device(row) -> TrustedDevice:
    return TrustedDevice(
        id=row.id,
        account_id=row.user_id,
        token_hash=row.token_hash,
        device_name=row.device_name,
        browser=row.browser,
        os=row.os,
        ip_address=row.ip_address,
        created_at=_parse(row.created_at),
        last_used_at=_parse(row.last_used_at),
        expires_at=_parse(row.expires_at),
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        action=row.action,
        account_id=row.user_id,
        timestamp=_parse(row.timestamp),
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )
