"""
tests/support.py -- Test doubles and builders shared by the test modules.

Fixtures live in conftest.py; plain helpers that tests call directly live
here so they can be imported by name.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from auth.models import Account, AuditEvent, ClientInfo, MfaSetup
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import Settings

PASSWORD = "correct horse battery staple"
CLIENT = ClientInfo(
    ip_address="203.0.113.7",
    user_agent=(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
)


class ManualClock:
    """Clock for deterministic expiry tests. Starts mid-TOTP-step."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, 10, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ListAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, audit_event: AuditEvent) -> None:
        self.events.append(audit_event)

    @property
    def actions(self) -> list[str]:
        return [e.action for e in self.events]


def make_store(db_suffix: str | None = None) -> AccountStore:
    """Create an isolated named shared-memory SQLite store."""
    suffix = db_suffix or uuid.uuid4().hex
    return AccountStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {"secret_key": "t" * 40, "recovery_code_bcrypt_rounds": 4, "password_bcrypt_rounds": 4, "debug": True}
    values.update(overrides)
    return Settings(**values)


def make_account(store: AccountStore, username: str = "alice", email: str | None = "alice@example.com") -> Account:
    """Insert an account with PASSWORD (cheap bcrypt cost) and return it with its id."""
    account_id = store.create_account(
        Account(username=username, email=email, hashed_password=hash_password(PASSWORD, rounds=4))
    )
    return store.get_by_id(account_id)


def enable_mfa(service: AuthService, account_id: int, client: ClientInfo = CLIENT) -> MfaSetup:
    """Run setup + confirm and return the enrolment material."""
    setup = service.mfa_setup(account_id, client)
    assert isinstance(setup, MfaSetup)
    assert service.mfa_confirm_setup(account_id, service.totp.code_at(setup.secret), client) is True
    return setup


def new_api_account(service: AuthService) -> Account:
    """Create a uniquely named account for API tests sharing one module-scoped service."""
    return make_account(service.store, username=f"user_{uuid.uuid4().hex[:10]}", email=None)


def wrong_code(service: AuthService, secret: str) -> str:
    """Return a 6-digit code that is not valid anywhere in the current window."""
    valid = {service.totp.code_at(secret, offset) for offset in (-1, 0, 1)}
    candidate = int(service.totp.code_at(secret))
    while f"{candidate:06d}" in valid:
        candidate = (candidate + 1) % 1_000_000
    return f"{candidate:06d}"
