"""
auth/service.py -- Login and multi-factor verification orchestration.

AuthService is the single entry point the API layer talks to. It wires the
components together in the order the login state machine requires:

    login:      login limiter -> bcrypt -> (trusted device | pending token | session)
                failures also feed the per-address brute-force monitor
    mfa_verify: pending token -> MFA limiter -> hold token -> TOTP or recovery code
                -> optional trusted device -> session
    change_password: login limiter -> bcrypt -> new hash

Every verification outcome is RETURNED as either a result object from
auth.models or an AuthFailure from auth.errors. Nothing here raises for a bad
password or a wrong code; exceptions are reserved for infrastructure faults
(database unavailable), which propagate unchanged and are never retried.

Audit events are emitted on success and failure paths alike. They carry the
client IP and user agent but never passwords, codes, or tokens, and a failing
audit sink can never change an authentication outcome.
"""

from __future__ import annotations

import logging
from typing import Literal

from auth.audit import AuditSink, emit, log_failed_login, log_successful_login
from auth.clock import Clock, SystemClock
from auth.devices import TrustedDeviceStore
from auth.errors import (
    AuthFailure,
    DeviceNotFound,
    InvalidCode,
    InvalidCredentials,
    InvalidNewPassword,
    InvalidPendingToken,
    MfaAlreadyEnabled,
    MfaNotConfigured,
    RateLimited,
)
from auth.models import (
    Account,
    AuditEvent,
    ClientInfo,
    MfaSetup,
    MfaStatus,
    PendingMfa,
    SessionGrant,
    TrustedDevice,
)
from auth.monitor import FailedLoginMonitor
from auth.ratelimit import RateLimiter
from auth.recovery import RecoveryCodeVault, looks_like_recovery_code
from auth.store import AccountStore
from auth.tokens import SessionIssuer, burn_password_check, hash_password, password_too_long, verify_password
from auth.totp import TOTPManager, normalize_code
from core.config import Settings

logger = logging.getLogger("timetrack.auth.service")

# Login limiter bucket for identifiers that match no account. Keeps unknown
# identifiers rate-limited per client without keying on the raw string.
_UNKNOWN_ACCOUNT = "-"


class AuthService:
    """Password login, TOTP / recovery-code second factor, trusted devices.

    Usage:
        service = AuthService(store, settings, audit=StoreAuditSink(store))
        await service.start()
        result = service.login("alice", "s3cret", ClientInfo("203.0.113.7", ua))
        if isinstance(result, PendingMfa):
            result = service.mfa_verify(result.pending_token, "123456", False, client)
        await service.stop()
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        mfa_limiter: RateLimiter | None = None,
        login_limiter: RateLimiter | None = None,
        monitor: FailedLoginMonitor | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.audit = audit
        self.mfa_limiter = mfa_limiter or self._make_limiter("mfa")
        self.login_limiter = login_limiter or self._make_limiter("login")
        self.monitor = monitor or FailedLoginMonitor(
            threshold=settings.brute_force_threshold,
            window_seconds=settings.brute_force_window_seconds,
            alert_cooldown_seconds=settings.brute_force_alert_cooldown_seconds,
            clock=self.clock,
            audit=audit,
        )
        self.totp = TOTPManager(clock=self.clock, issuer=settings.app_name)
        self.recovery = RecoveryCodeVault(
            store, count=settings.recovery_code_count, bcrypt_rounds=settings.recovery_code_bcrypt_rounds
        )
        self.devices = TrustedDeviceStore(
            store, settings.secret_key, trust_days=settings.trusted_device_days, clock=self.clock
        )
        self.issuer = SessionIssuer(settings, clock=self.clock)

    def _make_limiter(self, name: str) -> RateLimiter:
        return RateLimiter(
            name=name,
            max_attempts=self.settings.mfa_max_attempts,
            window_seconds=self.settings.mfa_window_seconds,
            lockout_seconds=self.settings.mfa_lockout_seconds,
            sweep_interval_seconds=self.settings.rate_limit_sweep_seconds,
            key_policy=self.settings.rate_limit_key_policy,
            clock=self.clock,
        )

    async def start(self) -> None:
        await self.mfa_limiter.start()
        await self.login_limiter.start()
        await self.monitor.start()

    async def stop(self) -> None:
        await self.mfa_limiter.stop()
        await self.login_limiter.stop()
        await self.monitor.stop()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit(self, action: str, account_id: int | None, client: ClientInfo, **details) -> None:
        emit(
            self.audit,
            AuditEvent(
                action=action,
                account_id=account_id,
                timestamp=self.clock.now(),
                details=details,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
        )

    def _grant_session(
        self,
        account: Account,
        client: ClientInfo,
        device_token: str | None = None,
        trusted_device: bool = False,
        **details,
    ) -> SessionGrant:
        self.store.update_last_login(account.id, self.clock.now())
        log_successful_login(client.ip_address, account.username)
        self._audit("user.login", account.id, client, username=account.username, **details)
        issued = self.issuer.issue_session(account)
        return SessionGrant(
            session_token=issued.token,
            expires_in=issued.expires_in,
            account=account,
            device_token=device_token,
            trusted_device=trusted_device,
        )

    def _reauthenticate(self, account: Account, password: str, code: str, client: ClientInfo) -> AuthFailure | None:
        """Check password AND current TOTP code for a sensitive MFA change.

        Both checks share the MFA limiter bucket, so a stolen session cannot
        be used to brute-force either factor.
        """
        key = self.mfa_limiter.build_key(client.ip_address, account.id)
        decision = self.mfa_limiter.check_limit(key)
        if not decision.allowed:
            return RateLimited(retry_after=decision.retry_after)
        if not verify_password(password, account.hashed_password):
            self.mfa_limiter.record_attempt(key, False)
            return InvalidCredentials()
        if not self.totp.verify(code, account.mfa_secret):
            attempts_left = self.mfa_limiter.record_attempt(key, False)
            return InvalidCode(attempts_left=attempts_left)
        self.mfa_limiter.record_attempt(key, True)
        return None

    # ------------------------------------------------------------------
    # Session resolution (used by the API dependencies)
    # ------------------------------------------------------------------

    def authenticate_session(self, token: str) -> Account | None:
        """Resolve a session token to an active account. Pending tokens never resolve."""
        claims = self.issuer.decode_session(token)
        if claims is None:
            return None
        account = self.store.get_by_id(claims["account_id"])
        if account is None or not account.is_active:
            return None
        return account

    def authenticate_setup(self, token: str) -> Account | None:
        """Resolve either a session or a pending-MFA token, for MFA setup only."""
        account = self.authenticate_session(token)
        if account is not None:
            return account
        claims = self.issuer.decode_pending(token)
        if claims is None:
            return None
        account = self.store.get_by_id(claims["account_id"])
        if account is None or not account.is_active:
            return None
        return account

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        client: ClientInfo,
        device_token: str | None = None,
    ) -> SessionGrant | PendingMfa | AuthFailure:
        """Verify a password and decide what the caller gets next.

        MFA not enabled           -> SessionGrant
        MFA enabled, trusted dev. -> SessionGrant (trusted_device=True)
        MFA enabled               -> PendingMfa, no protected capability
        Anything wrong            -> InvalidCredentials (or RateLimited)
        """
        account = self.store.get_by_identifier(identifier)
        key = self.login_limiter.build_key(client.ip_address, account.id if account else _UNKNOWN_ACCOUNT)

        decision = self.login_limiter.check_limit(key)
        if not decision.allowed:
            log_failed_login(client.ip_address, identifier)
            self.monitor.record_failure(client.ip_address, identifier, client.user_agent)
            self._audit(
                "user.login_rate_limited", account.id if account else None, client, identifier=identifier
            )
            return RateLimited(retry_after=decision.retry_after)

        if account is None:
            # Equalize timing with the wrong-password path.
            burn_password_check(password)
            valid = False
        else:
            valid = verify_password(password, account.hashed_password) and account.is_active
        self.login_limiter.record_attempt(key, valid)

        if not valid:
            log_failed_login(client.ip_address, identifier)
            self.monitor.record_failure(client.ip_address, identifier, client.user_agent)
            self._audit("user.login_failed", account.id if account else None, client, identifier=identifier)
            return InvalidCredentials()

        self.monitor.record_success(client.ip_address)

        if account.mfa_enabled:
            if device_token and self.devices.check(account.id, device_token):
                logger.info("MFA skipped for trusted device of account %s", account.id)
                return self._grant_session(account, client, trusted_device=True, mfa=False, device_trusted=True)

            pending = self.issuer.issue_pending(account)
            logger.info("MFA required for account %s", account.id)
            self._audit("user.login_mfa_required", account.id, client, username=account.username)
            return PendingMfa(pending_token=pending.token, expires_in=pending.expires_in, account=account)

        return self._grant_session(account, client, mfa=False)

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(
        self, account_id: int, current_password: str, new_password: str, client: ClientInfo
    ) -> Literal[True] | AuthFailure:
        """Replace the password of a signed-in account.

        The current password is checked behind the login limiter with the
        same key a login from this client would use, so a stolen session
        cannot be turned into a password oracle that dodges the lockout.
        Existing sessions stay valid until they expire.
        """
        account = self.store.get_by_id(account_id)
        if account is None or not account.is_active:
            return InvalidCredentials()

        key = self.login_limiter.build_key(client.ip_address, account.id)
        decision = self.login_limiter.check_limit(key)
        if not decision.allowed:
            self._audit("user.change_password_rate_limited", account.id, client, retry_after=decision.retry_after)
            return RateLimited(retry_after=decision.retry_after)

        valid = verify_password(current_password, account.hashed_password)
        self.login_limiter.record_attempt(key, valid)
        if not valid:
            log_failed_login(client.ip_address, account.username)
            self._audit("user.change_password_failed", account.id, client)
            return InvalidCredentials()

        if password_too_long(new_password) or not new_password or new_password == current_password:
            return InvalidNewPassword()

        new_hash = hash_password(new_password, rounds=self.settings.password_bcrypt_rounds)
        if not self.store.update_password(account.id, account.hashed_password, new_hash):
            # A concurrent change replaced the hash after we verified it.
            return InvalidCredentials()

        logger.info("Password changed for account %s", account.id)
        self._audit("user.change_password", account.id, client)
        return True

    # ------------------------------------------------------------------
    # MFA enrolment
    # ------------------------------------------------------------------

    def mfa_status(self, account_id: int) -> MfaStatus:
        account = self.store.get_by_id(account_id)
        return account.mfa_status if account is not None else MfaStatus.UNCONFIGURED

    def mfa_setup(self, account_id: int, client: ClientInfo) -> MfaSetup | AuthFailure:
        """Start enrolment: new secret + new recovery codes, MFA stays off until confirmed.

        Calling this again before confirming replaces the pending secret and
        the recovery codes; codes for the old secret stop working.
        """
        account = self.store.get_by_id(account_id)
        if account is None:
            return InvalidCredentials()
        if account.mfa_enabled:
            return MfaAlreadyEnabled()

        secret = self.totp.generate_secret()
        codes = self.recovery.generate()
        if not self.store.begin_mfa_setup(account.id, secret, self.recovery.hash_codes(codes)):
            return MfaAlreadyEnabled()

        uri = self.totp.provisioning_uri(secret, account.email or account.username)
        self._audit("mfa.setup_started", account.id, client)
        return MfaSetup(
            secret=secret,
            provisioning_uri=uri,
            qr_code=self.totp.qr_code_data_url(uri),
            recovery_codes=codes,
        )

    def mfa_confirm_setup(self, account_id: int, code: str, client: ClientInfo) -> Literal[True] | AuthFailure:
        """Second phase of enrolment: a valid code for the pending secret turns MFA on."""
        account = self.store.get_by_id(account_id)
        if account is None:
            return InvalidCredentials()
        if account.mfa_enabled:
            return MfaAlreadyEnabled()
        if account.mfa_status is not MfaStatus.PENDING_CONFIRMATION or not account.mfa_secret:
            return MfaNotConfigured()

        key = self.mfa_limiter.build_key(client.ip_address, account.id)
        decision = self.mfa_limiter.check_limit(key)
        if not decision.allowed:
            return RateLimited(retry_after=decision.retry_after)

        valid = self.totp.verify(code, account.mfa_secret)
        attempts_left = self.mfa_limiter.record_attempt(key, valid)
        if not valid:
            return InvalidCode(attempts_left=attempts_left)

        if not self.store.enable_mfa(account.id, account.mfa_secret):
            # A concurrent setup replaced the secret, or a concurrent confirm won.
            if self.mfa_status(account.id) is MfaStatus.ENABLED:
                return MfaAlreadyEnabled()
            return InvalidCode(attempts_left=attempts_left)

        logger.info("MFA enabled for account %s", account.id)
        self._audit("mfa.enabled", account.id, client)
        return True

    def mfa_disable(self, account_id: int, password: str, code: str, client: ClientInfo) -> Literal[True] | AuthFailure:
        """Turn MFA off. Requires the password and a current TOTP code.

        Clears the secret and recovery codes and revokes every trusted device,
        so re-enrolling later starts from a clean slate.
        """
        account = self.store.get_by_id(account_id)
        if account is None:
            return InvalidCredentials()
        if not account.mfa_enabled:
            return MfaNotConfigured()

        failure = self._reauthenticate(account, password, code, client)
        if failure is not None:
            return failure

        self.store.disable_mfa(account.id)
        revoked = self.devices.revoke_all(account.id)
        logger.info("MFA disabled for account %s (%d trusted devices revoked)", account.id, revoked)
        self._audit("mfa.disabled", account.id, client, devices_revoked=revoked)
        return True

    # ------------------------------------------------------------------
    # Second factor at login
    # ------------------------------------------------------------------

    def mfa_verify(
        self,
        pending_token: str,
        code: str,
        trust_device: bool,
        client: ClientInfo,
    ) -> SessionGrant | AuthFailure:
        """Exchange a pending token plus a TOTP or recovery code for a session.

        The limiter is consulted before any code is checked and the outcome is
        recorded after. A malformed, expired, already-used, or session-typed
        token fails before the limiter is touched.
        """
        claims = self.issuer.decode_pending(pending_token)
        if claims is None:
            return InvalidPendingToken()
        account_id = claims["account_id"]

        key = self.mfa_limiter.build_key(client.ip_address, account_id)
        decision = self.mfa_limiter.check_limit(key)
        if not decision.allowed:
            logger.warning("MFA rate limit exceeded for account %s from %s", account_id, client.ip_address)
            log_failed_login(client.ip_address, f"mfa:{account_id}")
            self._audit("mfa.rate_limited", account_id, client, retry_after=decision.retry_after)
            return RateLimited(retry_after=decision.retry_after)

        account = self.store.get_by_id(account_id)
        if account is None or not account.is_active:
            return InvalidPendingToken()
        if not account.mfa_enabled:
            return MfaNotConfigured()

        # Hold the token before checking the code. A second request racing on
        # the same token is refused here and can never burn a recovery code.
        if not self.issuer.spend_pending(claims):
            return InvalidPendingToken()

        submitted = normalize_code(code)
        used_recovery_code = looks_like_recovery_code(submitted)
        if used_recovery_code:
            valid = self.recovery.consume(account.id, submitted)
        else:
            valid = self.totp.verify(submitted, account.mfa_secret)

        attempts_left = self.mfa_limiter.record_attempt(key, valid)
        if not valid:
            self.issuer.release_pending(claims)
            logger.info("MFA: invalid code for account %s (%d attempts left)", account.id, attempts_left)
            self._audit("mfa.verify_failed", account.id, client, attempts_left=attempts_left)
            return InvalidCode(attempts_left=attempts_left)

        if used_recovery_code:
            self._audit("mfa.recovery_code_used", account.id, client)

        device_token = None
        if trust_device:
            device_token, device = self.devices.issue(account.id, client)
            self._audit("mfa.device_trusted", account.id, client, device_id=device.id, device_name=device.device_name)

        return self._grant_session(
            account,
            client,
            device_token=device_token,
            mfa=True,
            recovery_code=used_recovery_code,
            device_trusted=trust_device,
        )

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def recovery_codes_remaining(self, account_id: int) -> int | AuthFailure:
        account = self.store.get_by_id(account_id)
        if account is None or not account.mfa_enabled:
            return MfaNotConfigured()
        return len(account.recovery_code_hashes)

    def regenerate_recovery_codes(
        self, account_id: int, password: str, code: str, client: ClientInfo
    ) -> list[str] | AuthFailure:
        """Issue a fresh set of recovery codes, invalidating every previous one at once."""
        account = self.store.get_by_id(account_id)
        if account is None:
            return InvalidCredentials()
        if not account.mfa_enabled:
            return MfaNotConfigured()

        failure = self._reauthenticate(account, password, code, client)
        if failure is not None:
            return failure

        codes = self.recovery.generate()
        self.recovery.persist(account.id, codes)
        self._audit("mfa.recovery_codes_regenerated", account.id, client, count=len(codes))
        return codes

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def list_trusted_devices(self, account_id: int) -> list[TrustedDevice]:
        return self.devices.list(account_id)

    def revoke_trusted_device(self, account_id: int, device_id: str, client: ClientInfo) -> Literal[True] | AuthFailure:
        if not self.devices.revoke(account_id, device_id):
            return DeviceNotFound()
        self._audit("mfa.device_revoked", account_id, client, device_id=device_id)
        return True

    def revoke_all_trusted_devices(self, account_id: int, client: ClientInfo) -> int:
        count = self.devices.revoke_all(account_id)
        self._audit("mfa.all_devices_revoked", account_id, client, count=count)
        return count
