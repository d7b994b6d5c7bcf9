"""
auth/tokens.py -- JWT sessions, pending-MFA tokens, password hashing, device tokens.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds are minted by SessionIssuer:
       - session tokens carry typ="session" and grant access to protected routes.
       - pending tokens carry mfa_pending=true and a jti, and are accepted ONLY
         by the MFA-verify operation.
       Each decoder rejects the other kind explicitly. Expiry is checked against
       the injected clock rather than jose's internal wall-clock check so the
       whole subsystem shares one notion of "now".

  Pending tokens are single use: a successful MFA verification records the jti
  as spent until the token would have expired anyway.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in the login path so response time does not
       reveal whether an identifier exists.

  Device tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1). bcrypt's
       intentional slowness is unnecessary for high-entropy tokens.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.clock import Clock, SystemClock
from auth.models import IssuedToken

if TYPE_CHECKING:
    from auth.models import Account
    from core.config import Settings

logger = logging.getLogger("timetrack.auth")

_ALGORITHM = "HS256"
_SESSION_TYPE = "session"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt only looks at the first 72 bytes, and bcrypt >= 5 refuses longer input.
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext.

    Also used for recovery codes with a lower cost factor. Callers reject
    over-long passwords up front (request models, CLI prompt); reaching here
    with one is a programming error and raises ValueError.
    """
    if password_too_long(plain):
        raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    Over-long input can never have been hashed, so it is a plain mismatch.
    """
    if password_too_long(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB. Treat as a mismatch, never as a match.
        logger.warning("Stored bcrypt hash could not be parsed")
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# identifier does not exist.
_DUMMY_HASH: str = hash_password("timetrack_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded (unknown identifier path)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Device tokens
# ---------------------------------------------------------------------------


def generate_device_token() -> str:
    """Return a new raw trusted-device token (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def hash_device_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string.

    Keyed with SECRET_KEY so a leaked database alone does not let an attacker
    match tokens offline.
    """
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT issuer
# ---------------------------------------------------------------------------


class SessionIssuer:
    """Mints and validates session and pending-MFA tokens.

    Usage:
        issuer = SessionIssuer(settings)
        pending = issuer.issue_pending(account)
        claims = issuer.decode_pending(pending.token)     # None if invalid
        issuer.spend_pending(claims)                      # True exactly once
        issuer.release_pending(claims)                    # after a wrong code
    """

    def __init__(self, settings: Settings, clock: Clock | None = None) -> None:
        self._secret_key = settings.secret_key
        self._session_seconds = settings.session_expire_seconds
        self._pending_seconds = settings.mfa_pending_expire_seconds
        self._clock = clock or SystemClock()
        self._spent: dict[str, int] = {}  # jti -> exp (epoch seconds)
        self._spent_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_session(self, account: Account) -> IssuedToken:
        now = self._clock.now()
        payload = {
            "sub": account.username,
            "account_id": account.id,
            "account_type": account.account_type,
            "typ": _SESSION_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._session_seconds)).timestamp()),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return IssuedToken(token=token, expires_in=self._session_seconds)

    def issue_pending(self, account: Account) -> IssuedToken:
        now = self._clock.now()
        payload = {
            "sub": account.username,
            "account_id": account.id,
            "mfa_pending": True,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._pending_seconds)).timestamp()),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return IssuedToken(token=token, expires_in=self._pending_seconds)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def _decode(self, token: str) -> dict | None:
        """Verify signature and expiry. Returns the payload or None on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, int) or "account_id" not in payload:
            return None
        if self._clock.now().timestamp() >= exp:
            return None
        return payload

    def decode_session(self, token: str) -> dict | None:
        """Return session claims, or None. Pending tokens are always rejected here."""
        payload = self._decode(token)
        if payload is None or payload.get("mfa_pending") or payload.get("typ") != _SESSION_TYPE:
            return None
        return payload

    def decode_pending(self, token: str) -> dict | None:
        """Return pending-MFA claims, or None.

        Requires mfa_pending to be literally True. Session tokens and pending
        tokens that were already spent are rejected.
        """
        payload = self._decode(token)
        if payload is None or payload.get("mfa_pending") is not True or "jti" not in payload:
            return None
        with self._spent_lock:
            if payload["jti"] in self._spent:
                return None
        return payload

    def spend_pending(self, claims: dict) -> bool:
        """Mark a pending token as used. Returns False if it was already spent.

        Called BEFORE the second factor is checked, so a pending token is held
        by at most one verification at a time and a recovery code is only
        consumed by the request that owns the token. A verification whose code
        turns out wrong hands the token back with release_pending().
        """
        now_ts = self._clock.now().timestamp()
        with self._spent_lock:
            for jti in [j for j, exp in self._spent.items() if exp <= now_ts]:
                del self._spent[jti]
            if claims["jti"] in self._spent:
                return False
            self._spent[claims["jti"]] = claims["exp"]
        return True

    def release_pending(self, claims: dict) -> None:
        """Undo spend_pending() after a failed code check so the user can retry."""
        with self._spent_lock:
            self._spent.pop(claims["jti"], None)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )
