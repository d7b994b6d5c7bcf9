"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and the service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MfaStatus(str, Enum):
    """Explicit MFA enrolment state stored on the account row.

    UNCONFIGURED          no secret, no recovery codes.
    PENDING_CONFIRMATION  a secret was issued by setup but no code has been
                          confirmed against it yet. Login does not ask for MFA.
    ENABLED               confirmed. Login requires a second factor.
    """

    UNCONFIGURED = "unconfigured"
    PENDING_CONFIRMATION = "pending_confirmation"
    ENABLED = "enabled"


@dataclass
class Account:
    """A TimeTrack user and its credential material.

    hashed_password is bcrypt. mfa_secret is the base32 TOTP secret and is
    populated in both PENDING_CONFIRMATION and ENABLED states.
    recovery_code_hashes is the ordered list of bcrypt hashes of the unused
    recovery codes; each successful use removes exactly one entry.
    """

    username: str
    hashed_password: str
    email: str | None = None
    account_type: str = "personal"  # "personal" or "business"
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None
    mfa_status: MfaStatus = MfaStatus.UNCONFIGURED
    mfa_secret: str | None = None
    recovery_code_hashes: list[str] = field(default_factory=list)

    @property
    def mfa_enabled(self) -> bool:
        return self.mfa_status is MfaStatus.ENABLED


@dataclass
class TrustedDevice:
    """A browser that may skip the second factor until expires_at.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token is returned
    to the client once at issue time and never stored. device_name, browser,
    os and ip_address are descriptive only and never used for authentication.
    """

    id: str
    account_id: int
    token_hash: str
    device_name: str
    browser: str
    os: str
    ip_address: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime


@dataclass
class RateLimitEntry:
    failure_count: int
    window_start: datetime
    locked_until: datetime | None = None


@dataclass(frozen=True)
class IpStats:
    """Failed logins seen from one address inside the brute-force window."""

    recent_attempts: int
    last_attempt: datetime | None = None


@dataclass(frozen=True)
class ClientInfo:
    """Coarse network identity of the caller, used for rate-limit keys and audit."""

    ip_address: str = "unknown"
    user_agent: str | None = None


@dataclass
class AuditEvent:
    """A security event handed to the audit sink. Never carries secrets."""

    action: str
    account_id: int | None
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int  # seconds


@dataclass(frozen=True)
class SessionGrant:
    """Full authentication. device_token is set only when a new trusted device was issued."""

    session_token: str
    expires_in: int
    account: Account
    device_token: str | None = None
    trusted_device: bool = False


@dataclass(frozen=True)
class PendingMfa:
    """Password accepted, second factor still required."""

    pending_token: str
    expires_in: int
    account: Account


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...
    recovery_codes: list[str]
