"""
auth/errors.py -- Typed failure results for the authentication subsystem.

Service operations return one of these instead of raising. Each subclass
carries a stable machine-readable code, the HTTP status the API layer maps it
to, and a generic user-facing message. Messages never reveal whether an
account exists or which factor (TOTP or recovery code) was attempted.

Unexpected errors (database down, bugs) are NOT represented here. They
propagate as ordinary exceptions and become a 500 at the API boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class AuthFailure:
    code: ClassVar[str] = "auth_failed"
    status_code: ClassVar[int] = 400
    message: ClassVar[str] = "Authentication failed."


@dataclass(frozen=True)
class InvalidCredentials(AuthFailure):
    code: ClassVar[str] = "bad_credentials"
    status_code: ClassVar[int] = 401
    message: ClassVar[str] = "Invalid credentials."


@dataclass(frozen=True)
class MfaNotConfigured(AuthFailure):
    code: ClassVar[str] = "mfa_not_configured"
    status_code: ClassVar[int] = 400
    message: ClassVar[str] = "MFA is not enabled or setup has not been started."


@dataclass(frozen=True)
class MfaAlreadyEnabled(AuthFailure):
    code: ClassVar[str] = "mfa_already_enabled"
    status_code: ClassVar[int] = 400
    message: ClassVar[str] = "MFA is already enabled."


@dataclass(frozen=True)
class InvalidPendingToken(AuthFailure):
    code: ClassVar[str] = "invalid_mfa_token"
    status_code: ClassVar[int] = 401
    message: ClassVar[str] = "Invalid or expired MFA token."


@dataclass(frozen=True)
class InvalidCode(AuthFailure):
    code: ClassVar[str] = "invalid_code"
    status_code: ClassVar[int] = 400
    message: ClassVar[str] = "Invalid verification code."

    attempts_left: int | None = None


@dataclass(frozen=True)
class RateLimited(AuthFailure):
    code: ClassVar[str] = "rate_limited"
    status_code: ClassVar[int] = 429
    message: ClassVar[str] = "Too many failed attempts. Please wait before trying again."

    retry_after: int = 0


@dataclass(frozen=True)
class DeviceNotFound(AuthFailure):
    code: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = 404
    message: ClassVar[str] = "Device not found."


@dataclass(frozen=True)
class InvalidNewPassword(AuthFailure):
    code: ClassVar[str] = "invalid_new_password"
    status_code: ClassVar[int] = 400
    message: ClassVar[str] = "The new password must differ from the current one and be at most 72 bytes."
