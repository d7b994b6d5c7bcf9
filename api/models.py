"""
API request and response models for the TimeTrack auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Account, TrustedDevice
from auth.tokens import MAX_PASSWORD_BYTES, password_too_long

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _fits_bcrypt(value: str) -> str:
    if password_too_long(value):
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


# Length is checked in UTF-8 bytes, which is what bcrypt sees.
Password = Annotated[str, Field(min_length=1), AfterValidator(_fits_bcrypt)]


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    `username` accepts either the username or the email address. Surrounding
    whitespace is stripped from the username, never from the password.
    """

    username: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=254)]
    password: Password


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: Password
    new_password: Password


class MfaCodeRequest(BaseModel):
    """Request body for POST /api/v1/mfa/verify-setup."""

    code: str = Field(min_length=1, max_length=32)


class MfaVerifyRequest(BaseModel):
    """Request body for POST /api/v1/mfa/verify.

    `code` is either a 6-digit TOTP code or an 8-character recovery code.
    """

    mfa_token: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=32)
    trust_device: bool = False


class MfaReauthRequest(BaseModel):
    """Password plus current TOTP code, for disabling MFA or regenerating codes."""

    password: Password
    code: str = Field(min_length=1, max_length=32)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str] = None
    account_type: str
    mfa_enabled: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountInfo":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            account_type=account.account_type,
            mfa_enabled=account.mfa_enabled,
        )


class LoginResponse(BaseModel):
    """Response for a login that produced a full session."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountInfo
    trusted_device: bool = False


class MfaRequiredResponse(BaseModel):
    """Response for a correct password on an MFA-enabled account.

    mfa_token grants nothing except POST /mfa/verify (and MFA setup).
    """

    model_config = ConfigDict(frozen=True)

    mfa_required: bool = True
    mfa_token: str
    expires_in: int


class MfaVerifyResponse(LoginResponse):
    """Session issued after the second factor. device_token is returned once."""

    device_token: Optional[str] = None


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    enabled: bool


class MfaSetupResponse(BaseModel):
    """Enrolment material. Secret and recovery codes are shown exactly once."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    qr_code: str
    recovery_codes: list[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RecoveryCodesRemainingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    remaining: int


class RecoveryCodesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    recovery_codes: list[str]


class TrustedDeviceResponse(BaseModel):
    """One entry in GET /api/v1/mfa/trusted-devices. Never includes the token."""

    model_config = ConfigDict(frozen=True)

    id: str
    device_name: str
    browser: str
    os: str
    ip_address: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime

    @classmethod
    def from_device(cls, device: TrustedDevice) -> "TrustedDeviceResponse":
        return cls(
            id=device.id,
            device_name=device.device_name,
            browser=device.browser,
            os=device.os,
            ip_address=device.ip_address,
            created_at=device.created_at,
            last_used_at=device.last_used_at,
            expires_at=device.expires_at,
        )


class RevokedCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    attempts_left accompanies invalid_code; retry_after accompanies rate_limited.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    attempts_left: Optional[int] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = {}
