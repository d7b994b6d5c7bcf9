"""
api/routes/v1/mfa.py -- Multi-factor authentication endpoints.

Routes:
  GET    /api/v1/mfa/status                     -- enrolment state (session)
  POST   /api/v1/mfa/setup                      -- new secret, QR, recovery codes (session or mfa_token)
  POST   /api/v1/mfa/verify-setup               -- confirm first code, MFA on (session or mfa_token)
  POST   /api/v1/mfa/verify                     -- mfa_token + code -> session (public)
  POST   /api/v1/mfa/disable                    -- password + TOTP code (session)
  GET    /api/v1/mfa/recovery-codes             -- remaining count (session)
  POST   /api/v1/mfa/recovery-codes/regenerate  -- password + TOTP code (session)
  GET    /api/v1/mfa/trusted-devices            -- list (session)
  DELETE /api/v1/mfa/trusted-devices/{id}       -- revoke one (session, ownership checked)
  DELETE /api/v1/mfa/trusted-devices            -- revoke all (session)

Security:
  Every code check is gated by the service's MFA limiter: 5 failures in 15
  minutes lock the client+account for 15 minutes (429 + Retry-After).
  Error bodies never reveal whether a TOTP or a recovery code was tried.
  Secrets, recovery codes and device tokens are returned with no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AccountInfo,
    MessageResponse,
    MfaCodeRequest,
    MfaReauthRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    MfaVerifyResponse,
    RecoveryCodesRemainingResponse,
    RecoveryCodesResponse,
    RevokedCountResponse,
    TrustedDeviceResponse,
)
from api.responses import failure_response, no_store
from auth.dependencies import client_info, get_current_account, get_setup_account
from auth.errors import AuthFailure
from auth.models import Account, MfaStatus
from auth.service import AuthService
from auth.tokens import set_auth_cookie

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Enrolment
# ---------------------------------------------------------------------------


@router.get("/mfa/status", response_model=MfaStatusResponse)
def mfa_status(request: Request, current_account: Account = Depends(get_current_account)) -> MfaStatusResponse:
    status = _service(request).mfa_status(current_account.id)
    return MfaStatusResponse(status=status.value, enabled=status is MfaStatus.ENABLED)


@router.post("/mfa/setup", response_model=MfaSetupResponse)
def mfa_setup(request: Request, current_account: Account = Depends(get_setup_account)) -> JSONResponse:
    """Start enrolment. MFA stays disabled until /mfa/verify-setup succeeds.

    Calling again before confirming discards the previous secret and codes.
    """
    result = _service(request).mfa_setup(current_account.id, client_info(request))
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return no_store(
        JSONResponse(
            content=MfaSetupResponse(
                secret=result.secret,
                provisioning_uri=result.provisioning_uri,
                qr_code=result.qr_code,
                recovery_codes=result.recovery_codes,
            ).model_dump()
        )
    )


@router.post("/mfa/verify-setup", response_model=MessageResponse)
def mfa_verify_setup(
    request: Request,
    body: MfaCodeRequest,
    current_account: Account = Depends(get_setup_account),
) -> JSONResponse:
    result = _service(request).mfa_confirm_setup(current_account.id, body.code, client_info(request))
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return JSONResponse(content={"message": "MFA enabled."})


@router.post("/mfa/disable", response_model=MessageResponse)
def mfa_disable(
    request: Request,
    body: MfaReauthRequest,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Disable MFA. Also deletes recovery codes and revokes all trusted devices."""
    result = _service(request).mfa_disable(current_account.id, body.password, body.code, client_info(request))
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return JSONResponse(content={"message": "MFA disabled."})


# ---------------------------------------------------------------------------
# Second factor at login (public -- authenticated by the mfa_token itself)
# ---------------------------------------------------------------------------


@router.post("/mfa/verify", response_model=MfaVerifyResponse)
def mfa_verify(request: Request, body: MfaVerifyRequest) -> JSONResponse:
    """Exchange mfa_token + TOTP or recovery code for a session.

    With trust_device=true the response carries a device_token, shown once.
    The client sends it back as X-Device-Token on future logins.
    """
    result = _service(request).mfa_verify(body.mfa_token, body.code, body.trust_device, client_info(request))
    if isinstance(result, AuthFailure):
        return failure_response(result)

    resp = JSONResponse(
        content=MfaVerifyResponse(
            access_token=result.session_token,
            expires_in=result.expires_in,
            account=AccountInfo.from_account(result.account),
            device_token=result.device_token,
        ).model_dump()
    )
    set_auth_cookie(resp, result.session_token, result.expires_in, request.app.state.settings.secure_cookies)
    return no_store(resp)


# ---------------------------------------------------------------------------
# Recovery codes
# ---------------------------------------------------------------------------


@router.get("/mfa/recovery-codes", response_model=RecoveryCodesRemainingResponse)
def recovery_codes_remaining(
    request: Request, current_account: Account = Depends(get_current_account)
) -> JSONResponse:
    result = _service(request).recovery_codes_remaining(current_account.id)
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return JSONResponse(content={"remaining": result})


@router.post("/mfa/recovery-codes/regenerate", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(
    request: Request,
    body: MfaReauthRequest,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    result = _service(request).regenerate_recovery_codes(
        current_account.id, body.password, body.code, client_info(request)
    )
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return no_store(JSONResponse(content=RecoveryCodesResponse(recovery_codes=result).model_dump()))


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


@router.get("/mfa/trusted-devices", response_model=list[TrustedDeviceResponse])
def list_trusted_devices(
    request: Request, current_account: Account = Depends(get_current_account)
) -> list[TrustedDeviceResponse]:
    devices = _service(request).list_trusted_devices(current_account.id)
    return [TrustedDeviceResponse.from_device(d) for d in devices]


@router.delete("/mfa/trusted-devices/{device_id}", response_model=MessageResponse)
def revoke_trusted_device(
    request: Request,
    device_id: str,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Revoke one device. Another account's device id is reported as not found."""
    result = _service(request).revoke_trusted_device(current_account.id, device_id, client_info(request))
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return JSONResponse(content={"message": "Device revoked."})


@router.delete("/mfa/trusted-devices", response_model=RevokedCountResponse)
def revoke_all_trusted_devices(
    request: Request, current_account: Account = Depends(get_current_account)
) -> RevokedCountResponse:
    count = _service(request).revoke_all_trusted_devices(current_account.id, client_info(request))
    return RevokedCountResponse(revoked=count)
