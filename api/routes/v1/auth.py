"""
api/routes/v1/auth.py -- Password login and session endpoints.

Routes:
  POST /api/v1/auth/login   -- password login; session cookie OR pending-MFA token
  POST /api/v1/auth/logout  -- clears cookie; 200
  GET  /api/v1/auth/me      -- current account info (requires session)
  POST /api/v1/auth/change-password -- new password; requires session and the current one

Security:
  POST /login is rate-limited per IP by slowapi (LOGIN_RATE_LIMIT) and per
  client+account by the service's login limiter.
  Same generic error for unknown identifier, wrong password, and inactive
  account ("bad_credentials").
  Cache-Control: no-store on every login response.
  A valid X-Device-Token header skips the second factor, never the password.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountInfo,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaRequiredResponse,
)
from api.responses import failure_response, no_store
from auth.dependencies import client_info, get_current_account
from auth.errors import AuthFailure
from auth.models import Account, PendingMfa
from auth.service import AuthService
from auth.tokens import set_auth_cookie
from core.config import get_settings

router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse | MfaRequiredResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username (or email) and password.

    MFA disabled, or a trusted device presented: full session, cookie set.
    MFA enabled: 200 with mfa_required=true and a short-lived mfa_token that
    only POST /mfa/verify accepts. No cookie is set.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(
        body.username,
        body.password,
        client_info(request),
        device_token=request.headers.get("X-Device-Token"),
    )
    if isinstance(result, AuthFailure):
        return failure_response(result)

    if isinstance(result, PendingMfa):
        return no_store(
            JSONResponse(
                content=MfaRequiredResponse(
                    mfa_token=result.pending_token,
                    expires_in=result.expires_in,
                ).model_dump()
            )
        )

    resp = JSONResponse(
        content=LoginResponse(
            access_token=result.session_token,
            expires_in=result.expires_in,
            account=AccountInfo.from_account(result.account),
            trusted_device=result.trusted_device,
        ).model_dump()
    )
    set_auth_cookie(resp, result.session_token, result.expires_in, request.app.state.settings.secure_cookies)
    return no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the session cookie. Bearer clients simply discard their token."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=AccountInfo)
def me(current_account: Account = Depends(get_current_account)) -> AccountInfo:
    """Return identity information for the currently authenticated account."""
    return AccountInfo.from_account(current_account)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Replace the password. Requires a full session and the current password.

    A wrong current password counts against the same lockout as a failed
    login from this client.
    """
    service: AuthService = request.app.state.auth_service
    result = service.change_password(
        current_account.id, body.current_password, body.new_password, client_info(request)
    )
    if isinstance(result, AuthFailure):
        return failure_response(result)
    return no_store(JSONResponse(content={"message": "Password changed."}))
