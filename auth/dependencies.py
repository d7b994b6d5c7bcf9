"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Session tokens are read from two places, in priority order:
  1. JWT cookie ("access_token") -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API and mobile clients.

get_current_account() accepts session tokens only. A pending-MFA token
presented here is rejected exactly like a forged one.

get_setup_account() additionally accepts a pending-MFA token so a user whose
organization requires MFA can enrol straight after the password step.

client_info() derives the caller's coarse identity (IP, User-Agent) for rate
limiting, trusted-device labels and audit records.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account, ClientInfo


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """Return the caller's IP: first X-Forwarded-For entry, else the socket peer."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def client_info(request: Request) -> ClientInfo:
    settings = request.app.state.settings
    return ClientInfo(
        ip_address=get_client_ip(request, settings.trust_forwarded_for),
        user_agent=request.headers.get("User-Agent"),
    )


def _extract_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def get_current_account(request: Request) -> Account:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = _extract_token(request)
    if token:
        account = request.app.state.auth_service.authenticate_session(token)
        if account is not None:
            return account
    raise _unauthorized()


def get_setup_account(request: Request) -> Account:
    """Require a valid session OR pending-MFA token. Raises HTTP 401 otherwise."""
    token = _extract_token(request)
    if token:
        account = request.app.state.auth_service.authenticate_setup(token)
        if account is not None:
            return account
    raise _unauthorized()
