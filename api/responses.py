"""
api/responses.py -- Map service results onto HTTP responses.

AuthService returns AuthFailure objects instead of raising. Routes pass them
through failure_response(), which produces the same ErrorResponse envelope
the exception handlers in api/main.py use, so clients parse one error shape.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthFailure, InvalidCode, RateLimited


def no_store(response: JSONResponse) -> JSONResponse:
    """Forbid caching of responses that carry tokens or one-time secrets."""
    response.headers["Cache-Control"] = "no-store"
    return response


def failure_response(failure: AuthFailure) -> JSONResponse:
    detail = ErrorDetail(
        code=failure.code,
        message=failure.message,
        attempts_left=failure.attempts_left if isinstance(failure, InvalidCode) else None,
        retry_after=failure.retry_after if isinstance(failure, RateLimited) else None,
    )
    response = JSONResponse(
        status_code=failure.status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )
    if isinstance(failure, RateLimited):
        response.headers["Retry-After"] = str(failure.retry_after)
    return no_store(response)
