"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the coarse per-IP flood guard in front of POST /auth/login. The
account-aware lockout for passwords and MFA codes lives in auth/ratelimit.py.
"""

from slowapi import Limiter
from starlette.requests import Request

from auth.dependencies import get_client_ip
from core.config import get_settings


def forwarded_remote_address(request: Request) -> str:
    return get_client_ip(request, get_settings().trust_forwarded_for)


limiter = Limiter(key_func=forwarded_remote_address, storage_uri="memory://")
