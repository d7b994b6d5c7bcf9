"""
auth/clock.py -- Injectable time source.

Every component that reasons about expiry (tokens, rate-limit windows,
trusted devices, TOTP steps) takes a Clock instead of calling datetime.now()
itself, so tests can move time deterministically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
