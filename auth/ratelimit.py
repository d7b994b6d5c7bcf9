"""
auth/ratelimit.py -- Sliding-window failure counter with lockout.

Used in front of every expensive credential check (bcrypt password compare,
TOTP and recovery-code verification). The contract is:

    decision = limiter.check_limit(key)      # BEFORE the expensive check
    if not decision.allowed: return RateLimited(decision.retry_after)
    ok = expensive_check(...)
    limiter.record_attempt(key, ok)          # AFTER, exactly once

Checking first caps the CPU an attacker can burn on bcrypt. Recording after
means a request that fails for unrelated reasons (malformed token, missing
account) is never counted.

Window semantics:
  - The first failure opens a window of `window` seconds.
  - Failures inside the window increment the count. A failure after the
    window has elapsed starts a fresh window with count 1.
  - When the count reaches `max_attempts`, locked_until is set to
    now + lockout. The NEXT check_limit() observes it.
  - While locked, every check is refused. Once locked_until has passed the
    entry is treated as fresh.
  - A success deletes the entry.

Concurrency: the table is one dict behind one threading.Lock. Route handlers
run on FastAPI's threadpool and the periodic sweep runs on the event loop;
both take the same lock. Critical sections are pure counter arithmetic.

The table is process-local and is lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta

from auth.clock import Clock, SystemClock
from auth.models import RateLimitEntry

logger = logging.getLogger("timetrack.ratelimit")

KEY_POLICIES = ("client_and_account", "account")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0  # seconds, only meaningful when allowed is False
    attempts_left: int = 0


class RateLimiter:
    """In-memory sliding-window limiter keyed by (client identity, account identity).

    Usage:
        limiter = RateLimiter(name="mfa", max_attempts=5, window_seconds=900, lockout_seconds=900)
        await limiter.start()          # launches the periodic sweep
        ...
        await limiter.stop()
    """

    def __init__(
        self,
        name: str = "mfa",
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 15 * 60,
        sweep_interval_seconds: int = 30 * 60,
        key_policy: str = "client_and_account",
        clock: Clock | None = None,
    ) -> None:
        if key_policy not in KEY_POLICIES:
            raise ValueError(f"Unknown rate limit key policy: {key_policy!r}")
        self.name = name
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self.key_policy = key_policy
        self._clock = clock or SystemClock()
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def build_key(self, client_identity: str, account_identity: str | int) -> str:
        """Compose the limiter key.

        account_identity must be the account id once known, never the raw
        identifier the client typed, so case variants of one login name
        share a bucket.
        """
        if self.key_policy == "account":
            return f"account:{account_identity}"
        return f"{client_identity}:{account_identity}"

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def check_limit(self, key: str) -> RateDecision:
        now = self._clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return RateDecision(allowed=True, attempts_left=self.max_attempts)

            if entry.locked_until is not None:
                if now < entry.locked_until:
                    retry_after = math.ceil((entry.locked_until - now).total_seconds())
                    return RateDecision(allowed=False, retry_after=max(retry_after, 1))
                del self._entries[key]
                return RateDecision(allowed=True, attempts_left=self.max_attempts)

            if now - entry.window_start > self.window:
                del self._entries[key]
                return RateDecision(allowed=True, attempts_left=self.max_attempts)

            return RateDecision(allowed=True, attempts_left=self.max_attempts - entry.failure_count)

    def record_attempt(self, key: str, success: bool) -> int:
        """Record the outcome of a verification. Returns the attempts left in the window."""
        now = self._clock.now()
        with self._lock:
            if success:
                self._entries.pop(key, None)
                return self.max_attempts

            entry = self._entries.get(key)
            if entry is not None and entry.locked_until is not None and now < entry.locked_until:
                # A live lock is never reset, even by a late failure from a request
                # that passed check_limit before the lock was set.
                return 0
            expired_lock = entry is not None and entry.locked_until is not None
            if entry is None or expired_lock or now - entry.window_start > self.window:
                entry = RateLimitEntry(failure_count=1, window_start=now)
                self._entries[key] = entry
            else:
                entry.failure_count += 1

            if entry.failure_count >= self.max_attempts and entry.locked_until is None:
                entry.locked_until = now + self.lockout
                logger.warning("%s limiter locked key %s for %ds", self.name, key, self.lockout.total_seconds())
            return max(self.max_attempts - entry.failure_count, 0)

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Remove entries whose window expired and which are not locked. Returns the count removed."""
        now = self._clock.now()
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if now - entry.window_start > self.window and (entry.locked_until is None or now >= entry.locked_until)
            ]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.info("%s limiter swept %d stale entries", self.name, len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def _sweep_loop(self) -> None:
        """Run sweep() every sweep_interval_seconds until cancelled.

        CancelledError from stop() propagates out of asyncio.sleep and unwinds
        the coroutine cleanly.
        """
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"{self.name}-ratelimit-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
