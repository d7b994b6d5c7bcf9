"""
auth/monitor.py -- Per-address failed-login tracking and brute-force alerts.

RateLimiter buckets failures by (address, account), so an attacker spraying
one password across many accounts never trips a lockout. This monitor counts
every failed login from an address regardless of the account it targeted.
When `threshold` failures fall inside `window` it writes a
security.brute_force_detected event through the audit sink and a BRUTE_FORCE
security log line. An address alerts at most once per `alert_cooldown`.

A successful login from the address clears its failures. Nothing here refuses
requests; lockouts stay the job of RateLimiter.

Concurrency mirrors RateLimiter: one dict behind one threading.Lock, shared by
threadpool handlers and the periodic sweep on the event loop. The audit sink
is called outside the lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timedelta

from auth.audit import AuditSink, emit, log_brute_force, sanitize_identifier
from auth.clock import Clock, SystemClock
from auth.models import AuditEvent, IpStats

logger = logging.getLogger("timetrack.monitor")

BRUTE_FORCE_ACTION = "security.brute_force_detected"
# Cap on the identifiers copied into one alert.
MAX_TARGETS_REPORTED = 10


class FailedLoginMonitor:
    """Counts failed logins per client address and raises brute-force alerts.

    Usage:
        monitor = FailedLoginMonitor(threshold=5, window_seconds=900, audit=sink)
        await monitor.start()          # launches the periodic sweep
        monitor.record_failure("203.0.113.7", "alice")
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        threshold: int = 5,
        window_seconds: int = 15 * 60,
        alert_cooldown_seconds: int = 60 * 60,
        sweep_interval_seconds: int = 5 * 60,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)
        self.alert_cooldown = timedelta(seconds=alert_cooldown_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or SystemClock()
        self._audit = audit
        # ip -> (timestamp, identifier) of each failure, oldest first
        self._attempts: dict[str, deque[tuple[datetime, str]]] = {}
        self._alerted: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def record_failure(self, ip_address: str, identifier: str, user_agent: str | None = None) -> bool:
        """Count one failed login. Returns True when this failure raised an alert."""
        now = self._clock.now()
        with self._lock:
            attempts = self._attempts.setdefault(ip_address, deque())
            attempts.append((now, identifier))
            self._prune(attempts, now)
            count = len(attempts)
            if count < self.threshold:
                return False
            alerted_at = self._alerted.get(ip_address)
            if alerted_at is not None and now - alerted_at < self.alert_cooldown:
                return False
            self._alerted[ip_address] = now
            targets = sorted({sanitize_identifier(ident) for _, ident in attempts})[:MAX_TARGETS_REPORTED]

        log_brute_force(ip_address, count)
        emit(
            self._audit,
            AuditEvent(
                action=BRUTE_FORCE_ACTION,
                account_id=None,
                timestamp=now,
                details={
                    "attempts": count,
                    "window_minutes": int(self.window.total_seconds() // 60),
                    "targeted_users": targets,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            ),
        )
        return True

    def record_success(self, ip_address: str) -> None:
        """Forget the failures from an address after it logs in successfully."""
        with self._lock:
            self._attempts.pop(ip_address, None)

    def ip_stats(self, ip_address: str) -> IpStats:
        now = self._clock.now()
        with self._lock:
            attempts = self._attempts.get(ip_address)
            if not attempts:
                return IpStats(recent_attempts=0)
            self._prune(attempts, now)
            if not attempts:
                del self._attempts[ip_address]
                return IpStats(recent_attempts=0)
            return IpStats(recent_attempts=len(attempts), last_attempt=attempts[-1][0])

    def _prune(self, attempts: deque[tuple[datetime, str]], now: datetime) -> None:
        # Caller holds the lock.
        while attempts and now - attempts[0][0] > self.window:
            attempts.popleft()

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop addresses with no failures left in the window and expired alert marks.

        Returns the number of addresses dropped.
        """
        now = self._clock.now()
        with self._lock:
            idle = []
            for ip_address, attempts in self._attempts.items():
                self._prune(attempts, now)
                if not attempts:
                    idle.append(ip_address)
            for ip_address in idle:
                del self._attempts[ip_address]
            expired = [ip for ip, at in self._alerted.items() if now - at >= self.alert_cooldown]
            for ip_address in expired:
                del self._alerted[ip_address]
        if idle:
            logger.info("failed-login monitor swept %d idle addresses", len(idle))
        return len(idle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="failed-login-monitor-sweep")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
