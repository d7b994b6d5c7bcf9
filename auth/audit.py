"""
auth/audit.py -- Write-only audit sink and security log lines.

Authentication must never fail because auditing failed. Sinks are
fire-and-forget: StoreAuditSink hands the row to a single background worker
thread and returns immediately; any exception in the worker is logged and
dropped. emit() adds a second guard so a sink that raises synchronously is
also contained.

Security log lines go to the "timetrack.security" logger in a fixed,
grep-friendly format that fail2ban can match:

    AUTH_FAILED ip=203.0.113.7 user=alice
    AUTH_SUCCESS ip=203.0.113.7 user=alice
    BRUTE_FORCE ip=203.0.113.7 attempts=5
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

from auth.models import AuditEvent
from auth.store import AccountStore

logger = logging.getLogger("timetrack.audit")
security_logger = logging.getLogger("timetrack.security")


class AuditSink(Protocol):
    def record(self, audit_event: AuditEvent) -> None: ...


class StoreAuditSink:
    """Appends audit events to the audit_logs table on a background thread."""

    def __init__(self, store: AccountStore) -> None:
        self._store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")

    def record(self, audit_event: AuditEvent) -> None:
        future = self._executor.submit(self._store.append_audit, audit_event)
        future.add_done_callback(_log_failure(audit_event.action))

    def close(self) -> None:
        """Flush pending rows and stop the worker."""
        self._executor.shutdown(wait=True)


def _log_failure(action: str):
    def callback(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to write audit log entry %s: %s", action, exc)

    return callback


def emit(sink: AuditSink | None, audit_event: AuditEvent) -> None:
    """Hand an event to the sink. Never raises."""
    if sink is None:
        return
    try:
        sink.record(audit_event)
    except Exception:
        logger.exception("Audit sink rejected %s event", audit_event.action)


def log_failed_login(ip_address: str, identifier: str) -> None:
    security_logger.warning("AUTH_FAILED ip=%s user=%s", ip_address, sanitize_identifier(identifier))


def log_successful_login(ip_address: str, username: str) -> None:
    security_logger.info("AUTH_SUCCESS ip=%s user=%s", ip_address, sanitize_identifier(username))


def log_brute_force(ip_address: str, attempts: int) -> None:
    security_logger.warning("BRUTE_FORCE ip=%s attempts=%d", ip_address, attempts)


def sanitize_identifier(value: str) -> str:
    """Keep log lines single-line and bounded; identifiers are attacker-controlled."""
    return "".join(ch if ch.isprintable() and not ch.isspace() else "_" for ch in value)[:128]
