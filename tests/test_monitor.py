"""
tests/test_monitor.py -- Unit tests for the per-address failed-login monitor.

Coverage:
  - Failures against different accounts from one address add up
  - The alert is written once through the audit sink, then held for the cooldown
  - Failures older than the window do not count
  - A successful login clears the address
  - sweep() drops idle addresses and expired alert marks
  - Login failures in AuthService feed the monitor
"""

from __future__ import annotations

import logging

import pytest

from auth.models import Account
from auth.monitor import BRUTE_FORCE_ACTION, FailedLoginMonitor
from auth.service import AuthService
from tests.support import CLIENT, PASSWORD, ListAuditSink, ManualClock

IP = "198.51.100.23"


@pytest.fixture
def monitor(clock: ManualClock, audit_sink: ListAuditSink) -> FailedLoginMonitor:
    return FailedLoginMonitor(
        threshold=5, window_seconds=900, alert_cooldown_seconds=3600, clock=clock, audit=audit_sink
    )


class TestRecordFailure:
    def test_failures_across_accounts_raise_one_alert(
        self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink
    ) -> None:
        raised = [monitor.record_failure(IP, f"user{n}", "curl/8.5") for n in range(5)]
        assert raised == [False, False, False, False, True]
        (event,) = audit_sink.events
        assert event.action == BRUTE_FORCE_ACTION
        assert event.account_id is None
        assert event.ip_address == IP
        assert event.user_agent == "curl/8.5"
        assert event.details["attempts"] == 5
        assert event.details["window_minutes"] == 15
        assert event.details["targeted_users"] == ["user0", "user1", "user2", "user3", "user4"]

    def test_alert_is_held_for_the_cooldown(
        self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink, clock: ManualClock
    ) -> None:
        for _ in range(5):
            monitor.record_failure(IP, "alice")
        for _ in range(10):
            assert monitor.record_failure(IP, "alice") is False
        clock.advance(3600)
        for _ in range(4):
            monitor.record_failure(IP, "alice")
        assert monitor.record_failure(IP, "alice") is True
        assert audit_sink.actions == [BRUTE_FORCE_ACTION, BRUTE_FORCE_ACTION]

    def test_addresses_are_counted_separately(self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink) -> None:
        for n in range(4):
            monitor.record_failure(IP, "alice")
            monitor.record_failure(f"198.51.100.{n + 100}", "alice")
        assert audit_sink.events == []
        assert monitor.ip_stats(IP).recent_attempts == 4

    def test_failures_outside_the_window_do_not_count(
        self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink, clock: ManualClock
    ) -> None:
        for _ in range(4):
            monitor.record_failure(IP, "alice")
            clock.advance(301)
        # The two oldest failures are now past the 900 s window.
        assert monitor.record_failure(IP, "alice") is False
        assert monitor.ip_stats(IP).recent_attempts == 3
        assert audit_sink.events == []

    def test_alert_logs_security_line(self, monitor: FailedLoginMonitor, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="timetrack.security"):
            for _ in range(5):
                monitor.record_failure(IP, "alice")
        messages = [r.getMessage() for r in caplog.records if r.name == "timetrack.security"]
        assert messages == [f"BRUTE_FORCE ip={IP} attempts=5"]

    def test_targeted_users_are_sanitized_and_capped(
        self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink
    ) -> None:
        monitor.threshold = 12
        monitor.record_failure(IP, "evil\nuser")
        for n in range(11):
            monitor.record_failure(IP, f"u{n:02d}")
        targets = audit_sink.events[0].details["targeted_users"]
        assert len(targets) == 10
        assert "evil_user" in targets
        assert all("\n" not in t for t in targets)

    def test_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            FailedLoginMonitor(threshold=0)


class TestStatsAndSweep:
    def test_success_clears_the_address(self, monitor: FailedLoginMonitor, clock: ManualClock) -> None:
        for _ in range(3):
            monitor.record_failure(IP, "alice")
        stats = monitor.ip_stats(IP)
        assert stats.recent_attempts == 3
        assert stats.last_attempt == clock.now()
        monitor.record_success(IP)
        assert monitor.ip_stats(IP).recent_attempts == 0
        assert monitor.ip_stats(IP).last_attempt is None

    def test_sweep_drops_idle_addresses(self, monitor: FailedLoginMonitor, clock: ManualClock) -> None:
        monitor.record_failure("198.51.100.1", "alice")
        clock.advance(901)
        monitor.record_failure("198.51.100.2", "alice")
        assert monitor.sweep() == 1
        assert len(monitor) == 1
        assert monitor.ip_stats("198.51.100.2").recent_attempts == 1

    def test_sweep_expires_alert_marks(
        self, monitor: FailedLoginMonitor, audit_sink: ListAuditSink, clock: ManualClock
    ) -> None:
        for _ in range(5):
            monitor.record_failure(IP, "alice")
        clock.advance(3600)
        monitor.sweep()
        assert monitor._alerted == {}
        assert len(monitor) == 0


class TestServiceIntegration:
    def test_password_spraying_is_detected(
        self, service: AuthService, account: Account, audit_sink: ListAuditSink
    ) -> None:
        """One address trying many accounts trips the monitor long before any per-account lockout."""
        for name in ("alice", "bob", "carol", "dave", "erin"):
            service.login(name, "Winter2026!", CLIENT)
        alerts = [e for e in audit_sink.events if e.action == BRUTE_FORCE_ACTION]
        assert len(alerts) == 1
        assert alerts[0].ip_address == CLIENT.ip_address
        assert alerts[0].details["targeted_users"] == ["alice", "bob", "carol", "dave", "erin"]

    def test_successful_login_resets_the_address(self, service: AuthService, account: Account) -> None:
        for _ in range(3):
            service.login("alice", "nope", CLIENT)
        assert service.monitor.ip_stats(CLIENT.ip_address).recent_attempts == 3
        service.login("alice", PASSWORD, CLIENT)
        assert service.monitor.ip_stats(CLIENT.ip_address).recent_attempts == 0

    def test_rate_limited_attempts_keep_counting(self, service: AuthService, account: Account) -> None:
        for _ in range(7):
            service.login("alice", "nope", CLIENT)
        assert service.monitor.ip_stats(CLIENT.ip_address).recent_attempts == 7
