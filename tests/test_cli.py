"""
tests/test_cli.py -- Tests for the administrative command line in main.py.

Handlers are called directly with a parsed Namespace and the test store, so
no environment configuration is needed.

Coverage:
  - create-user reads the password from stdin and refuses over-long input
  - alerts lists brute-force events newest first, and says so when there are none
"""

from __future__ import annotations

import io

import pytest

from auth.models import AuditEvent
from auth.monitor import BRUTE_FORCE_ACTION
from auth.store import AccountStore
from main import build_parser, create_user, show_alerts
from tests.support import ManualClock


def _run(store: AccountStore, argv: list[str]) -> int:
    args = build_parser().parse_args(argv)
    return args.handler(store, args)


class TestCreateUser:
    def test_password_from_stdin(
        self, store: AccountStore, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
    ) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("a long enough passphrase\n"))
        assert _run(store, ["create-user", "bob", "--email", "bob@example.com", "--password-stdin"]) == 0
        assert "Created account" in capsys.readouterr().out
        assert store.get_by_identifier("bob@example.com").username == "bob"

    def test_over_long_password_is_refused(
        self, store: AccountStore, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
    ) -> None:
        """bcrypt cannot hash more than 72 bytes, so the account is never created."""
        monkeypatch.setattr("sys.stdin", io.StringIO("x" * 100 + "\n"))
        args = build_parser().parse_args(["create-user", "bob", "--password-stdin"])
        assert create_user(store, args) == 1
        out = capsys.readouterr().out
        assert "longer than 72 bytes" in out
        assert out.count("[!]") == 1
        assert store.get_by_identifier("bob") is None

    def test_empty_password_is_refused(
        self, store: AccountStore, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
    ) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("\n"))
        assert _run(store, ["create-user", "bob", "--password-stdin"]) == 1
        assert "A password is required." in capsys.readouterr().out


class TestAlerts:
    def test_lists_alerts_newest_first(
        self, store: AccountStore, clock: ManualClock, capsys: pytest.CaptureFixture
    ) -> None:
        for ip in ("198.51.100.1", "198.51.100.2"):
            store.append_audit(
                AuditEvent(
                    action=BRUTE_FORCE_ACTION,
                    account_id=None,
                    timestamp=clock.now(),
                    details={"attempts": 5, "window_minutes": 15, "targeted_users": ["alice", "bob"]},
                    ip_address=ip,
                )
            )
            clock.advance(60)
        store.append_audit(AuditEvent(action="user.login_failed", account_id=None, timestamp=clock.now()))

        assert show_alerts(store, build_parser().parse_args(["alerts"])) == 0
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 2
        assert "ip=198.51.100.2" in lines[0]
        assert "ip=198.51.100.1" in lines[1]
        assert "attempts=5 users=alice, bob" in lines[1]
        assert "2026-03-02 09:00:10" in lines[1]

    def test_limit_is_respected(self, store: AccountStore, clock: ManualClock, capsys: pytest.CaptureFixture) -> None:
        for n in range(3):
            store.append_audit(
                AuditEvent(action=BRUTE_FORCE_ACTION, account_id=None, timestamp=clock.now(), ip_address=f"10.0.0.{n}")
            )
        assert _run(store, ["alerts", "--limit", "1"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 1
        assert "ip=10.0.0.2" in lines[0]
        assert "attempts=? users=-" in lines[0]

    def test_no_alerts(self, store: AccountStore, capsys: pytest.CaptureFixture) -> None:
        assert _run(store, ["alerts"]) == 0
        assert capsys.readouterr().out.strip() == "No brute-force alerts."
