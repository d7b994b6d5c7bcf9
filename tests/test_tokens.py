"""
tests/test_tokens.py -- Password hashing, device-token hashing, and the session / pending-MFA JWT issuer.

Coverage:
  - bcrypt round trip and malformed-hash handling
  - Session and pending tokens are never interchangeable
  - Expiry is judged by the injected clock
  - Pending tokens are single use
  - Tampered or foreign-key tokens are rejected
"""

from __future__ import annotations

import logging

import pytest
from jose import jwt

from auth.models import Account
from auth.tokens import (
    MAX_PASSWORD_BYTES,
    SessionIssuer,
    generate_device_token,
    hash_device_token,
    hash_password,
    password_too_long,
    verify_password,
)
from core.config import Settings
from tests.support import ManualClock, make_settings


@pytest.fixture
def issuer(settings: Settings, clock: ManualClock) -> SessionIssuer:
    return SessionIssuer(settings, clock=clock)


@pytest.fixture
def alice() -> Account:
    return Account(id=7, username="alice", hashed_password="x", account_type="business")


class TestPasswords:
    def test_round_trip(self) -> None:
        hashed = hash_password("s3cret", rounds=4)
        assert hashed != "s3cret"
        assert verify_password("s3cret", hashed)
        assert not verify_password("S3cret", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert not verify_password("s3cret", "not-a-bcrypt-hash")

    def test_length_is_counted_in_utf8_bytes(self) -> None:
        assert MAX_PASSWORD_BYTES == 72
        assert not password_too_long("x" * 72)
        assert password_too_long("x" * 73)
        assert not password_too_long("\u00e9" * 36)
        assert password_too_long("\u00e9" * 37)

    def test_hashing_over_long_password_raises(self) -> None:
        with pytest.raises(ValueError, match="72 bytes"):
            hash_password("x" * 100, rounds=4)

    def test_over_long_password_is_a_quiet_mismatch(self, caplog: pytest.LogCaptureFixture) -> None:
        hashed = hash_password("x" * 72, rounds=4)
        with caplog.at_level(logging.WARNING, logger="timetrack.auth"):
            assert not verify_password("x" * 300, hashed)
        assert caplog.records == []

    def test_exactly_72_bytes_round_trips(self) -> None:
        plain = "\u00e9" * 36
        assert verify_password(plain, hash_password(plain, rounds=4))


class TestDeviceTokens:
    def test_tokens_are_long_and_unique(self) -> None:
        tokens = {generate_device_token() for _ in range(20)}
        assert len(tokens) == 20
        assert all(len(t) >= 43 for t in tokens)

    def test_hash_is_keyed(self) -> None:
        token = generate_device_token()
        assert hash_device_token("a" * 40, token) == hash_device_token("a" * 40, token)
        assert hash_device_token("a" * 40, token) != hash_device_token("b" * 40, token)


class TestSessionTokens:
    def test_claims(self, issuer: SessionIssuer, alice: Account, clock: ManualClock) -> None:
        issued = issuer.issue_session(alice)
        claims = issuer.decode_session(issued.token)
        assert issued.expires_in == 7 * 24 * 3600
        assert claims["sub"] == "alice"
        assert claims["account_id"] == 7
        assert claims["account_type"] == "business"
        assert claims["exp"] - claims["iat"] == issued.expires_in
        assert claims["iat"] == int(clock.now().timestamp())

    def test_expires_by_injected_clock(self, issuer: SessionIssuer, alice: Account, clock: ManualClock) -> None:
        token = issuer.issue_session(alice).token
        clock.advance(7 * 24 * 3600 - 1)
        assert issuer.decode_session(token) is not None
        clock.advance(1)
        assert issuer.decode_session(token) is None

    def test_pending_token_is_not_a_session(self, issuer: SessionIssuer, alice: Account) -> None:
        assert issuer.decode_session(issuer.issue_pending(alice).token) is None

    def test_other_secret_rejected(self, issuer: SessionIssuer, alice: Account, clock: ManualClock) -> None:
        other = SessionIssuer(make_settings(secret_key="z" * 40), clock=clock)
        assert issuer.decode_session(other.issue_session(alice).token) is None

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_garbage_rejected(self, issuer: SessionIssuer, token: str) -> None:
        assert issuer.decode_session(token) is None
        assert issuer.decode_pending(token) is None

    def test_forged_pending_flag_on_session_rejected(
        self, issuer: SessionIssuer, settings: Settings, clock: ManualClock
    ) -> None:
        """A correctly signed token claiming to be both kinds is accepted as neither session nor pending."""
        now = int(clock.now().timestamp())
        token = jwt.encode(
            {"sub": "alice", "account_id": 7, "typ": "session", "mfa_pending": True, "iat": now, "exp": now + 60},
            settings.secret_key,
            algorithm="HS256",
        )
        assert issuer.decode_session(token) is None


class TestPendingTokens:
    def test_claims(self, issuer: SessionIssuer, alice: Account) -> None:
        issued = issuer.issue_pending(alice)
        claims = issuer.decode_pending(issued.token)
        assert issued.expires_in == 300
        assert claims["mfa_pending"] is True
        assert claims["account_id"] == 7
        assert claims["jti"]

    def test_each_pending_token_unique(self, issuer: SessionIssuer, alice: Account) -> None:
        assert issuer.issue_pending(alice).token != issuer.issue_pending(alice).token

    def test_expires_after_five_minutes(self, issuer: SessionIssuer, alice: Account, clock: ManualClock) -> None:
        token = issuer.issue_pending(alice).token
        clock.advance(299)
        assert issuer.decode_pending(token) is not None
        clock.advance(1)
        assert issuer.decode_pending(token) is None

    def test_session_token_is_not_pending(self, issuer: SessionIssuer, alice: Account) -> None:
        assert issuer.decode_pending(issuer.issue_session(alice).token) is None

    def test_truthy_but_not_true_flag_rejected(
        self, issuer: SessionIssuer, settings: Settings, clock: ManualClock
    ) -> None:
        now = int(clock.now().timestamp())
        token = jwt.encode(
            {"sub": "alice", "account_id": 7, "mfa_pending": "yes", "jti": "j", "iat": now, "exp": now + 60},
            settings.secret_key,
            algorithm="HS256",
        )
        assert issuer.decode_pending(token) is None

    def test_single_use(self, issuer: SessionIssuer, alice: Account) -> None:
        token = issuer.issue_pending(alice).token
        claims = issuer.decode_pending(token)
        assert issuer.spend_pending(claims)
        assert not issuer.spend_pending(claims)
        assert issuer.decode_pending(token) is None

    def test_released_token_can_be_spent_again(self, issuer: SessionIssuer, alice: Account) -> None:
        token = issuer.issue_pending(alice).token
        claims = issuer.decode_pending(token)
        assert issuer.spend_pending(claims)
        assert issuer.decode_pending(token) is None
        issuer.release_pending(claims)
        assert issuer.decode_pending(token) == claims
        assert issuer.spend_pending(claims)

    def test_spent_set_is_pruned_after_expiry(self, issuer: SessionIssuer, alice: Account, clock: ManualClock) -> None:
        first = issuer.decode_pending(issuer.issue_pending(alice).token)
        issuer.spend_pending(first)
        clock.advance(301)
        second = issuer.decode_pending(issuer.issue_pending(alice).token)
        issuer.spend_pending(second)
        assert first["jti"] not in issuer._spent
        assert second["jti"] in issuer._spent
