# FILE: tests/test_sessions.py
"""
Tests for remote_runner/sessions.py
Token issuance, lazy expiry, revocation and the sweeper.
"""
import time

import pytest

from remote_runner.sessions import SessionStore, generate_session_token


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    s = SessionStore(ttl=60.0, clock=clock)
    yield s
    s.close()


class TestTokens:

    def test_fixed_length_hex(self):
        token = generate_session_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_differ(self):
        assert len({generate_session_token() for _ in range(50)}) == 50


class TestIssueAndValidate:

    def test_validate_returns_issued_fields(self, store, clock):
        record = store.issue("10.0.0.5", "alice")
        found = store.validate(record.token)
        assert found.host == "10.0.0.5"
        assert found.identity == "alice"
        assert found.expires_at == clock.now + 60.0

    def test_record_holds_no_secret(self, store):
        record = store.issue("10.0.0.5", "alice")
        assert not hasattr(record, "secret")

    def test_unknown_token_is_invalid(self, store):
        assert store.validate("nope") is None
        assert store.validate("") is None
        assert store.validate(None) is None

    def test_expired_token_is_invalid_and_removed(self, store, clock):
        record = store.issue("10.0.0.5", "alice")
        clock.now += 61.0
        assert store.validate(record.token) is None
        assert record.token not in store

    def test_use_does_not_extend_lifetime(self, store, clock):
        record = store.issue("10.0.0.5", "alice")
        clock.now += 50.0
        assert store.validate(record.token) is not None
        clock.now += 11.0
        assert store.validate(record.token) is None


class TestRevoke:

    def test_revoke_removes(self, store):
        record = store.issue("10.0.0.5", "alice")
        assert store.revoke(record.token) is True
        assert store.validate(record.token) is None

    def test_revoke_is_idempotent(self, store):
        record = store.issue("10.0.0.5", "alice")
        store.revoke(record.token)
        assert store.revoke(record.token) is True
        assert store.revoke(None) is True


class TestCleanup:

    def test_cleanup_removes_only_expired(self, store, clock):
        old = store.issue("h", "alice")
        clock.now += 30.0
        fresh = store.issue("h", "bob")
        clock.now += 31.0
        assert store.cleanup_expired() == 1
        assert old.token not in store
        assert fresh.token in store

    def test_sweeper_runs_in_background(self, clock):
        s = SessionStore(ttl=1.0, clock=clock, sweep_interval=0.02)
        try:
            record = s.issue("h", "alice")
            clock.now += 5.0
            s.start_sweeper()
            deadline = time.time() + 2.0
            while record.token in s and time.time() < deadline:
                time.sleep(0.01)
            assert record.token not in s
        finally:
            s.close()
