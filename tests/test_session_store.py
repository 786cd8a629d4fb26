"""Tests for login session lifecycle rules on the in-memory backend."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tokenlogin.config import configure
from tokenlogin.service.sessions import SessionStore
from tokenlogin.storage.memory import MemoryStore


@pytest.fixture
def backend():
    return MemoryStore()


@pytest.fixture
def config():
    return configure({"expiry_seconds": 300, "retain_seconds": 3600})


@pytest.fixture
def sessions(backend, config, clock):
    return SessionStore(backend, config, clock=clock)


class TestCreate:
    def test_create_opens_session_with_expiry(self, sessions, clock):
        session = sessions.create("user-1", "conn-1", "telegram")

        assert session.user_id == "user-1"
        assert session.connection_id == "conn-1"
        assert session.factor == "telegram"
        assert session.verify_at is None
        assert (session.expire_at - clock()).total_seconds() == 300
        assert sessions.find_open("user-1", "conn-1").id == session.id

    def test_token_is_hidden_from_repr(self, sessions):
        session = sessions.create("user-1", "conn-1", "telegram")

        assert session.token not in repr(session)

    def test_second_request_replaces_first(self, sessions, backend):
        first = sessions.create("user-1", "conn-1", "telegram")
        second = sessions.create("user-1", "conn-1", "telegram")

        assert sessions.find_open("user-1", "conn-1").id == second.id
        assert backend.get_login_session(first.id) is None

    def test_scopes_are_independent(self, sessions):
        a = sessions.create("user-1", "conn-1", "telegram")
        b = sessions.create("user-1", "conn-2", "telegram")
        c = sessions.create("user-1", None, "telegram")

        assert sessions.find_open("user-1", "conn-1").id == a.id
        assert sessions.find_open("user-1", "conn-2").id == b.id
        assert sessions.find_open("user-1", None).id == c.id

    def test_empty_connection_shares_none_scope(self, sessions):
        session = sessions.create("user-1", "", "telegram")

        assert session.connection_id is None
        assert sessions.find_open("user-1", None).id == session.id

    def test_replace_keeps_verified_sessions(self, sessions, backend):
        first = sessions.create("user-1", "conn-1", "telegram")
        assert sessions.mark_verified(first)

        sessions.create("user-1", "conn-1", "telegram")

        assert backend.get_login_session(first.id).verify_at is not None

    def test_concurrent_requests_leave_one_open_session(self, sessions, backend):
        barrier = threading.Barrier(8)

        def request():
            barrier.wait()
            return sessions.create("user-1", "conn-1", "telegram")

        with ThreadPoolExecutor(max_workers=8) as pool:
            created = list(pool.map(lambda _: request(), range(8)))

        open_sessions = [
            s for s in backend.list_login_sessions("user-1", "conn-1") if s.verify_at is None
        ]
        assert len(open_sessions) == 1
        assert open_sessions[0].id in {s.id for s in created}


class TestLookup:
    def test_expired_session_is_invisible(self, sessions, clock, backend):
        session = sessions.create("user-1", "conn-1", "telegram")
        clock.advance(301)

        assert sessions.find_open("user-1", "conn-1") is None
        assert sessions.find_for_principal("user-1", connection_id="conn-1") is None
        # lazily removed once encountered
        assert backend.get_login_session(session.id) is None

    def test_lookup_by_session_id_requires_matching_principal(self, sessions):
        session = sessions.create("user-1", "conn-1", "telegram")

        assert sessions.find_for_principal("user-2", session_id=session.id) is None
        assert sessions.find_for_principal("user-1", session_id=session.id).id == session.id

    def test_unknown_session_id(self, sessions):
        assert sessions.find_for_principal("user-1", session_id="missing") is None

    def test_verified_session_visible_until_retention_ends(self, sessions, clock):
        session = sessions.create("user-1", "conn-1", "telegram")
        assert sessions.mark_verified(session)

        clock.advance(3599)
        found = sessions.find_for_principal("user-1", connection_id="conn-1")
        assert found is not None and found.is_verified

        clock.advance(2)
        assert sessions.find_for_principal("user-1", connection_id="conn-1") is None


class TestVerifyAndInvalidate:
    def test_mark_verified_is_compare_and_set(self, sessions, backend):
        session = sessions.create("user-1", "conn-1", "telegram")

        assert sessions.mark_verified(session) is True
        assert sessions.mark_verified(session) is False
        stored = backend.get_login_session(session.id)
        assert stored.verify_at is not None
        assert stored.expire_at is None

    def test_mark_verified_fails_after_expiry(self, sessions, clock):
        session = sessions.create("user-1", "conn-1", "telegram")
        clock.advance(300)

        assert sessions.mark_verified(session) is False

    def test_invalidate_is_idempotent(self, sessions):
        sessions.create("user-1", "conn-1", "telegram")

        assert sessions.invalidate("user-1", "conn-1") == 1
        assert sessions.invalidate("user-1", "conn-1") == 0
        assert sessions.find_open("user-1", "conn-1") is None

    def test_invalidate_does_not_touch_verified(self, sessions, backend):
        session = sessions.create("user-1", "conn-1", "telegram")
        sessions.mark_verified(session)

        assert sessions.invalidate("user-1", "conn-1") == 0
        assert backend.get_login_session(session.id) is not None

    def test_invalidate_counts_only_open_sessions(self, sessions, clock):
        sessions.create("user-1", "conn-1", "telegram")
        clock.advance(400)

        assert sessions.invalidate("user-1", "conn-1") == 0


class TestPurge:
    def test_purge_removes_expired_and_retained_out(self, sessions, clock, backend):
        stale = sessions.create("user-1", "conn-1", "telegram")
        verified = sessions.create("user-2", "conn-1", "telegram")
        sessions.mark_verified(verified)
        clock.advance(301)
        fresh = sessions.create("user-3", "conn-1", "telegram")

        assert sessions.purge_expired() == 1
        assert backend.get_login_session(stale.id) is None
        assert backend.get_login_session(verified.id) is not None

        clock.advance(3600)
        assert sessions.purge_expired() == 2
        assert backend.get_login_session(verified.id) is None
        assert backend.get_login_session(fresh.id) is None
