"""Tests for the signup session state machine."""

import pytest

from loreauth.service.creation_cache import CreationCache
from loreauth.service.errors import NotFoundError
from loreauth.service.sessions import MAX_EVENT_HISTORY, SessionManager, can_transition
from loreauth.storage.models import SessionEvent, SessionEventType, SessionStatus


def _manager(clock, **kwargs):
    published = []
    closed = []
    manager = SessionManager(
        CreationCache(600, clock=clock),
        publisher=published.append,
        on_session_closed=closed.append,
        clock=clock,
        **kwargs,
    )
    return manager, published, closed


def _event(kind, **data):
    return SessionEvent(kind, data)


def _ready_session(manager, email="alice@example.com"):
    session = manager.create_session(email)
    manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))
    return manager.record_event(session.id, _event(SessionEventType.USER_CREATED, user_id="u1"))


class TestTransitions:
    def test_can_transition_is_monotonic(self):
        assert can_transition(SessionStatus.PENDING_CREATION, SessionStatus.READY_FOR_LOGIN)
        assert not can_transition(SessionStatus.READY_FOR_LOGIN, SessionStatus.PENDING_VERIFICATION)
        assert can_transition(SessionStatus.AUTHENTICATED, SessionStatus.EXPIRED)
        assert not can_transition(SessionStatus.FAILED, SessionStatus.READY_FOR_LOGIN)
        assert not can_transition(SessionStatus.EXPIRED, SessionStatus.FAILED)

    def test_happy_path(self, clock):
        manager, published, _ = _manager(clock)
        session = manager.create_session("Alice@Example.com")
        assert session.status == SessionStatus.PENDING_CREATION
        assert session.email == "alice@example.com"
        assert session.metadata["provider"] == "credentials"

        manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))
        assert session.status == SessionStatus.PENDING_VERIFICATION

        manager.record_event(session.id, _event(SessionEventType.USER_CREATED, user_id="u1"))
        assert session.status == SessionStatus.READY_FOR_LOGIN
        assert session.user_id == "u1"
        assert len(session.login_token) == 64

        token = session.login_token
        manager.record_event(session.id, _event(SessionEventType.LOGIN_ATTEMPT, token=token))
        assert session.status == SessionStatus.AUTHENTICATED
        assert session.login_token is None

        assert [e.data["status"] for e in published] == [
            "pending-verification",
            "ready-for-login",
            "authenticated",
        ]
        assert published[-1].data["progress"] == 100
        assert published[-1].data["nextAction"] == "redirect"

    def test_backward_event_is_recorded_but_ignored(self, clock):
        manager, published, _ = _manager(clock)
        session = _ready_session(manager)
        token = session.login_token

        manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))

        assert session.status == SessionStatus.READY_FOR_LOGIN
        assert session.login_token == token
        assert session.last_event.type == SessionEventType.CREATION_ACCEPTED
        assert published[-1].data["status"] == "ready-for-login"

    def test_duplicate_ready_event_keeps_token(self, clock):
        manager, _, _ = _manager(clock)
        session = _ready_session(manager)
        token = session.login_token
        manager.record_event(session.id, _event(SessionEventType.USER_VERIFIED, user_id="u1"))
        assert session.login_token == token

    def test_terminal_states_are_final(self, clock):
        manager, _, _ = _manager(clock)
        session = manager.create_session("a@example.com")
        manager.record_event(session.id, _event(SessionEventType.PROVISIONING_FAILED))
        manager.record_event(session.id, _event(SessionEventType.USER_CREATED, user_id="u1"))
        assert session.status == SessionStatus.FAILED
        assert session.login_token is None

    def test_unknown_session_raises(self, clock):
        manager, _, _ = _manager(clock)
        with pytest.raises(NotFoundError):
            manager.record_event("sess_missing", _event(SessionEventType.CREATION_ACCEPTED))
        assert "sess_missing" not in manager._session_locks

    def test_history_is_capped(self, clock):
        manager, _, _ = _manager(clock)
        session = manager.create_session("a@example.com")
        for _ in range(MAX_EVENT_HISTORY + 10):
            manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))
        assert len(session.event_history) == MAX_EVENT_HISTORY

    def test_publisher_errors_do_not_break_transitions(self, clock):
        def broken(event):
            raise RuntimeError("boom")

        manager = SessionManager(CreationCache(clock=clock), publisher=broken, clock=clock)
        session = manager.create_session("a@example.com")
        manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))
        assert session.status == SessionStatus.PENDING_VERIFICATION


class TestLoginAttempts:
    def test_wrong_token_counts_until_failure(self, clock):
        manager, _, _ = _manager(clock, max_attempts=3)
        session = _ready_session(manager)

        for expected in (1, 2):
            manager.record_event(session.id, _event(SessionEventType.LOGIN_ATTEMPT, token="wrong"))
            assert session.attempts == expected
            assert session.status == SessionStatus.READY_FOR_LOGIN

        manager.record_event(session.id, _event(SessionEventType.LOGIN_ATTEMPT, token="wrong"))
        assert session.attempts == 3
        assert session.status == SessionStatus.FAILED
        assert session.login_token is None

    def test_login_before_ready_is_ignored(self, clock):
        manager, _, _ = _manager(clock)
        session = manager.create_session("a@example.com")
        manager.record_event(session.id, _event(SessionEventType.LOGIN_ATTEMPT, token="x"))
        assert session.attempts == 0
        assert session.status == SessionStatus.PENDING_CREATION


class TestCreationCacheRace:
    def test_webhook_before_session_yields_ready_session(self, clock):
        manager, published, _ = _manager(clock)
        manager.creation_cache.record("bob@example.com", "u9")

        session = manager.create_session("BOB@example.com")

        assert session.status == SessionStatus.READY_FOR_LOGIN
        assert session.user_id == "u9"
        assert session.login_token
        assert published[-1].data["nextAction"] == "auto-login"

    def test_stale_cache_entry_is_ignored(self, clock):
        manager, _, _ = _manager(clock)
        manager.creation_cache.record("bob@example.com", "u9")
        clock.advance(seconds=601)
        session = manager.create_session("bob@example.com")
        assert session.status == SessionStatus.PENDING_CREATION


class TestExpiry:
    def test_get_expired_session_raises_and_publishes(self, clock):
        manager, published, _ = _manager(clock, ttl_minutes=15)
        session = manager.create_session("a@example.com")
        clock.advance(minutes=16)

        with pytest.raises(NotFoundError):
            manager.get_session(session.id)
        assert session.status == SessionStatus.EXPIRED
        assert published[-1].type == "session-expired"
        with pytest.raises(NotFoundError):
            manager.get_session(session.id)

    def test_ready_extends_expiry(self, clock):
        manager, _, _ = _manager(clock, ttl_minutes=15)
        session = manager.create_session("a@example.com")
        clock.advance(minutes=10)
        manager.record_event(session.id, _event(SessionEventType.USER_CREATED, user_id="u1"))
        clock.advance(minutes=10)
        assert manager.get_session(session.id).status == SessionStatus.READY_FOR_LOGIN

    def test_sweep_publishes_and_closes(self, clock):
        manager, published, closed = _manager(clock, ttl_minutes=15)
        stale = manager.create_session("old@example.com")
        clock.advance(minutes=10)
        fresh = manager.create_session("new@example.com")
        clock.advance(minutes=6)

        assert manager.sweep_expired() == 1
        assert closed == [stale.id]
        assert published[-1].session_id == stale.id
        assert published[-1].data["status"] == "expired"
        assert manager.get_session(fresh.id).id == fresh.id

    def test_delete_session(self, clock):
        manager, _, closed = _manager(clock)
        session = manager.create_session("a@example.com")
        assert manager.delete_session(session.id) is True
        assert manager.delete_session(session.id) is False
        assert closed == [session.id]
        with pytest.raises(NotFoundError):
            manager.get_session(session.id)
        with pytest.raises(NotFoundError):
            manager.record_event(session.id, _event(SessionEventType.CREATION_ACCEPTED))
        assert session.id not in manager._session_locks


class TestQueries:
    def test_find_active_by_email_prefers_newest_live(self, clock):
        manager, _, _ = _manager(clock)
        first = manager.create_session("a@example.com")
        clock.advance(seconds=5)
        second = manager.create_session("a@example.com")
        assert manager.find_active_by_email("A@example.com").id == second.id

        manager.record_event(second.id, _event(SessionEventType.PROVISIONING_FAILED))
        assert manager.find_active_by_email("a@example.com").id == first.id
        assert manager.find_active_by_email("other@example.com") is None

    def test_stats(self, clock):
        manager, _, _ = _manager(clock)
        manager.create_session("a@example.com")
        failed = manager.create_session("b@example.com")
        manager.record_event(failed.id, _event(SessionEventType.PROVISIONING_FAILED))
        ready = _ready_session(manager, "c@example.com")
        manager.record_event(
            ready.id, _event(SessionEventType.LOGIN_ATTEMPT, token=ready.login_token)
        )

        assert manager.stats() == {
            "total": 3,
            "active": 1,
            "expired": 0,
            "failed": 1,
            "authenticated": 1,
        }
