"""Tests for the email/password signup orchestration."""

import pytest

from loreauth.service.creation_cache import CreationCache
from loreauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ProvisioningFailedError,
    ServerError,
)
from loreauth.service.sessions import SessionManager
from loreauth.service.signup import PASSWORD_RESET_MESSAGE, SignupService
from loreauth.storage.errors import ConstraintViolation, IdentityStoreError
from loreauth.storage.memory import MemoryIdentityStore
from loreauth.storage.models import SessionEvent, SessionEventType, SessionStatus


def _service(clock, identity=None):
    sessions = SessionManager(CreationCache(600, clock=clock), clock=clock)
    return SignupService(
        identity or MemoryIdentityStore(),
        sessions,
        app_base_url="https://lore.example/",
    )


class RacingIdentityStore(MemoryIdentityStore):
    """Lookup misses but creation hits a concurrent duplicate."""

    async def create_user(self, fields):
        raise ConstraintViolation("user already exists", {"field": "email"})


class BrokenIdentityStore(MemoryIdentityStore):
    async def create_user(self, fields):
        raise IdentityStoreError("identity store returned 500", status_code=500)

    async def request_password_reset(self, email, reset_url):
        raise IdentityStoreError("identity store returned 503", status_code=503)


class TestBeginSignup:
    async def test_creates_user_and_pending_session(self, clock):
        identity = MemoryIdentityStore()
        service = _service(clock, identity)

        session = await service.begin_signup(
            "New@Example.com", "CorrectHorse42", "Ada", ip="10.0.0.1", user_agent="pytest"
        )

        assert session.status == SessionStatus.PENDING_VERIFICATION
        assert session.metadata["ip"] == "10.0.0.1"
        user = identity.users[session.user_id]
        assert user.email == "new@example.com"
        assert user.provider == "credentials"
        assert user.role == "creator"
        assert identity.passwords[user.id] == "CorrectHorse42"

    async def test_existing_user_fails_session(self, clock):
        identity = MemoryIdentityStore()
        await identity.create_user({"email": "taken@example.com"})
        service = _service(clock, identity)

        with pytest.raises(ConflictError) as exc_info:
            await service.begin_signup("taken@example.com", "CorrectHorse42", "Ada")

        session_id = exc_info.value.detail["session_id"]
        assert service.sessions.get_session(session_id).status == SessionStatus.FAILED

    async def test_concurrent_duplicate_is_conflict(self, clock):
        service = _service(clock, RacingIdentityStore())
        with pytest.raises(ConflictError):
            await service.begin_signup("race@example.com", "CorrectHorse42", "Ada")

    async def test_store_failure_is_provisioning_failure(self, clock):
        service = _service(clock, BrokenIdentityStore())
        with pytest.raises(ProvisioningFailedError):
            await service.begin_signup("a@example.com", "CorrectHorse42", "Ada")
        sessions = service.sessions.list_sessions()
        assert [s.status for s in sessions] == [SessionStatus.FAILED]

    async def test_cached_creation_skips_identity_store(self, clock):
        identity = MemoryIdentityStore()
        service = _service(clock, identity)
        service.sessions.creation_cache.record("early@example.com", "u-early")

        session = await service.begin_signup("early@example.com", "CorrectHorse42", "Ada")

        assert session.status == SessionStatus.READY_FOR_LOGIN
        assert session.user_id == "u-early"
        assert identity.users == {}

    async def test_reuses_live_session_for_same_email(self, clock):
        service = _service(clock)
        existing = service.sessions.create_session("reuse@example.com")

        session = await service.begin_signup(
            "reuse@example.com", "CorrectHorse42", "Ada", session_id=existing.id
        )

        assert session.id == existing.id

    async def test_foreign_session_is_not_reused(self, clock):
        service = _service(clock)
        other = service.sessions.create_session("other@example.com")

        session = await service.begin_signup(
            "mine@example.com", "CorrectHorse42", "Ada", session_id=other.id
        )

        assert session.id != other.id


class TestCompleteLogin:
    def _ready(self, service):
        session = service.sessions.create_session("a@example.com")
        return service.sessions.record_event(
            session.id, SessionEvent(SessionEventType.USER_CREATED, {"user_id": "u1"})
        )

    def test_valid_token_authenticates(self, clock):
        service = _service(clock)
        session = self._ready(service)
        result = service.complete_login(session.id, session.login_token)
        assert result.status == SessionStatus.AUTHENTICATED

    def test_invalid_token_reports_remaining_attempts(self, clock):
        service = _service(clock)
        session = self._ready(service)
        with pytest.raises(AuthenticationError) as exc_info:
            service.complete_login(session.id, "wrong")
        assert exc_info.value.detail == {"attempts_remaining": 2}

    def test_missing_token_counts_as_attempt(self, clock):
        service = _service(clock)
        session = self._ready(service)
        with pytest.raises(AuthenticationError):
            service.complete_login(session.id, None)
        assert session.attempts == 1

    def test_not_ready_is_conflict(self, clock):
        service = _service(clock)
        session = service.sessions.create_session("a@example.com")
        with pytest.raises(ConflictError):
            service.complete_login(session.id, "anything")


class TestPasswordReset:
    async def test_message_is_generic(self, clock):
        identity = MemoryIdentityStore()
        await identity.create_user({"email": "known@example.com"})
        service = _service(clock, identity)

        assert await service.request_password_reset("Known@Example.com") == PASSWORD_RESET_MESSAGE
        assert await service.request_password_reset("unknown@example.com") == PASSWORD_RESET_MESSAGE
        assert identity.reset_requests == [
            ("known@example.com", "https://lore.example/auth/reset-password")
        ]

    async def test_store_failure_is_server_error(self, clock):
        service = _service(clock, BrokenIdentityStore())
        with pytest.raises(ServerError):
            await service.request_password_reset("a@example.com")
