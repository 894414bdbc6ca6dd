from __future__ import annotations

from typing import Optional

from loreauth.logging import get_logger
from loreauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ProvisioningFailedError,
    ServerError,
)
from loreauth.service.identity import IdentityStore
from loreauth.service.sessions import SessionManager
from loreauth.storage.errors import ConstraintViolation, IdentityStoreError
from loreauth.storage.models import (
    AuthSession,
    SessionEvent,
    SessionEventType,
    SessionStatus,
)

logger = get_logger(__name__)

PASSWORD_RESET_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)


class SignupService:
    """Email/password signup tracked through a session until auto-login."""

    def __init__(
        self,
        identity: IdentityStore,
        sessions: SessionManager,
        *,
        default_role: str = "creator",
        app_base_url: str = "http://localhost:3000",
    ) -> None:
        self.identity = identity
        self.sessions = sessions
        self.default_role = default_role
        self.app_base_url = app_base_url.rstrip("/")

    def _open_session(
        self,
        email: str,
        session_id: Optional[str],
        metadata: dict,
    ) -> AuthSession:
        if session_id:
            try:
                session = self.sessions.get_session(session_id)
            except NotFoundError:
                session = None
            if session is not None and session.email == email and not session.status.is_terminal:
                return session
            logger.info("signup_session_not_reusable", session_id=session_id)
        return self.sessions.create_session(email, metadata)

    async def begin_signup(
        self,
        email: str,
        password: str,
        first_name: str,
        *,
        session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthSession:
        email = email.strip().lower()
        metadata = {"ip": ip, "user_agent": user_agent, "provider": "credentials"}
        session = self._open_session(email, session_id, metadata)
        session = self.sessions.record_event(
            session.id, SessionEvent(SessionEventType.CREATION_ACCEPTED)
        )
        if session.status == SessionStatus.READY_FOR_LOGIN:
            # creation webhook already seen for this email
            return session

        try:
            existing = await self.identity.find_user_by_identifier(email)
        except IdentityStoreError as exc:
            self._fail(session.id, "lookup_failed")
            logger.error("signup_lookup_failed", email=email, status_code=exc.status_code)
            raise ProvisioningFailedError() from exc
        if existing is not None:
            self._fail(session.id, "user_exists")
            raise ConflictError(
                "A user with this email already exists. Please sign in.",
                detail={"session_id": session.id},
            )

        try:
            user = await self.identity.create_user(
                {
                    "email": email,
                    "password": password,
                    "first_name": first_name,
                    "external_identifier": f"email:{email}",
                    "provider": "credentials",
                    "role": self.default_role,
                    "status": "active",
                }
            )
        except ConstraintViolation as exc:
            self._fail(session.id, "user_exists")
            raise ConflictError(
                "A user with this email already exists. Please sign in.",
                detail={"session_id": session.id},
            ) from exc
        except IdentityStoreError as exc:
            self._fail(session.id, "create_failed")
            logger.error("signup_create_failed", email=email, status_code=exc.status_code)
            raise ProvisioningFailedError() from exc

        session.metadata["user_id"] = user.id
        logger.info("signup_user_requested", session_id=session.id, user_id=user.id)
        return self.sessions.get_session(session.id)

    def _fail(self, session_id: str, reason: str) -> None:
        try:
            self.sessions.record_event(
                session_id,
                SessionEvent(SessionEventType.PROVISIONING_FAILED, {"reason": reason}),
            )
        except NotFoundError:
            logger.info("signup_session_vanished", session_id=session_id)

    def complete_login(self, session_id: str, token: Optional[str]) -> AuthSession:
        session = self.sessions.get_session(session_id)
        if session.status == SessionStatus.AUTHENTICATED:
            raise ConflictError("session already authenticated")
        if session.status != SessionStatus.READY_FOR_LOGIN:
            raise ConflictError(
                "session is not ready for login",
                detail={"status": session.status.value},
            )
        session = self.sessions.record_event(
            session_id,
            SessionEvent(SessionEventType.LOGIN_ATTEMPT, {"token": token or ""}),
        )
        if session.status == SessionStatus.AUTHENTICATED:
            logger.info("session_login_completed", session_id=session_id, user_id=session.user_id)
            return session
        raise AuthenticationError(
            "invalid login token",
            detail={"attempts_remaining": max(0, self.sessions.max_attempts - session.attempts)},
        )

    async def request_password_reset(self, email: str) -> str:
        email = email.strip().lower()
        reset_url = f"{self.app_base_url}/auth/reset-password"
        try:
            sent = await self.identity.request_password_reset(email, reset_url)
        except IdentityStoreError as exc:
            if exc.status_code == 404:
                sent = False
            else:
                logger.error(
                    "password_reset_request_failed",
                    email=email,
                    status_code=exc.status_code,
                )
                raise ServerError("failed to process password reset request") from exc
        logger.info("password_reset_requested", email=email, dispatched=sent)
        return PASSWORD_RESET_MESSAGE
