from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loreauth.logging import get_logger
from loreauth.service.creation_cache import CreationCache
from loreauth.service.errors import NotFoundError
from loreauth.service.events import build_push_event
from loreauth.service.nonces import secrets_match
from loreauth.storage.models import (
    AuthSession,
    PushEvent,
    SessionEvent,
    SessionEventType,
    SessionStatus,
    utcnow,
)

logger = get_logger(__name__)

MAX_EVENT_HISTORY = 50
LOGIN_TOKEN_NUM_BYTES = 32

_EVENT_TARGETS = {
    SessionEventType.CREATION_ACCEPTED: SessionStatus.PENDING_VERIFICATION,
    SessionEventType.USER_CREATED: SessionStatus.READY_FOR_LOGIN,
    SessionEventType.USER_VERIFIED: SessionStatus.READY_FOR_LOGIN,
    SessionEventType.PROVISIONING_FAILED: SessionStatus.FAILED,
    SessionEventType.SESSION_EXPIRED: SessionStatus.EXPIRED,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Statuses only move forward; failed and expired are reachable from any live state."""
    if current.is_terminal:
        return False
    if target.is_terminal:
        return True
    return target.rank > current.rank


class SessionManager:
    """Owns signup sessions; ``record_event`` is the only mutator.

    Every transition for a session id runs under that id's lock, and the
    resulting push event is published before the lock is released, so
    subscribers observe transitions in the order they were applied.
    """

    def __init__(
        self,
        creation_cache: CreationCache,
        *,
        ttl_minutes: int = 15,
        max_attempts: int = 3,
        publisher: Optional[Callable[[PushEvent], Any]] = None,
        on_session_closed: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.creation_cache = creation_cache
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self._publisher = publisher
        self._on_session_closed = on_session_closed
        self._clock = clock or utcnow
        self._sessions: Dict[str, AuthSession] = {}
        self._sessions_lock = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, session_id: str) -> Optional[threading.Lock]:
        """Lock of a stored session; None once the session is gone."""
        with self._sessions_lock:
            if session_id not in self._sessions:
                return None
            return self._session_locks.setdefault(session_id, threading.Lock())

    def create_session(
        self, email: str, metadata: Optional[Dict[str, Any]] = None
    ) -> AuthSession:
        session = AuthSession.new(
            email, self.ttl_minutes, now=self._clock(), metadata=metadata
        )
        with self._sessions_lock:
            self._sessions[session.id] = session
            self._session_locks[session.id] = threading.Lock()
        logger.info("session_created", session_id=session.id, email=session.email)

        cached = self.creation_cache.get(session.email)
        if cached is not None:
            logger.info(
                "session_creation_cache_hit",
                session_id=session.id,
                user_id=cached.user_id,
            )
            self.record_event(session.id, SessionEvent(SessionEventType.CREATION_ACCEPTED))
            session = self.record_event(
                session.id,
                SessionEvent(SessionEventType.USER_CREATED, {"user_id": cached.user_id}),
            )
        return session

    def _lookup(self, session_id: str) -> Optional[AuthSession]:
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def get_session(self, session_id: str) -> AuthSession:
        session = self._lookup(session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if session.status == SessionStatus.EXPIRED:
            raise NotFoundError("session expired", detail={"session_id": session_id})
        if session.is_expired(self._clock()):
            self.record_event(session_id, SessionEvent(SessionEventType.SESSION_EXPIRED))
            raise NotFoundError("session expired", detail={"session_id": session_id})
        return session

    def record_event(self, session_id: str, event: SessionEvent) -> AuthSession:
        """Apply one event to a session and publish the result."""
        lock = self._lock_for(session_id)
        if lock is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        with lock:
            session = self._lookup(session_id)
            if session is None:
                raise NotFoundError("session not found", detail={"session_id": session_id})
            session.event_history.append(event)
            if len(session.event_history) > MAX_EVENT_HISTORY:
                del session.event_history[: len(session.event_history) - MAX_EVENT_HISTORY]
            session.last_event = event

            previous = session.status
            target = self._target_for(session, event)
            if target is not None and target != previous:
                if can_transition(previous, target):
                    self._enter(session, target, event)
                else:
                    logger.info(
                        "session_transition_rejected",
                        session_id=session_id,
                        current=previous.value,
                        target=target.value,
                        event_type=event.type.value,
                    )
            self._publish(build_push_event(session, event))
            return session

    def _target_for(self, session: AuthSession, event: SessionEvent) -> Optional[SessionStatus]:
        if event.type != SessionEventType.LOGIN_ATTEMPT:
            return _EVENT_TARGETS[event.type]
        if session.status != SessionStatus.READY_FOR_LOGIN:
            return None
        supplied = str(event.data.get("token") or "")
        if session.login_token and supplied and secrets_match(session.login_token, supplied):
            return SessionStatus.AUTHENTICATED
        session.attempts = min(session.attempts + 1, self.max_attempts)
        logger.warning(
            "session_login_attempt_failed",
            session_id=session.id,
            attempts=session.attempts,
            max_attempts=self.max_attempts,
        )
        if session.attempts >= self.max_attempts:
            return SessionStatus.FAILED
        return None

    def _enter(self, session: AuthSession, target: SessionStatus, event: SessionEvent) -> None:
        previous = session.status
        session.status = target
        now = self._clock()
        if target == SessionStatus.READY_FOR_LOGIN:
            user_id = event.data.get("user_id")
            if user_id:
                session.metadata["user_id"] = user_id
            session.login_token = secrets.token_hex(LOGIN_TOKEN_NUM_BYTES)
        elif target == SessionStatus.AUTHENTICATED:
            session.login_token = None
        elif target.is_terminal:
            session.login_token = None
        if target in (SessionStatus.READY_FOR_LOGIN, SessionStatus.AUTHENTICATED):
            session.expires_at = now + timedelta(minutes=self.ttl_minutes)
        logger.info(
            "session_status_changed",
            session_id=session.id,
            previous=previous.value,
            status=target.value,
            event_type=event.type.value,
        )

    def _publish(self, event: PushEvent) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher(event)
        except Exception as exc:
            logger.error(
                "session_publish_failed",
                session_id=event.session_id,
                error_type=type(exc).__name__,
            )

    def find_active_by_email(self, email: str) -> Optional[AuthSession]:
        needle = email.strip().lower()
        now = self._clock()
        with self._sessions_lock:
            candidates = [
                s for s in self._sessions.values()
                if s.email == needle and not s.status.is_terminal and not s.is_expired(now)
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def delete_session(self, session_id: str) -> bool:
        with self._sessions_lock:
            removed = self._sessions.pop(session_id, None)
            self._session_locks.pop(session_id, None)
        if removed is None:
            return False
        logger.info("session_deleted", session_id=session_id)
        if self._on_session_closed is not None:
            self._on_session_closed(session_id)
        return True

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._sessions_lock:
            overdue = [
                s.id for s in self._sessions.values()
                if s.status == SessionStatus.EXPIRED or s.is_expired(now)
            ]
        removed = 0
        for session_id in overdue:
            session = self._lookup(session_id)
            if session is None:
                continue
            if session.status != SessionStatus.EXPIRED:
                try:
                    self.record_event(session_id, SessionEvent(SessionEventType.SESSION_EXPIRED))
                except NotFoundError:
                    continue
            if self.delete_session(session_id):
                removed += 1
        if removed:
            logger.info("session_sweep", removed=removed)
        return removed

    def list_sessions(self) -> List[AuthSession]:
        with self._sessions_lock:
            return list(self._sessions.values())

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        counts = {"total": 0, "active": 0, "expired": 0, "failed": 0, "authenticated": 0}
        for session in self.list_sessions():
            counts["total"] += 1
            if session.status == SessionStatus.EXPIRED or session.is_expired(now):
                counts["expired"] += 1
            elif session.status == SessionStatus.FAILED:
                counts["failed"] += 1
            elif session.status == SessionStatus.AUTHENTICATED:
                counts["authenticated"] += 1
            else:
                counts["active"] += 1
        return counts
