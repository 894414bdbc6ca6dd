from __future__ import annotations

import asyncio
import threading
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from loreauth.logging import get_logger
from loreauth.storage.models import (
    AuthSession,
    PushEvent,
    SessionEvent,
    SessionEventType,
    SessionStatus,
    utcnow,
)

logger = get_logger(__name__)

CONNECTION_ESTABLISHED = "connection-established"
AUTH_EVENT = "auth-event"
SESSION_EXPIRED = "session-expired"
HEARTBEAT = "heartbeat"

_CLOSED = object()


class SubscriptionClosed(Exception):
    """The broker closed the stream for this session."""


# status -> (nextAction, message)
_STATUS_GUIDANCE = {
    SessionStatus.PENDING_CREATION: ("wait", "Creating your account..."),
    SessionStatus.PENDING_VERIFICATION: ("wait", "Waiting for account confirmation..."),
    SessionStatus.READY_FOR_LOGIN: ("auto-login", "Account ready. Signing you in..."),
    SessionStatus.AUTHENTICATED: ("redirect", "Signed in successfully."),
    SessionStatus.FAILED: ("restart", "Signup failed. Please start again."),
    SessionStatus.EXPIRED: ("retry", "Session expired. Please try again."),
}

_EVENT_PROGRESS = {
    SessionEventType.CREATION_ACCEPTED: 10,
    SessionEventType.USER_CREATED: 25,
    SessionEventType.USER_VERIFIED: 50,
}


def _progress(status: SessionStatus, event: Optional[SessionEvent]) -> int:
    if status == SessionStatus.AUTHENTICATED:
        return 100
    if status.is_terminal:
        return 0
    if event is not None and event.type in _EVENT_PROGRESS:
        return _EVENT_PROGRESS[event.type]
    return 0


def build_push_event(session: AuthSession, event: Optional[SessionEvent] = None) -> PushEvent:
    """Translate a session's current state into the frame sent to browsers."""
    next_action, message = _STATUS_GUIDANCE[session.status]
    event_type = (
        SESSION_EXPIRED if session.status == SessionStatus.EXPIRED else AUTH_EVENT
    )
    data = {
        "status": session.status.value,
        "event": event.type.value if event is not None else None,
        "nextAction": next_action,
        "message": message,
        "progress": _progress(session.status, event),
    }
    return PushEvent(type=event_type, session_id=session.id, data=data)


def build_snapshot(session: AuthSession) -> PushEvent:
    event = build_push_event(session, session.last_event)
    event.type = CONNECTION_ESTABLISHED
    return event


class Subscription:
    """One connected stream; its queue lives on the subscriber's event loop."""

    def __init__(self, broker: "EventBroker", session_id: str, loop: asyncio.AbstractEventLoop):
        self.broker = broker
        self.session_id = session_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _offer(self, item: object) -> bool:
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, item)
        except RuntimeError:
            # subscriber loop already closed
            return False
        return True

    async def next_event(self, timeout: Optional[float] = None) -> Optional[PushEvent]:
        """Return the next event, None on timeout; raises SubscriptionClosed once closed."""
        if self.closed and self.queue.empty():
            raise SubscriptionClosed
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self.closed = True
            raise SubscriptionClosed
        return item

    def close(self) -> None:
        self.broker.unsubscribe(self)


class EventBroker:
    """Per-session fan-out of push events to currently connected streams.

    ``publish`` may be called from any thread; nothing is buffered for
    sessions without subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(self, session_id, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(session_id, set()).add(subscription)
        logger.debug("push_subscribed", session_id=session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.session_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.session_id]

    def publish(self, event: PushEvent) -> int:
        with self._lock:
            targets = list(self._subscribers.get(event.session_id, ()))
        delivered = 0
        for subscription in targets:
            if subscription._offer(event):
                delivered += 1
            else:
                self.unsubscribe(subscription)
        logger.debug(
            "push_event_published",
            session_id=event.session_id,
            event_type=event.type,
            subscriber_count=delivered,
        )
        return delivered

    def close_session(self, session_id: str) -> int:
        with self._lock:
            targets = self._subscribers.pop(session_id, set())
        for subscription in targets:
            subscription._offer(_CLOSED)
        return len(targets)

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is not None:
                return len(self._subscribers.get(session_id, ()))
            return sum(len(subs) for subs in self._subscribers.values())


async def stream_session(
    subscription: Subscription,
    snapshot: PushEvent,
    *,
    heartbeat_seconds: float = 15.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscription until a terminal status or disconnect."""
    try:
        yield snapshot.to_sse()
        if snapshot.ends_stream:
            return
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.debug("push_client_disconnected", session_id=subscription.session_id)
                return
            try:
                event = await subscription.next_event(timeout=heartbeat_seconds)
            except SubscriptionClosed:
                return
            if event is None:
                yield PushEvent(
                    type=HEARTBEAT,
                    session_id=subscription.session_id,
                    data={},
                    timestamp=utcnow(),
                ).to_sse()
                continue
            yield event.to_sse()
            if event.ends_stream:
                return
    finally:
        subscription.close()
