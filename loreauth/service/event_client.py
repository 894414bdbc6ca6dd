from __future__ import annotations

import asyncio
import json
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from loreauth.logging import get_logger
from loreauth.service.errors import ConnectionExhaustedError

logger = get_logger(__name__)

_TERMINAL_STATUSES = {"authenticated", "failed", "expired"}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def compute_backoff_delay(
    attempt: int,
    *,
    base: float = 1.0,
    jitter: float = 1.0,
    cap: float = 30.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff with additive jitter, capped at ``cap`` seconds."""
    rng = rng or random
    exponent = max(0, attempt - 1)
    delay = base * (2 ** exponent) + rng.uniform(0, jitter)
    return min(delay, cap)


class EventStreamClient:
    """Reconnecting consumer of the ``/events`` push channel.

    One logical subscription per client. A dropped stream is retried with
    exponential backoff until ``max_reconnect_attempts`` consecutive
    failures, after which the client moves to ``failed`` and reports
    ``ConnectionExhaustedError``; callers then poll ``fetch_session_status``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        on_event: Callable[[Dict[str, Any]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
        max_reconnect_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=httpx.Timeout(10.0, read=None),
        )
        self._on_event = on_event
        self._on_error = on_error
        self._on_state_change = on_state_change
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self.session_id: Optional[str] = None
        self.reconnect_attempts = 0
        self.last_status: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("event_client_state", session_id=self.session_id, state=state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

    def connect(self, session_id: str) -> asyncio.Task:
        """Start consuming the stream for ``session_id`` on the running loop."""
        if self._task is not None and not self._task.done():
            if session_id == self.session_id:
                return self._task
            self.disconnect()
        self.session_id = session_id
        self.reconnect_attempts = 0
        self._task = asyncio.create_task(self._run(session_id))
        return self._task

    def disconnect(self) -> None:
        """Cancel the consumer, including any pending reconnect sleep."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self.session_id = None
        self.reconnect_attempts = 0
        self.last_status = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self, session_id: str) -> None:
        while True:
            self._set_state(
                ConnectionState.RECONNECTING if self.reconnect_attempts else ConnectionState.CONNECTING
            )
            error: Optional[Exception] = None
            try:
                finished = await self._consume(session_id)
            except asyncio.CancelledError:
                raise
            except httpx.HTTPError as exc:
                finished = False
                error = exc
            if finished:
                self._set_state(ConnectionState.DISCONNECTED)
                return
            if not self._handle_closed(error):
                return
            delay = compute_backoff_delay(
                self.reconnect_attempts,
                base=self.base_delay,
                jitter=self.jitter,
                cap=self.max_delay,
                rng=self._rng,
            )
            logger.info(
                "event_client_reconnect_scheduled",
                session_id=session_id,
                attempt=self.reconnect_attempts,
                delay=round(delay, 3),
            )
            await self._sleep(delay)

    async def _consume(self, session_id: str) -> bool:
        """Read one connection; True once a terminal status has been seen."""
        async with self._client.stream(
            "GET",
            "/events",
            params={"session": session_id},
            headers={"Accept": "text/event-stream"},
        ) as response:
            response.raise_for_status()
            self._handle_open()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                if self._handle_message(line[len("data:"):].strip()):
                    return True
        return False

    def _handle_open(self) -> None:
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)

    def _handle_message(self, raw: str) -> bool:
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("event_client_malformed_payload", session_id=self.session_id)
            return False
        if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
            logger.warning("event_client_malformed_payload", session_id=self.session_id)
            return False
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        status = data.get("status")
        if status:
            self.last_status = status
        try:
            self._on_event(payload)
        except Exception as exc:
            logger.error(
                "event_client_handler_failed",
                session_id=self.session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return status in _TERMINAL_STATUSES

    def _handle_closed(self, error: Optional[Exception]) -> bool:
        """Record a dropped connection; False once attempts are exhausted."""
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(
                "event_client_reconnect_exhausted",
                session_id=self.session_id,
                attempts=self.reconnect_attempts,
                error_type=type(error).__name__ if error else None,
            )
            self._set_state(ConnectionState.FAILED)
            if self._on_error is not None:
                self._on_error(
                    ConnectionExhaustedError(
                        "push channel unavailable; poll session status instead",
                        detail={"attempts": self.reconnect_attempts},
                    )
                )
            return False
        self.reconnect_attempts += 1
        self._set_state(ConnectionState.RECONNECTING)
        return True

    async def fetch_session_status(self, session_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Poll ``GET /session/{id}``; None when the session is gone."""
        session_id = session_id or self.session_id
        if not session_id:
            return None
        response = await self._client.get(f"/session/{session_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, dict) and data.get("status"):
            self.last_status = data["status"]
        return data

    async def aclose(self) -> None:
        self.disconnect()
        await self._client.aclose()
