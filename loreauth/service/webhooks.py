from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from loreauth.logging import get_logger
from loreauth.service.creation_cache import CreationCache
from loreauth.service.errors import NotFoundError
from loreauth.service.sessions import SessionManager
from loreauth.storage.models import SessionEvent, SessionEventType

logger = get_logger(__name__)

USER_CREATE = "users.create"
USER_UPDATE = "users.update"


class WebhookParseError(Exception):
    """The request body is not JSON at all."""


class _UserPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    status: Optional[str] = None
    role: Optional[str] = None
    provider: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("invalid email")
        return value


class UserCreatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["user_created"] = "user_created"
    event: str
    collection: str
    key: Optional[str] = None
    payload: _UserPayload


class UserUpdatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["user_updated"] = "user_updated"
    event: str
    collection: str
    keys: List[str] = Field(default_factory=list)
    payload: _UserPayload


class IgnoredEvent(BaseModel):
    kind: Literal["ignored"] = "ignored"
    event: Optional[str] = None
    collection: Optional[str] = None
    reason: str


IdentityEvent = Union[UserCreatedEvent, UserUpdatedEvent, IgnoredEvent]


def parse_identity_event(body: bytes, *, user_collection: str = "directus_users") -> IdentityEvent:
    """Classify a webhook body by its ``(event, collection)`` pair.

    Raises ``WebhookParseError`` only when the body is not JSON; every
    other surprise becomes an ``IgnoredEvent`` carrying the reason.
    """
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookParseError("webhook body is not valid JSON") from exc
    if not isinstance(raw, dict):
        return IgnoredEvent(reason="body is not an object")

    event = raw.get("event") if isinstance(raw.get("event"), str) else None
    collection = raw.get("collection") if isinstance(raw.get("collection"), str) else None
    models: Dict[Tuple[str, str], Type[BaseModel]] = {
        (USER_CREATE, user_collection): UserCreatedEvent,
        (USER_UPDATE, user_collection): UserUpdatedEvent,
    }
    model = models.get((event, collection))
    if model is None:
        return IgnoredEvent(event=event, collection=collection, reason="unhandled event")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        return IgnoredEvent(
            event=event,
            collection=collection,
            reason=f"invalid shape: {exc.error_count()} error(s)",
        )


@dataclass
class WebhookOutcome:
    kind: str
    cached: bool = False
    session_id: Optional[str] = None
    reason: Optional[str] = None


class WebhookIngress:
    """Applies identity-store user events to the creation cache and sessions."""

    def __init__(
        self,
        creation_cache: CreationCache,
        sessions: SessionManager,
        *,
        user_collection: str = "directus_users",
    ) -> None:
        self.creation_cache = creation_cache
        self.sessions = sessions
        self.user_collection = user_collection

    def handle(self, body: bytes) -> WebhookOutcome:
        event = parse_identity_event(body, user_collection=self.user_collection)
        if isinstance(event, UserCreatedEvent):
            return self._on_created(event)
        if isinstance(event, UserUpdatedEvent):
            return self._on_updated(event)
        logger.info(
            "webhook_ignored",
            webhook_event=event.event,
            collection=event.collection,
            reason=event.reason,
        )
        return WebhookOutcome(kind=event.kind, reason=event.reason)

    def _on_created(self, event: UserCreatedEvent) -> WebhookOutcome:
        user = event.payload
        self.creation_cache.record(user.email, user.id)
        logger.info(
            "webhook_user_created",
            user_id=user.id,
            email=user.email,
            provider=user.provider,
        )
        session_id = self._forward(user.email, SessionEventType.USER_CREATED, user.id)
        return WebhookOutcome(kind=event.kind, cached=True, session_id=session_id)

    def _on_updated(self, event: UserUpdatedEvent) -> WebhookOutcome:
        user = event.payload
        # updates refresh an existing cache entry but never create one
        entry = self.creation_cache.refresh(user.email)
        if entry is None:
            logger.debug("webhook_user_update_uncached", user_id=user.id)
        user_id = entry.user_id if entry is not None else user.id
        session_id = self._forward(user.email, SessionEventType.USER_VERIFIED, user_id)
        return WebhookOutcome(kind=event.kind, cached=entry is not None, session_id=session_id)

    def _forward(self, email: str, event_type: SessionEventType, user_id: str) -> Optional[str]:
        session = self.sessions.find_active_by_email(email)
        if session is None:
            return None
        try:
            self.sessions.record_event(session.id, SessionEvent(event_type, {"user_id": user_id}))
        except NotFoundError:
            # swept between lookup and transition
            return None
        return session.id
