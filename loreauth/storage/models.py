from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    id: str
    email: str
    role: Optional[str] = None
    status: str = "active"
    provider: Optional[str] = None
    external_identifier: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_access: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UserRecord":
        """Build a record from an identity-store JSON object."""
        last_access = payload.get("last_access")
        if isinstance(last_access, str):
            try:
                last_access = datetime.fromisoformat(last_access.replace("Z", "+00:00"))
            except ValueError:
                last_access = None
        return cls(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            role=payload.get("role"),
            status=payload.get("status") or "active",
            provider=payload.get("provider"),
            external_identifier=payload.get("external_identifier"),
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            last_access=last_access if isinstance(last_access, datetime) else None,
        )

    def public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "provider": self.provider,
        }


@dataclass
class NonceRecord:
    address: str
    nonce: str
    issued_at: datetime

    def is_live(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.issued_at < ttl


@dataclass
class WalletTokenRecord:
    token_hash: str
    user_id: str
    address: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class RateLimitEntry:
    count: int
    reset_time: datetime


@dataclass
class CreationCacheEntry:
    user_id: str
    email: str
    timestamp: datetime


class SessionStatus(str, Enum):
    """Signup session states; the first four are ordered, the last two are terminal."""

    PENDING_CREATION = "pending-creation"
    PENDING_VERIFICATION = "pending-verification"
    READY_FOR_LOGIN = "ready-for-login"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.FAILED, SessionStatus.EXPIRED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    SessionStatus.PENDING_CREATION: 0,
    SessionStatus.PENDING_VERIFICATION: 1,
    SessionStatus.READY_FOR_LOGIN: 2,
    SessionStatus.AUTHENTICATED: 3,
    SessionStatus.FAILED: 4,
    SessionStatus.EXPIRED: 4,
}


class SessionEventType(str, Enum):
    CREATION_ACCEPTED = "creation-accepted"
    USER_CREATED = "user-created"
    USER_VERIFIED = "user-verified"
    LOGIN_ATTEMPT = "login-attempt"
    PROVISIONING_FAILED = "provisioning-failed"
    SESSION_EXPIRED = "session-expired"


@dataclass
class SessionEvent:
    type: SessionEventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AuthSession:
    id: str
    email: str
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    last_event: Optional[SessionEvent] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_history: List[SessionEvent] = field(default_factory=list)
    login_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def new(
        cls,
        email: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "AuthSession":
        created = now or utcnow()
        meta = {"provider": "credentials", **(metadata or {})}
        return cls(
            id=f"sess_{uuid.uuid4().hex}",
            email=email.strip().lower(),
            status=SessionStatus.PENDING_CREATION,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            metadata=meta,
        )

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class PushEvent:
    type: str
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_sse(self) -> str:
        """Encode as one server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict(), separators=(',', ':'))}\n\n"

    @property
    def ends_stream(self) -> bool:
        return self.data.get("status") in _STREAM_END_STATUSES


_STREAM_END_STATUSES = {
    SessionStatus.AUTHENTICATED.value,
    SessionStatus.FAILED.value,
    SessionStatus.EXPIRED.value,
}
