from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from loreauth.logging import get_logger
from loreauth.storage.errors import ConstraintViolation, IdentityStoreError
from loreauth.storage.models import UserRecord


class MemoryIdentityStore:
    """In-process identity store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserRecord] = {}
        self.passwords: Dict[str, str] = {}
        self.reset_requests: List[tuple[str, str]] = []
        self._data_lock = threading.RLock()

    def _lookup(self, identifier: str) -> Optional[UserRecord]:
        needle = identifier.strip().lower()
        for user in self.users.values():
            if user.email.lower() == needle:
                return user
            if user.external_identifier and user.external_identifier.lower() == needle:
                return user
        return None

    async def find_user_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self._lookup(identifier)

    async def create_user(self, fields: Dict[str, Any]) -> UserRecord:
        email = str(fields.get("email") or "").strip().lower()
        if not email:
            raise IdentityStoreError("email is required", status_code=400)
        with self._data_lock:
            if self._lookup(email):
                raise ConstraintViolation("user already exists", {"field": "email"})
            user = UserRecord(
                id=str(uuid.uuid4()),
                email=email,
                role=fields.get("role"),
                status=fields.get("status") or "active",
                provider=fields.get("provider"),
                external_identifier=fields.get("external_identifier"),
                first_name=fields.get("first_name"),
                last_name=fields.get("last_name"),
            )
            self.users[user.id] = user
            if fields.get("password"):
                self.passwords[user.id] = str(fields["password"])
        self.logger.info("memory_user_created", user_id=user.id, provider=user.provider)
        return user

    async def patch_user(self, user_id: str, fields: Dict[str, Any]) -> UserRecord:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise IdentityStoreError("user not found", status_code=404)
            for key, value in fields.items():
                if key == "last_access" and isinstance(value, str):
                    value = datetime.fromisoformat(value.replace("Z", "+00:00"))
                if hasattr(user, key) and key not in {"id", "created_at"}:
                    setattr(user, key, value)
            return user

    async def request_password_reset(self, email: str, reset_url: str) -> bool:
        with self._data_lock:
            if not self._lookup(email):
                return False
            self.reset_requests.append((email.strip().lower(), reset_url))
        return True

    async def close(self) -> None:
        return None

