from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loreauth.logging import get_logger
from loreauth.storage.models import CreationCacheEntry, utcnow

logger = get_logger(__name__)


class CreationCache:
    """Short-lived memo of identity-store creation events keyed by email.

    Lets a session created after its creation webhook still see the user.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow
        self._entries: Dict[str, CreationCacheEntry] = {}
        self._lock = threading.Lock()

    def record(self, email: str, user_id: str) -> CreationCacheEntry:
        key = email.strip().lower()
        entry = CreationCacheEntry(user_id=user_id, email=key, timestamp=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def refresh(self, email: str) -> Optional[CreationCacheEntry]:
        """Bump the timestamp of a live entry; never creates one."""
        key = email.strip().lower()
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.timestamp > self.ttl:
                del self._entries[key]
                return None
            entry.timestamp = now
            return entry

    def get(self, email: str) -> Optional[CreationCacheEntry]:
        key = email.strip().lower()
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.timestamp > self.ttl:
                del self._entries[key]
                return None
            return entry

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now - e.timestamp > self.ttl]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("creation_cache_sweep", removed=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
