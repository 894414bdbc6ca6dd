from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loreauth.logging import get_logger
from loreauth.storage.models import RateLimitEntry, utcnow

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int
    total_attempts: int
    limit: int = 0

    @property
    def reset_seconds(self) -> int:
        return self.retry_after


class FixedWindowRateLimiter:
    """Fixed-window attempt counter keyed by an arbitrary identifier.

    The first check for a key opens a window of ``window_seconds``; every
    allowed check inside the window counts as an attempt. Once the count
    reaches ``max_attempts`` further checks are denied, without counting,
    until the window closes. Instances are independent, so callers keep one
    per concern.
    """

    def __init__(
        self,
        name: str,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.name = name
        self._clock = clock or utcnow
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check_limit(self, key: str, max_attempts: int, window_seconds: int) -> RateLimitResult:
        if max_attempts <= 0:
            return RateLimitResult(True, max_attempts, 0, 0, max_attempts)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                limiter=self.name,
                window_seconds=window_seconds,
            )
            window_seconds = 60
        now = self._clock()
        with self._lock:
            self._sweep_locked(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(count=0, reset_time=now + timedelta(seconds=window_seconds))
                self._entries[key] = entry
            allowed = entry.count < max_attempts
            if allowed:
                entry.count += 1
            count = entry.count
            retry_after = max(0, int((entry.reset_time - now).total_seconds() + 0.999))
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                attempts=count,
                retry_after=retry_after,
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_attempts - count),
            retry_after=retry_after if not allowed else 0,
            total_attempts=count,
            limit=max_attempts,
        )

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def remaining_attempts(self, key: str, max_attempts: int) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_time <= now:
                return max_attempts
            return max(0, max_attempts - entry.count)

    def _sweep_locked(self, now: datetime) -> int:
        stale = [key for key, entry in self._entries.items() if entry.reset_time <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def sweep(self) -> int:
        with self._lock:
            removed = self._sweep_locked(self._clock())
        if removed:
            logger.debug("rate_limit_sweep", limiter=self.name, removed=removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
