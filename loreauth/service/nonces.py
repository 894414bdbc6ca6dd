from __future__ import annotations

import hmac
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loreauth.logging import get_logger
from loreauth.storage.models import NonceRecord, utcnow

logger = get_logger(__name__)

NONCE_NUM_BYTES = 32  # 64 hex characters


def secrets_match(expected: str, supplied: str) -> bool:
    """Constant-time string comparison that accepts any unicode input."""
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


class ConsumeResult:
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class NonceStore:
    """Address -> nonce mapping with one live nonce per address.

    All reads and writes for an address happen under a single lock, so
    issuance is check-then-set and consumption is compare-and-delete.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow
        self._nonces: Dict[str, NonceRecord] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, address: str) -> NonceRecord:
        """Return the live nonce for ``address`` or store a fresh one."""
        key = address.lower()
        now = self._now()
        with self._lock:
            existing = self._nonces.get(key)
            if existing and existing.is_live(now, self.ttl):
                return existing
            record = NonceRecord(
                address=key,
                nonce=secrets.token_hex(NONCE_NUM_BYTES),
                issued_at=now,
            )
            self._nonces[key] = record
        logger.debug("nonce_issued", address=key, replaced=existing is not None)
        return record

    def get(self, address: str) -> Optional[NonceRecord]:
        with self._lock:
            return self._nonces.get(address.lower())

    def discard(self, address: str, nonce: Optional[str] = None) -> bool:
        """Delete the record, optionally only if it still holds ``nonce``."""
        key = address.lower()
        with self._lock:
            record = self._nonces.get(key)
            if record is None:
                return False
            if nonce is not None and not secrets_match(record.nonce, nonce):
                return False
            del self._nonces[key]
            return True

    def consume(self, address: str, nonce: str) -> str:
        """Atomically delete the record if it matches and is still live."""
        key = address.lower()
        now = self._now()
        with self._lock:
            record = self._nonces.get(key)
            if record is None or not secrets_match(record.nonce, nonce):
                return ConsumeResult.NOT_FOUND
            del self._nonces[key]
            if not record.is_live(now, self.ttl):
                return ConsumeResult.EXPIRED
            return ConsumeResult.CONSUMED

    def sweep(self) -> int:
        now = self._now()
        with self._lock:
            expired = [
                key for key, record in self._nonces.items()
                if not record.is_live(now, self.ttl)
            ]
            for key in expired:
                self._nonces.pop(key, None)
        if expired:
            logger.info("nonce_sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)
