"""Background sweeper for the in-memory authentication state.

Every interval it drops:
- expired nonces and wallet tokens
- overdue signup sessions (publishing their expiry first)
- stale creation-cache entries
- closed rate-limit windows
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, Optional

from loreauth.logging import get_logger

if TYPE_CHECKING:
    from loreauth.service.creation_cache import CreationCache
    from loreauth.service.rate_limit import FixedWindowRateLimiter
    from loreauth.service.sessions import SessionManager
    from loreauth.service.wallet import WalletChallengeService

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300
MAX_BACKOFF_SECONDS = 300


class MaintenanceWorker:
    """Runs the periodic sweeps on the application's event loop."""

    def __init__(
        self,
        wallet: "WalletChallengeService",
        sessions: "SessionManager",
        creation_cache: "CreationCache",
        limiters: "list[FixedWindowRateLimiter]",
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.wallet = wallet
        self.sessions = sessions
        self.creation_cache = creation_cache
        self.limiters = list(limiters)
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("maintenance_worker_stopped")

    def run_once(self) -> Dict[str, int]:
        removed = {
            "wallet": self.wallet.sweep(),
            "sessions": self.sessions.sweep_expired(),
            "creation_cache": self.creation_cache.sweep(),
            "rate_limits": sum(limiter.sweep() for limiter in self.limiters),
        }
        if any(removed.values()):
            logger.info("maintenance_sweep_completed", **removed)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "maintenance_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
