from __future__ import annotations

import threading

from loreauth.config import get_settings, reset_settings_cache
from loreauth.logging import get_logger
from loreauth.service.creation_cache import CreationCache
from loreauth.service.events import EventBroker
from loreauth.service.identity import IdentityStore
from loreauth.service.maintenance import MaintenanceWorker
from loreauth.service.nonces import NonceStore
from loreauth.service.rate_limit import FixedWindowRateLimiter
from loreauth.service.sessions import SessionManager
from loreauth.service.signup import SignupService
from loreauth.service.wallet import WalletChallengeService
from loreauth.service.webhooks import WebhookIngress
from loreauth.storage.directus import DirectusIdentityStore
from loreauth.storage.memory import MemoryIdentityStore

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide in-memory authority and its collaborators."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_identity_store=self.settings.use_memory_identity_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.identity: IdentityStore = (
                MemoryIdentityStore()
                if self.settings.use_memory_identity_store
                else DirectusIdentityStore(
                    self.settings.identity_store_url,
                    self.settings.identity_store_token,
                    timeout=self.settings.identity_store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_identity_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        if not self.settings.use_memory_identity_store and not self.settings.identity_store_token:
            logger.warning(
                "identity_store_token_missing",
                identity_store_url=self.settings.identity_store_url,
            )

        self.nonces = NonceStore(self.settings.nonce_ttl_seconds)
        self.wallet = WalletChallengeService(
            self.nonces,
            self.identity,
            app_name=self.settings.app_name,
            wallet_email_domain=self.settings.wallet_email_domain,
            default_role=self.settings.default_user_role,
            token_ttl_minutes=self.settings.wallet_token_ttl_minutes,
        )
        self.creation_cache = CreationCache(self.settings.creation_cache_ttl_seconds)
        self.events = EventBroker()
        self.sessions = SessionManager(
            self.creation_cache,
            ttl_minutes=self.settings.session_ttl_minutes,
            max_attempts=self.settings.session_max_attempts,
            publisher=self.events.publish,
            on_session_closed=self.events.close_session,
        )
        self.signup = SignupService(
            self.identity,
            self.sessions,
            default_role=self.settings.default_user_role,
            app_base_url=self.settings.app_base_url,
        )
        self.webhooks = WebhookIngress(
            self.creation_cache,
            self.sessions,
            user_collection=self.settings.identity_user_collection,
        )
        self.login_limiter = FixedWindowRateLimiter("login")
        self.signup_limiter = FixedWindowRateLimiter("signup")
        self.maintenance = MaintenanceWorker(
            self.wallet,
            self.sessions,
            self.creation_cache,
            [self.login_limiter, self.signup_limiter],
            interval=self.settings.sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            identity_store="memory" if self.settings.use_memory_identity_store else "directus",
            session_ttl_minutes=self.settings.session_ttl_minutes,
            sweep_interval_seconds=self.settings.sweep_interval_seconds,
        )

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.identity.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
