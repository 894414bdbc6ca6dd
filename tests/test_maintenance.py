"""Tests for the background sweeper."""

import asyncio

from loreauth.service.creation_cache import CreationCache
from loreauth.service.events import EventBroker
from loreauth.service.maintenance import MaintenanceWorker
from loreauth.service.nonces import NonceStore
from loreauth.service.rate_limit import FixedWindowRateLimiter
from loreauth.service.sessions import SessionManager
from loreauth.service.wallet import WalletChallengeService
from loreauth.storage.memory import MemoryIdentityStore


def _worker(clock, interval=300):
    cache = CreationCache(600, clock=clock)
    broker = EventBroker()
    sessions = SessionManager(
        cache,
        publisher=broker.publish,
        on_session_closed=broker.close_session,
        clock=clock,
    )
    wallet = WalletChallengeService(
        NonceStore(300, clock=clock), MemoryIdentityStore(), clock=clock
    )
    limiter = FixedWindowRateLimiter("login", clock=clock)
    return MaintenanceWorker(wallet, sessions, cache, [limiter], interval=interval), limiter


class TestRunOnce:
    def test_sweeps_every_store(self, clock):
        worker, limiter = _worker(clock)
        worker.wallet.issue_nonce("0x" + "1" * 40)
        worker.sessions.create_session("a@example.com")
        worker.creation_cache.record("b@example.com", "u1")
        limiter.check_limit("k", 5, 60)

        assert worker.run_once() == {
            "wallet": 0,
            "sessions": 0,
            "creation_cache": 0,
            "rate_limits": 0,
        }

        clock.advance(minutes=16)
        assert worker.run_once() == {
            "wallet": 1,
            "sessions": 1,
            "creation_cache": 1,
            "rate_limits": 1,
        }


class TestLifecycle:
    async def test_start_and_stop(self, clock):
        worker, _ = _worker(clock, interval=0)
        await worker.start()
        assert worker.running
        await asyncio.sleep(0.01)
        await worker.stop()
        assert not worker.running

    async def test_sweep_errors_do_not_stop_the_loop(self, clock):
        worker, _ = _worker(clock, interval=0)
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        worker.run_once = flaky
        await worker.start()
        await asyncio.sleep(0.01)
        await worker.stop()
        assert len(calls) >= 2
