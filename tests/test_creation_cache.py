"""Tests for the short-lived user creation cache."""

from loreauth.service.creation_cache import CreationCache


class TestCreationCache:
    def test_record_and_get_normalizes_email(self, clock):
        cache = CreationCache(600, clock=clock)
        cache.record("Alice@Example.com ", "u1")
        entry = cache.get("alice@example.com")
        assert entry.user_id == "u1"
        assert entry.email == "alice@example.com"

    def test_entry_expires_after_ttl(self, clock):
        cache = CreationCache(600, clock=clock)
        cache.record("a@example.com", "u1")
        clock.advance(seconds=601)
        assert cache.get("a@example.com") is None
        assert len(cache) == 0

    def test_refresh_extends_live_entry(self, clock):
        cache = CreationCache(600, clock=clock)
        cache.record("a@example.com", "u1")
        clock.advance(seconds=500)
        assert cache.refresh("a@example.com").timestamp == clock.now
        clock.advance(seconds=500)
        assert cache.get("a@example.com") is not None

    def test_refresh_never_creates(self, clock):
        cache = CreationCache(600, clock=clock)
        assert cache.refresh("nobody@example.com") is None
        assert len(cache) == 0

    def test_refresh_drops_stale_entry(self, clock):
        cache = CreationCache(600, clock=clock)
        cache.record("a@example.com", "u1")
        clock.advance(seconds=700)
        assert cache.refresh("a@example.com") is None

    def test_sweep(self, clock):
        cache = CreationCache(600, clock=clock)
        cache.record("old@example.com", "u1")
        clock.advance(seconds=400)
        cache.record("new@example.com", "u2")
        clock.advance(seconds=300)
        assert cache.sweep() == 1
        assert cache.get("new@example.com").user_id == "u2"
