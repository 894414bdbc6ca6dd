"""Tests for the wallet nonce store: issuance, expiry and one-time consumption."""

import threading

from loreauth.service.nonces import ConsumeResult, NonceStore

ADDRESS = "0xAbC0000000000000000000000000000000000001"


class TestIssue:
    """Nonce issuance is idempotent within the TTL window."""

    def test_nonce_is_64_hex_chars(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        assert len(record.nonce) == 64
        int(record.nonce, 16)
        assert record.address == ADDRESS.lower()

    def test_reissue_within_ttl_returns_same_nonce(self, clock):
        store = NonceStore(300, clock=clock)
        first = store.issue(ADDRESS)
        clock.advance(seconds=299)
        second = store.issue(ADDRESS.lower())
        assert second.nonce == first.nonce
        assert len(store) == 1

    def test_reissue_after_ttl_returns_new_nonce(self, clock):
        store = NonceStore(300, clock=clock)
        first = store.issue(ADDRESS)
        clock.advance(seconds=300)
        second = store.issue(ADDRESS)
        assert second.nonce != first.nonce

    def test_concurrent_issue_yields_single_nonce(self, clock):
        store = NonceStore(300, clock=clock)
        results = []

        def worker():
            results.append(store.issue(ADDRESS).nonce)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(results)) == 1


class TestConsume:
    """Consumption is compare-and-delete."""

    def test_consume_once(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        assert store.consume(ADDRESS, record.nonce) == ConsumeResult.CONSUMED
        assert store.consume(ADDRESS, record.nonce) == ConsumeResult.NOT_FOUND
        assert store.get(ADDRESS) is None

    def test_consume_wrong_nonce_keeps_record(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        assert store.consume(ADDRESS, "0" * 64) == ConsumeResult.NOT_FOUND
        assert store.get(ADDRESS).nonce == record.nonce

    def test_consume_non_ascii_nonce_is_not_found(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        assert store.consume(ADDRESS, "é") == ConsumeResult.NOT_FOUND
        assert store.discard(ADDRESS, "é") is False
        assert store.get(ADDRESS).nonce == record.nonce

    def test_consume_expired_removes_record(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        clock.advance(seconds=301)
        assert store.consume(ADDRESS, record.nonce) == ConsumeResult.EXPIRED
        assert store.get(ADDRESS) is None

    def test_concurrent_consume_has_one_winner(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        outcomes = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            outcomes.append(store.consume(ADDRESS, record.nonce))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count(ConsumeResult.CONSUMED) == 1
        assert outcomes.count(ConsumeResult.NOT_FOUND) == 7


class TestSweep:
    def test_sweep_removes_only_expired(self, clock):
        store = NonceStore(300, clock=clock)
        store.issue(ADDRESS)
        clock.advance(seconds=200)
        store.issue("0x" + "2" * 40)
        clock.advance(seconds=150)
        assert store.sweep() == 1
        assert store.get(ADDRESS) is None
        assert store.get("0x" + "2" * 40) is not None

    def test_discard_respects_nonce(self, clock):
        store = NonceStore(300, clock=clock)
        record = store.issue(ADDRESS)
        assert store.discard(ADDRESS, "f" * 64) is False
        assert store.discard(ADDRESS, record.nonce) is True
        assert store.discard(ADDRESS) is False
