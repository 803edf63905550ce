"""
Tests for dgrpc.cache module.
"""

import pytest
import threading

from dgrpc.cache import (
    DuplicateCache,
    LRUPolicy,
    TTLPolicy,
    UnboundedPolicy,
    policy_from_config,
)
from dgrpc.config import RuntimeConfig
from dgrpc.exceptions import InvalidConfigError

from conftest import FakeClock


class TestDuplicateCache:
    """Tests for the baseline unbounded cache."""

    def test_miss(self):
        """Test lookup of an unknown key."""
        cache = DuplicateCache()
        assert cache.lookup(1, 1) is None

    def test_store_and_lookup(self):
        """Test a stored reply comes back byte-identical."""
        cache = DuplicateCache()
        cache.store(7, 42, b"\x00\x00\x00\x2a\x00\x00\x00\x00")

        assert cache.lookup(7, 42) == b"\x00\x00\x00\x2a\x00\x00\x00\x00"
        assert (7, 42) in cache

    def test_key_is_compound(self):
        """Test caller id and request id both distinguish entries."""
        cache = DuplicateCache()
        cache.store(1, 5, b"a")
        cache.store(2, 5, b"b")

        assert cache.lookup(1, 5) == b"a"
        assert cache.lookup(2, 5) == b"b"
        assert cache.lookup(1, 6) is None

    def test_store_does_not_overwrite(self):
        """Test the first stored reply is kept."""
        cache = DuplicateCache()
        cache.store(1, 1, b"first")
        cache.store(1, 1, b"second")

        assert cache.lookup(1, 1) == b"first"

    def test_unbounded_never_evicts(self):
        """Test the baseline policy keeps everything."""
        clock = FakeClock()
        cache = DuplicateCache(clock=clock)
        for i in range(500):
            cache.store(1, i, b"x")
        clock.advance(10 ** 6)

        assert len(cache) == 500
        assert cache.lookup(1, 0) == b"x"

    def test_stats(self):
        """Test hit and miss accounting."""
        cache = DuplicateCache()
        cache.store(1, 1, b"x")
        cache.lookup(1, 1)
        cache.lookup(1, 2)

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["entries"] == 1
        assert stats["policy"] == "none"

    def test_concurrent_store(self):
        """Test concurrent stores from many threads."""
        cache = DuplicateCache()

        def worker(caller):
            for i in range(200):
                cache.store(caller, i, bytes([caller]))

        threads = [threading.Thread(target=worker, args=(c,)) for c in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 8 * 200
        assert cache.lookup(3, 150) == b"\x03"


class TestTTLPolicy:
    """Tests for time-to-live eviction."""

    def test_entry_expires(self):
        """Test an entry older than the TTL is gone on lookup."""
        clock = FakeClock()
        cache = DuplicateCache(TTLPolicy(ttl=60), clock=clock)
        cache.store(1, 1, b"x")

        clock.advance(60)
        assert cache.lookup(1, 1) == b"x"

        clock.advance(0.5)
        assert cache.lookup(1, 1) is None
        assert len(cache) == 0

    def test_prune_expired(self):
        """Test pruning removes only expired entries."""
        clock = FakeClock()
        cache = DuplicateCache(TTLPolicy(ttl=10), clock=clock)
        cache.store(1, 1, b"old")
        clock.advance(8)
        cache.store(1, 2, b"new")
        clock.advance(5)

        assert cache.prune_expired() == 1
        assert (1, 2) in cache
        assert (1, 1) not in cache

    def test_invalid_ttl(self):
        """Test a non-positive TTL is rejected."""
        with pytest.raises(InvalidConfigError):
            TTLPolicy(ttl=0)


class TestLRUPolicy:
    """Tests for bounded LRU eviction."""

    def test_evicts_oldest(self):
        """Test the least recently used entry leaves first."""
        cache = DuplicateCache(LRUPolicy(max_entries=2))
        cache.store(1, 1, b"a")
        cache.store(1, 2, b"b")
        cache.store(1, 3, b"c")

        assert cache.lookup(1, 1) is None
        assert cache.lookup(1, 2) == b"b"
        assert cache.lookup(1, 3) == b"c"

    def test_hit_refreshes(self):
        """Test a lookup hit protects the entry from eviction."""
        cache = DuplicateCache(LRUPolicy(max_entries=2))
        cache.store(1, 1, b"a")
        cache.store(1, 2, b"b")
        cache.lookup(1, 1)
        cache.store(1, 3, b"c")

        assert cache.lookup(1, 1) == b"a"
        assert cache.lookup(1, 2) is None
        assert cache.stats()["evictions"] == 1

    def test_invalid_size(self):
        """Test a zero capacity is rejected."""
        with pytest.raises(InvalidConfigError):
            LRUPolicy(max_entries=0)


class TestPolicyFromConfig:
    """Tests for building policies from configuration."""

    def test_default_is_unbounded(self):
        """Test the default configuration keeps the baseline."""
        assert isinstance(policy_from_config(RuntimeConfig()), UnboundedPolicy)

    def test_ttl(self):
        """Test ttl policy selection."""
        policy = policy_from_config(RuntimeConfig(cache_policy="ttl", cache_ttl=30))
        assert isinstance(policy, TTLPolicy)
        assert policy.ttl == 30

    def test_lru(self):
        """Test lru policy selection."""
        policy = policy_from_config(RuntimeConfig(cache_policy="lru", cache_max_entries=5))
        assert isinstance(policy, LRUPolicy)
        assert policy.max_entries == 5
