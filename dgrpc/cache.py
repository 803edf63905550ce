"""
Duplicate suppression cache for at-most-once invocation.

Maps (caller_id, request_id) to the encoded reply produced the first time
that request was processed. A retried request is answered from here
without running the operation again.

The key cannot tell a genuine retry from a caller reusing a request id for
a different call; in that case the stale reply is returned.

Eviction is a pluggable policy. Evicting an entry reopens the
re-execution window for its key, so a TTL must comfortably exceed the
longest retry sequence a client can run (timeout x retries).
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import RLock
from typing import Callable, Dict, Optional, Tuple

from .config import (
    DEFAULT_CACHE_MAX_ENTRIES,
    DEFAULT_CACHE_TTL,
    RuntimeConfig,
)
from .exceptions import InvalidConfigError


CacheKey = Tuple[int, int]


@dataclass
class CacheEntry:
    """A stored reply."""
    reply: bytes
    stored_at: float = field(default_factory=time.monotonic)


# ---------------- Eviction Policies ----------------


class EvictionPolicy:
    """
    Decides which entries leave the cache.

    The base policy never evicts, which is the baseline at-most-once
    contract: entries live as long as the server process.
    """

    name = "none"
    max_entries: Optional[int] = None
    refresh_on_hit = False

    def is_expired(self, entry: CacheEntry, now: float) -> bool:
        return False

    def describe(self) -> str:
        return self.name


class UnboundedPolicy(EvictionPolicy):
    """Keep every entry forever."""


class TTLPolicy(EvictionPolicy):
    """Drop entries older than ttl seconds when they are next looked up."""

    name = "ttl"

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, max_entries: Optional[int] = None):
        if ttl <= 0:
            raise InvalidConfigError(f"Cache TTL must be positive, got {ttl}")
        self.ttl = ttl
        self.max_entries = max_entries

    def is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at > self.ttl

    def describe(self) -> str:
        return f"ttl({self.ttl:g}s)"


class LRUPolicy(EvictionPolicy):
    """Bound the cache, evicting the least recently stored or hit entry."""

    name = "lru"
    refresh_on_hit = True

    def __init__(self, max_entries: int = DEFAULT_CACHE_MAX_ENTRIES):
        if max_entries < 1:
            raise InvalidConfigError(f"Cache size must be at least 1, got {max_entries}")
        self.max_entries = max_entries

    def describe(self) -> str:
        return f"lru({self.max_entries})"


def policy_from_config(config: RuntimeConfig) -> EvictionPolicy:
    """Build the eviction policy named by a RuntimeConfig."""
    if config.cache_policy == "ttl":
        return TTLPolicy(config.cache_ttl)
    if config.cache_policy == "lru":
        return LRUPolicy(config.cache_max_entries)
    return UnboundedPolicy()


# ---------------- Cache ----------------


class DuplicateCache:
    """
    Thread-safe reply cache keyed by (caller_id, request_id).

    lookup() and store() are each atomic, so concurrent request handlers
    can share one instance.
    """

    def __init__(
        self,
        policy: Optional[EvictionPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = RLock()
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._policy = policy or UnboundedPolicy()
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def policy(self) -> EvictionPolicy:
        return self._policy

    def lookup(self, caller_id: int, request_id: int) -> Optional[bytes]:
        """
        Find the reply stored for a request.

        Returns:
            The stored reply bytes, or None if absent or expired
        """
        key = (caller_id, request_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._policy.is_expired(entry, self._clock()):
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return None
            if self._policy.refresh_on_hit:
                self._entries.move_to_end(key)
            self._hits += 1
            return entry.reply

    def store(self, caller_id: int, request_id: int, reply: bytes) -> None:
        """
        Store the reply for a request.

        An existing entry for the same key is left untouched; entries are
        never mutated once created.
        """
        key = (caller_id, request_id)
        with self._lock:
            if key in self._entries:
                return
            self._entries[key] = CacheEntry(bytes(reply), self._clock())
            limit = self._policy.max_entries
            if limit is not None:
                while len(self._entries) > limit:
                    self._entries.popitem(last=False)
                    self._evictions += 1

    def prune_expired(self) -> int:
        """Remove entries the policy considers expired. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if self._policy.is_expired(entry, now)
            ]
            for key in stale:
                del self._entries[key]
            self._evictions += len(stale)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def stats(self) -> Dict[str, object]:
        """Get cache statistics."""
        with self._lock:
            return {
                "policy": self._policy.describe(),
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
