"""
Statistics and metrics collection for dgrpc.

Provides thread-safe counters for both ends of an invocation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, fields
from threading import RLock
from typing import Dict, Optional


@dataclass
class InvocationStats:
    """Counters for request/reply handling."""

    # Client side
    requests_sent: int = 0
    retransmissions: int = 0
    timeouts: int = 0
    replies_received: int = 0
    stale_replies: int = 0
    malformed_replies: int = 0
    retries_exhausted: int = 0
    callbacks_received: int = 0

    # Server side
    requests_received: int = 0
    replies_sent: int = 0
    duplicates_suppressed: int = 0
    duplicates_in_flight: int = 0
    invalid_requests: int = 0
    operations_dispatched: int = 0
    subscriptions: int = 0
    callbacks_sent: int = 0

    # Both
    simulated_drops: int = 0


@dataclass
class CallerStats:
    """Per-caller counters kept by the server."""

    requests_received: int = 0
    duplicates_suppressed: int = 0


class StatsCollector:
    """
    Thread-safe statistics collector.

    Provides atomic counter operations and stat snapshots.
    """

    def __init__(self):
        self._lock = RLock()
        self._stats = InvocationStats()
        self._start_time = time.time()
        self._per_caller_stats: Dict[int, CallerStats] = {}

    def increment(self, stat_name: str, amount: int = 1) -> None:
        """Increment a counter by name."""
        with self._lock:
            if hasattr(self._stats, stat_name):
                current = getattr(self._stats, stat_name)
                setattr(self._stats, stat_name, current + amount)

    def increment_caller(self, caller_id: int, stat_name: str, amount: int = 1) -> None:
        """Increment a per-caller counter."""
        with self._lock:
            if caller_id not in self._per_caller_stats:
                self._per_caller_stats[caller_id] = CallerStats()
            caller_stats = self._per_caller_stats[caller_id]
            if hasattr(caller_stats, stat_name):
                current = getattr(caller_stats, stat_name)
                setattr(caller_stats, stat_name, current + amount)

    def get(self, stat_name: str) -> int:
        """Read a single counter."""
        with self._lock:
            return getattr(self._stats, stat_name)

    def get_stats(self) -> Dict[str, int]:
        """Get a copy of all global statistics."""
        with self._lock:
            snapshot = {f.name: getattr(self._stats, f.name) for f in fields(self._stats)}
            snapshot["uptime_seconds"] = int(time.time() - self._start_time)
            snapshot["callers_tracked"] = len(self._per_caller_stats)
            return snapshot

    def get_caller_stats(self, caller_id: int) -> Optional[Dict[str, int]]:
        """Get statistics for a specific caller."""
        with self._lock:
            if caller_id not in self._per_caller_stats:
                return None
            cs = self._per_caller_stats[caller_id]
            return {
                "requests_received": cs.requests_received,
                "duplicates_suppressed": cs.duplicates_suppressed,
            }

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self._stats = InvocationStats()
            self._per_caller_stats.clear()
            self._start_time = time.time()
