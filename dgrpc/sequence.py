"""
Identifier generation for dgrpc.

Request ids and the collaborator's account numbers come from explicit
generator instances owned by whoever issues them, never from module-level
counters, so independent clients and services do not share state.
"""

from __future__ import annotations

import threading

from .config import UINT32_MAX


class SequenceGenerator:
    """
    Thread-safe, strictly increasing integer sequence.

    Wraps from ``limit`` back to ``start``.
    """

    def __init__(self, start: int = 1, limit: int = UINT32_MAX):
        if start > limit:
            raise ValueError(f"start {start} exceeds limit {limit}")
        self._lock = threading.Lock()
        self._start = start
        self._limit = limit
        self._next = start

    def next(self) -> int:
        """Return the next value."""
        with self._lock:
            value = self._next
            self._next = self._start if value >= self._limit else value + 1
            return value

    def peek(self) -> int:
        """Return the value the next call will yield, without consuming it."""
        with self._lock:
            return self._next

    def __iter__(self):
        return self

    def __next__(self) -> int:
        return self.next()


def request_id_sequence() -> SequenceGenerator:
    """Sequence for request ids; 0 is reserved for callbacks."""
    return SequenceGenerator(start=1, limit=UINT32_MAX)
