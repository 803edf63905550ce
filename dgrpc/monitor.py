"""
Monitor registry for dgrpc.

Keeps a time-bounded set of subscriber endpoints and pushes update events
to them as callback frames. Expired subscriptions are removed lazily: the
registry never sweeps on a timer, it drops an entry when a publish finds
it past its expiration.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, List, Optional

from .codec import PayloadReader, PayloadWriter
from .exceptions import TransportError, ValidationError
from .messages import encode_reply, make_callback
from .stats import StatsCollector
from .transport import Address, LossSimulator, format_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateEvent:
    """
    Something identified by an id and a label changed to a numeric value.

    Wire layout: event_type (string) subject_id (int) subject_label (string)
    category (byte) value (float).
    """
    event_type: str
    subject_id: int
    subject_label: str
    category: int
    value: float

    def encode(self) -> bytes:
        return (
            PayloadWriter()
            .string(self.event_type)
            .int(self.subject_id)
            .string(self.subject_label)
            .byte(self.category)
            .float(self.value)
            .getvalue()
        )

    @classmethod
    def decode(cls, payload: bytes) -> "UpdateEvent":
        """
        Decode an event payload.

        Raises:
            CodecError: If the payload is truncated or malformed
        """
        reader = PayloadReader(payload)
        return cls(
            event_type=reader.string(),
            subject_id=reader.int(),
            subject_label=reader.string(),
            category=reader.byte(),
            value=reader.float(),
        )


@dataclass
class Subscription:
    """One subscriber endpoint and the moment it stops receiving."""
    address: Address
    registered_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


Sender = Callable[[bytes, Address], None]


class MonitorRegistry:
    """
    Thread-safe subscriber set with lazy expiry.

    At most one subscription exists per endpoint; subscribing again
    replaces the previous expiration.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        loss: Optional[LossSimulator] = None,
        stats: Optional[StatsCollector] = None,
    ):
        self._lock = RLock()
        self._subscriptions: Dict[Address, Subscription] = {}
        self._clock = clock
        self._loss = loss or LossSimulator(0.0)
        self._stats = stats or StatsCollector()

    def subscribe(self, address: Address, duration: float) -> Subscription:
        """
        Register an endpoint for updates.

        Args:
            address: Subscriber (host, port)
            duration: Seconds from now until the subscription lapses

        Returns:
            The new subscription

        Raises:
            ValidationError: If duration is negative
        """
        if duration < 0:
            raise ValidationError(f"Subscription duration must be >= 0, got {duration}")

        now = self._clock()
        subscription = Subscription(address, now, now + duration)
        with self._lock:
            replaced = address in self._subscriptions
            self._subscriptions[address] = subscription

        self._stats.increment("subscriptions")
        logger.info(
            f"[MONITOR] {'Renewed' if replaced else 'Registered'} "
            f"{format_address(address)} for {duration:g}s"
        )
        return subscription

    def unsubscribe(self, address: Address) -> bool:
        """Remove an endpoint. Returns True if it was registered."""
        with self._lock:
            return self._subscriptions.pop(address, None) is not None

    def get(self, address: Address) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(address)

    def members(self) -> List[Address]:
        """Registered endpoints, expired or not (expiry is lazy)."""
        with self._lock:
            return list(self._subscriptions.keys())

    def publish(self, event: UpdateEvent, send: Sender) -> int:
        """
        Push an event to every live subscriber.

        Expired subscriptions found along the way are removed. Each push is
        subject to the loss simulator.

        Args:
            event: Event to deliver
            send: Called as send(frame_bytes, address)

        Returns:
            Number of callbacks actually transmitted
        """
        frame = encode_reply(make_callback(event.encode()))
        sent = 0

        with self._lock:
            now = self._clock()
            for address, subscription in list(self._subscriptions.items()):
                if subscription.is_expired(now):
                    del self._subscriptions[address]
                    logger.info(f"[MONITOR] Subscription expired: {format_address(address)}")
                    continue

                if self._loss.should_drop():
                    self._stats.increment("simulated_drops")
                    logger.info(f"[DROP] Simulating callback loss to {format_address(address)}")
                    continue

                try:
                    send(frame, address)
                except TransportError as e:
                    logger.warning(f"[MONITOR] Callback to {format_address(address)} failed: {e}")
                    continue
                sent += 1
                self._stats.increment("callbacks_sent")
                logger.debug(f"[MONITOR] Sent {event.event_type} callback to {format_address(address)}")

        return sent

    def prune_expired(self) -> int:
        """Remove expired subscriptions now. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [a for a, s in self._subscriptions.items() if s.is_expired(now)]
            for address in stale:
                del self._subscriptions[address]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def __contains__(self, address: Address) -> bool:
        with self._lock:
            return address in self._subscriptions
