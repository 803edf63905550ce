"""
In-memory datagram network for dgrpc.

Provides UDP-like endpoints backed by bounded queues so that clients and
servers can be wired together inside one process for tests and
simulation. Datagrams to an unbound address vanish, as with UDP.
"""

from __future__ import annotations

from collections import deque, defaultdict
from threading import Condition, RLock
from typing import Dict, Optional, Tuple

from .config import MAX_DATAGRAM_SIZE
from .exceptions import (
    InvalidAddressError,
    PayloadTooLargeError,
    TransportClosedError,
    TransportTimeout,
)
from .logging_setup import log_debug
from .transport import Address, DatagramTransport, format_address, normalize_address


LOOPBACK_HOST = "loopback"
EPHEMERAL_PORT_START = 49152


class LoopbackNetwork:
    """
    Thread-safe registry of in-memory endpoints.

    Provides bind/unbind, deliver, and receive operations similar to UDP
    sockets.
    """

    def __init__(self, capacity: int = 64):
        self._lock = RLock()
        self._endpoints: Dict[Address, Tuple[deque, Condition]] = {}
        self._capacity = capacity
        self._next_ephemeral = EPHEMERAL_PORT_START
        self._sent: Dict[Address, int] = defaultdict(int)
        self._undeliverable = 0

    def bind(
        self,
        address: Optional[Address] = None,
        capacity: Optional[int] = None,
    ) -> "LoopbackTransport":
        """
        Bind an endpoint.

        Args:
            address: (host, port) to bind; an ephemeral port when omitted
            capacity: Maximum queue depth (oldest dropped when full)

        Raises:
            InvalidAddressError: If the address is malformed or already bound
        """
        with self._lock:
            if address is None:
                address = self._allocate_ephemeral()
            address = normalize_address(address)
            if address in self._endpoints:
                raise InvalidAddressError(address)
            self._endpoints[address] = (
                deque(maxlen=capacity or self._capacity),
                Condition(),
            )
            log_debug(f"[BIND] Loopback endpoint {format_address(address)}")
            return LoopbackTransport(self, address)

    def _allocate_ephemeral(self) -> Address:
        while (LOOPBACK_HOST, self._next_ephemeral) in self._endpoints:
            self._next_ephemeral += 1
        address = (LOOPBACK_HOST, self._next_ephemeral)
        self._next_ephemeral += 1
        return address

    def unbind(self, address: Address) -> None:
        """Unbind an endpoint, waking any blocked receiver."""
        with self._lock:
            entry = self._endpoints.pop(address, None)
        if entry is not None:
            _, condition = entry
            with condition:
                condition.notify_all()
            log_debug(f"[UNBIND] Loopback endpoint {format_address(address)}")

    def is_bound(self, address: Address) -> bool:
        with self._lock:
            return address in self._endpoints

    def deliver(self, src: Address, dst: Address, data: bytes) -> bool:
        """
        Queue a datagram for dst.

        Returns:
            True if queued, False if dst is not bound
        """
        if len(data) > MAX_DATAGRAM_SIZE:
            raise PayloadTooLargeError(len(data), MAX_DATAGRAM_SIZE)

        with self._lock:
            self._sent[src] += 1
            entry = self._endpoints.get(dst)
            if entry is None:
                self._undeliverable += 1
                return False

        queue, condition = entry
        with condition:
            queue.append((bytes(data), src))
            condition.notify()
        return True

    def receive(
        self, address: Address, timeout: Optional[float] = None
    ) -> Optional[Tuple[bytes, Address]]:
        """
        Receive a datagram queued for address.

        Args:
            address: Bound endpoint address
            timeout: Seconds to wait (None = block forever, 0 = non-blocking)

        Returns:
            (data, source) if available, None on timeout

        Raises:
            TransportClosedError: If the endpoint is not bound
        """
        with self._lock:
            entry = self._endpoints.get(address)
            if entry is None:
                raise TransportClosedError(f"{format_address(address)} is not bound")

        queue, condition = entry
        with condition:
            if not queue:
                if timeout == 0:
                    return None
                elif timeout is None:
                    while not queue and self.is_bound(address):
                        condition.wait()
                else:
                    condition.wait_for(
                        lambda: queue or not self.is_bound(address), timeout=timeout
                    )

            if queue:
                return queue.popleft()
            if not self.is_bound(address):
                raise TransportClosedError(f"{format_address(address)} is not bound")
            return None

    def sent_count(self, address: Address) -> int:
        """Datagrams sent from address, delivered or not."""
        with self._lock:
            return self._sent.get(address, 0)

    def undeliverable_count(self) -> int:
        with self._lock:
            return self._undeliverable

    def depth(self, address: Address) -> int:
        """Datagrams waiting at address."""
        with self._lock:
            entry = self._endpoints.get(address)
            if entry is None:
                return 0
            return len(entry[0])


class LoopbackTransport(DatagramTransport):
    """An endpoint bound on a LoopbackNetwork."""

    def __init__(self, network: LoopbackNetwork, address: Address):
        self._network = network
        self._address = address
        self._closed = False

    @property
    def address(self) -> Address:
        return self._address

    @property
    def network(self) -> LoopbackNetwork:
        return self._network

    def sendto(self, data: bytes, address: Address) -> None:
        if self._closed:
            raise TransportClosedError("Loopback endpoint is closed")
        self._network.deliver(self._address, address, data)

    def recvfrom(self, timeout: Optional[float] = None) -> Tuple[bytes, Address]:
        if self._closed:
            raise TransportClosedError("Loopback endpoint is closed")
        result = self._network.receive(self._address, timeout)
        if result is None:
            raise TransportTimeout(f"No datagram within {timeout}s")
        return result

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._network.unbind(self._address)
