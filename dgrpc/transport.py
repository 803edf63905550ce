"""
Datagram transport endpoints for dgrpc.

Provides the endpoint contract the client and server are written against,
a UDP implementation, and the probabilistic loss simulator used on both
ends to exercise retry and duplicate handling.
"""

from __future__ import annotations

import random
import socket
import threading
from typing import Optional, Tuple

from .config import MAX_DATAGRAM_SIZE, validate_loss_rate
from .exceptions import (
    InvalidAddressError,
    TransportClosedError,
    TransportError,
    TransportTimeout,
)


Address = Tuple[str, int]


def normalize_address(address) -> Address:
    """
    Validate an (host, port) pair.

    Raises:
        InvalidAddressError: If it is not a host string and a 0-65535 port
    """
    try:
        host, port = address[0], address[1]
    except (TypeError, IndexError, KeyError):
        raise InvalidAddressError(address)
    if not isinstance(host, str) or not isinstance(port, int):
        raise InvalidAddressError(address)
    if not 0 <= port <= 65535:
        raise InvalidAddressError(address)
    return (host, port)


def format_address(address: Address) -> str:
    return f"{address[0]}:{address[1]}"


class DatagramTransport:
    """
    One datagram endpoint.

    Subclasses deliver whole datagrams or nothing; there is no ordering
    or delivery guarantee.
    """

    @property
    def address(self) -> Address:
        """Local address this endpoint receives on."""
        raise NotImplementedError

    def sendto(self, data: bytes, address: Address) -> None:
        """Send one datagram. Delivery is not guaranteed."""
        raise NotImplementedError

    def recvfrom(self, timeout: Optional[float] = None) -> Tuple[bytes, Address]:
        """
        Receive one datagram.

        Args:
            timeout: Seconds to wait (None = block forever, 0 = non-blocking)

        Raises:
            TransportTimeout: If nothing arrives in time
            TransportClosedError: If the endpoint has been closed
        """
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class UdpTransport(DatagramTransport):
    """UDP socket endpoint."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 0,
        buffer_size: int = MAX_DATAGRAM_SIZE,
    ):
        self._buffer_size = buffer_size
        self._recv_lock = threading.Lock()
        self._closed = False
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._sock.bind((host, port))
        except OSError as e:
            self._sock.close()
            raise TransportError(f"Cannot bind UDP {host}:{port}: {e}")

    @property
    def address(self) -> Address:
        if self._closed:
            raise TransportClosedError("UDP endpoint is closed")
        host, port = self._sock.getsockname()[:2]
        return (host, port)

    @property
    def closed(self) -> bool:
        return self._closed

    def sendto(self, data: bytes, address: Address) -> None:
        if self._closed:
            raise TransportClosedError("UDP endpoint is closed")
        try:
            self._sock.sendto(data, address)
        except OSError as e:
            raise TransportError(f"Send to {format_address(address)} failed: {e}")

    def recvfrom(self, timeout: Optional[float] = None) -> Tuple[bytes, Address]:
        if self._closed:
            raise TransportClosedError("UDP endpoint is closed")
        with self._recv_lock:
            try:
                self._sock.settimeout(timeout)
                data, addr = self._sock.recvfrom(self._buffer_size)
            except (socket.timeout, BlockingIOError):
                raise TransportTimeout(f"No datagram within {timeout}s")
            except OSError as e:
                if self._closed:
                    raise TransportClosedError("UDP endpoint is closed")
                raise TransportError(f"Receive failed: {e}")
        return data, (addr[0], addr[1])

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._sock.close()


class LossSimulator:
    """
    Probabilistic datagram loss.

    Each call to should_drop() makes one uniform draw against the rate.
    No draw is made at all when the rate is zero, so a scripted random
    source only sees the draws that matter.
    """

    def __init__(self, rate: float = 0.0, rng: Optional[random.Random] = None):
        self.rate = validate_loss_rate(rate)
        self._rng = rng if rng is not None else random.Random()
        self._lock = threading.Lock()
        self.drops = 0

    def should_drop(self) -> bool:
        """Return True if the next datagram should be treated as lost."""
        if self.rate <= 0.0:
            return False
        with self._lock:
            drop = self._rng.random() < self.rate
            if drop:
                self.drops += 1
        return drop

    def with_rate(self, rate: float) -> "LossSimulator":
        """A simulator sharing this one's random source at another rate."""
        if rate == self.rate:
            return self
        return LossSimulator(rate, self._rng)
