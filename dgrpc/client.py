"""
Client dispatcher for dgrpc.

Sends one logical request per invoke() call and retries it over an
unreliable transport until a matching reply arrives or the retry budget is
spent. The request id is allocated once and the frame encoded once, so
every retransmission is byte-identical and the server can recognise it.

Also provides the subscription stream: after a successful subscribe the
endpoint turns receive-only and yields pushed update events until the
subscription's duration runs out or the stream is cancelled.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional

from .codec import encode_int
from .config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT,
    MONITOR_POLL_INTERVAL,
    SUBSCRIBE_OP_CODE,
    RuntimeConfig,
)
from .exceptions import (
    CodecError,
    FrameDecodeError,
    RemoteError,
    RetryExhaustedError,
    StreamBusyError,
    TransportClosedError,
    TransportError,
    TransportTimeout,
    ValidationError,
)
from .messages import Reply, Request, Semantics, decode_reply, encode_request
from .monitor import UpdateEvent
from .sequence import SequenceGenerator, request_id_sequence
from .stats import StatsCollector
from .transport import (
    Address,
    DatagramTransport,
    LossSimulator,
    format_address,
    normalize_address,
)

logger = logging.getLogger(__name__)

CALLER_ID_MAX = 0x7FFFFFFF


def generate_caller_id() -> int:
    """Pick a random positive 31-bit caller id."""
    return random.SystemRandom().randint(1, CALLER_ID_MAX)


class SubscriptionStream:
    """
    Time-bounded, cancellable sequence of pushed update events.

    Iterating blocks for at most ``poll_interval`` per receive so that
    cancel() from another thread takes effect promptly. Frames that are not
    callbacks (late replies) and callbacks that do not decode are dropped.
    """

    def __init__(
        self,
        transport: DatagramTransport,
        duration: float,
        poll_interval: float = MONITOR_POLL_INTERVAL,
        stats: Optional[StatsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._poll_interval = poll_interval
        self._stats = stats or StatsCollector()
        self._clock = clock
        self._deadline = clock() + duration
        self._cancelled = threading.Event()
        self.received = 0

    @property
    def remaining(self) -> float:
        """Seconds left before the stream ends on its own."""
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self._deadline - self._clock())

    @property
    def active(self) -> bool:
        return self.remaining > 0

    def cancel(self) -> None:
        """End the stream early."""
        if not self._cancelled.is_set():
            self._cancelled.set()
            logger.info("[MONITOR] Subscription stream cancelled")

    def __iter__(self):
        return self

    def __next__(self) -> UpdateEvent:
        while True:
            remaining = self.remaining
            if remaining <= 0:
                raise StopIteration

            try:
                data, _ = self._transport.recvfrom(min(self._poll_interval, remaining))
            except TransportTimeout:
                continue
            except TransportClosedError:
                self._cancelled.set()
                raise StopIteration
            except TransportError as e:
                logger.warning(f"[MONITOR] Receive failed: {e}")
                continue

            try:
                reply = decode_reply(data)
            except FrameDecodeError as e:
                logger.warning(f"[MONITOR] Malformed frame during subscription: {e}")
                continue

            if not reply.is_callback:
                logger.debug(f"[MONITOR] Dropping late reply for req={reply.request_id}")
                continue

            try:
                event = UpdateEvent.decode(reply.payload)
            except CodecError as e:
                logger.warning(f"[MONITOR] Undecodable update event: {e}")
                continue

            self.received += 1
            self._stats.increment("callbacks_received")
            return event

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()


class ClientDispatcher:
    """
    Issues requests to one server and waits for their replies.

    Args:
        transport: Local endpoint to send from and receive on
        server_address: (host, port) of the server
        caller_id: Identity sent with every request (random when omitted)
        sequence: Request id generator (a fresh one starting at 1 when omitted)
        semantics: Default invocation semantics
        timeout: Default seconds to wait for each attempt's reply
        max_retries: Default attempts per request
        loss: Loss simulator applied to outbound requests and inbound replies
        subscribe_op: Op code that registers for update events
        poll_interval: Receive poll while a subscription stream is open
        stats: Shared statistics collector
    """

    def __init__(
        self,
        transport: DatagramTransport,
        server_address: Address,
        caller_id: Optional[int] = None,
        sequence: Optional[SequenceGenerator] = None,
        semantics=Semantics.AT_LEAST_ONCE,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        loss: Optional[LossSimulator] = None,
        subscribe_op: int = SUBSCRIBE_OP_CODE,
        poll_interval: float = MONITOR_POLL_INTERVAL,
        stats: Optional[StatsCollector] = None,
    ):
        if timeout <= 0:
            raise ValidationError(f"Timeout must be positive, got {timeout}")
        if max_retries < 1:
            raise ValidationError(f"Retry count must be at least 1, got {max_retries}")

        self._transport = transport
        self._server = normalize_address(server_address)
        self.caller_id = caller_id if caller_id is not None else generate_caller_id()
        self._sequence = sequence or request_id_sequence()
        self.semantics = Semantics.parse(semantics)
        self.timeout = timeout
        self.max_retries = max_retries
        self._loss = loss or LossSimulator(0.0)
        self._subscribe_op = subscribe_op
        self._poll_interval = poll_interval
        self._stats = stats or StatsCollector()

        # One exchange at a time on the endpoint
        self._lock = threading.Lock()
        self._stream: Optional[SubscriptionStream] = None

    @classmethod
    def from_config(
        cls,
        transport: DatagramTransport,
        config: RuntimeConfig,
        caller_id: Optional[int] = None,
        rng: Optional[random.Random] = None,
        stats: Optional[StatsCollector] = None,
    ) -> "ClientDispatcher":
        """Build a dispatcher aimed at config.host:config.port."""
        return cls(
            transport,
            (config.host, config.port),
            caller_id=caller_id,
            semantics=config.semantics_value,
            timeout=config.timeout,
            max_retries=config.max_retries,
            loss=LossSimulator(config.loss_rate, rng),
            stats=stats,
        )

    @property
    def server_address(self) -> Address:
        return self._server

    @property
    def stats(self) -> StatsCollector:
        return self._stats

    # ---------------- Request / Reply ----------------

    def invoke(
        self,
        op_code: int,
        payload: bytes = b"",
        semantics=None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        loss_rate: Optional[float] = None,
    ) -> Reply:
        """
        Send a request and wait for its reply, retrying on silence.

        Args:
            op_code: Operation to invoke
            payload: Operation payload
            semantics: Override the default semantics for this call
            timeout: Override the per-attempt timeout
            max_retries: Override the attempt budget
            loss_rate: Override the simulated loss probability

        Returns:
            The first matching reply, whatever its status

        Raises:
            RetryExhaustedError: If no attempt produced a usable reply
            StreamBusyError: If a subscription stream owns the endpoint
            ValidationError: If a header field is out of range
            PayloadTooLargeError: If the request does not fit a datagram
        """
        semantics = self.semantics if semantics is None else Semantics.parse(semantics)
        timeout = self.timeout if timeout is None else timeout
        attempts = self.max_retries if max_retries is None else max_retries
        if attempts < 1:
            raise ValidationError(f"Retry count must be at least 1, got {attempts}")
        loss = self._loss if loss_rate is None else self._loss.with_rate(loss_rate)

        if self._stream is not None and self._stream.active:
            raise StreamBusyError("Endpoint is reading a subscription stream")

        request_id = self._sequence.next()
        frame = encode_request(
            Request(request_id, op_code, self.caller_id, semantics, bytes(payload))
        )

        with self._lock:
            for attempt in range(1, attempts + 1):
                if attempt > 1:
                    self._stats.increment("retransmissions")

                if loss.should_drop():
                    self._stats.increment("simulated_drops")
                    logger.info(
                        f"[DROP] Simulating request loss req={request_id} "
                        f"attempt {attempt}/{attempts}"
                    )
                else:
                    self._send(frame, request_id, op_code, attempt, attempts, semantics)

                reply = self._await_reply(request_id, timeout)
                if reply is None:
                    continue

                if loss.should_drop():
                    self._stats.increment("simulated_drops")
                    logger.info(f"[DROP] Simulating reply loss req={request_id}")
                    continue

                self._stats.increment("replies_received")
                logger.debug(f"[RECV] req={request_id} status={reply.status}")
                return reply

        self._stats.increment("retries_exhausted")
        logger.warning(f"[FAIL] req={request_id} op={op_code} gave up after {attempts} attempts")
        raise RetryExhaustedError(request_id, attempts)

    def _send(
        self,
        frame: bytes,
        request_id: int,
        op_code: int,
        attempt: int,
        attempts: int,
        semantics: Semantics,
    ) -> None:
        try:
            self._transport.sendto(frame, self._server)
        except TransportClosedError:
            raise
        except TransportError as e:
            # A failed send is indistinguishable from a lost one
            logger.warning(f"[SEND] req={request_id} failed: {e}")
            return
        self._stats.increment("requests_sent")
        logger.debug(
            f"[SEND] req={request_id} op={op_code} {semantics.label} "
            f"to {format_address(self._server)} attempt {attempt}/{attempts}"
        )

    def _await_reply(self, request_id: int, timeout: float) -> Optional[Reply]:
        """
        Wait up to timeout for the reply to request_id.

        Returns:
            The reply, or None on timeout or a malformed frame
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                data, _ = self._transport.recvfrom(remaining)
            except TransportTimeout:
                break
            except TransportClosedError:
                raise
            except TransportError as e:
                logger.debug(f"[RECV] {e}")
                continue

            try:
                reply = decode_reply(data)
            except FrameDecodeError as e:
                self._stats.increment("malformed_replies")
                logger.warning(f"[RECV] Malformed reply, abandoning attempt: {e}")
                return None

            if reply.request_id != request_id:
                self._stats.increment("stale_replies")
                logger.debug(
                    f"[RECV] Discarding reply for req={reply.request_id} "
                    f"while waiting for req={request_id}"
                )
                continue
            return reply

        self._stats.increment("timeouts")
        logger.info(f"[TIMEOUT] No reply for req={request_id} within {timeout:g}s")
        return None

    # ---------------- Subscriptions ----------------

    def subscribe(self, duration: int, semantics=None) -> SubscriptionStream:
        """
        Register for update events and open a stream over them.

        Args:
            duration: Seconds the server should push events for
            semantics: Override the default semantics for the registration

        Returns:
            A stream that ends after ``duration`` seconds or on cancel()

        Raises:
            ValidationError: If duration is negative
            RemoteError: If the server refused the registration
            RetryExhaustedError: If the server never acknowledged
        """
        if duration < 0:
            raise ValidationError(f"Subscription duration must be >= 0, got {duration}")

        reply = self.invoke(self._subscribe_op, encode_int(int(duration)), semantics=semantics)
        if not reply.ok:
            raise RemoteError(reply.status, reply.detail)

        logger.info(f"[MONITOR] Subscribed for {duration}s")
        self._stream = SubscriptionStream(
            self._transport, duration, self._poll_interval, self._stats
        )
        return self._stream

    def monitor(self, duration: int, handler: Callable[[UpdateEvent], None]) -> int:
        """
        Subscribe and feed every event to handler until the duration ends.

        Returns:
            Number of events delivered
        """
        with self.subscribe(duration) as stream:
            for event in stream:
                handler(event)
            count = stream.received
        logger.info(f"[MONITOR] Subscription ended after {count} event(s)")
        return count

    def close(self) -> None:
        if self._stream is not None:
            self._stream.cancel()
        self._transport.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
