"""
Server listener for dgrpc.

Receives request datagrams on one endpoint and answers each with a reply:
- subscribe requests go to the monitor registry,
- at-most-once requests are answered from the duplicate cache when the
  (caller_id, request_id) pair has been seen before,
- everything else is dispatched to the registered operation.

The receive loop feeds an inbound channel drained by handler threads. One
handler thread gives the sequential baseline; more handle datagrams
concurrently through the same interface.
"""

from __future__ import annotations

import logging
import queue
import random
import threading
from typing import List, Optional, Set, Tuple

from .cache import CacheKey, DuplicateCache, policy_from_config
from .codec import decode_int
from .config import (
    INBOUND_QUEUE_SIZE,
    LISTENER_POLL_INTERVAL,
    SUBSCRIBE_OP_CODE,
    RuntimeConfig,
)
from .dispatch import OperationRegistry
from .exceptions import (
    CodecError,
    FrameDecodeError,
    PayloadTooLargeError,
    TransportClosedError,
    TransportError,
    TransportTimeout,
    ValidationError,
)
from .messages import (
    Reply,
    Request,
    Semantics,
    decode_request,
    encode_reply,
    make_invalid_request_reply,
    make_success_reply,
    peek_request_id,
)
from .monitor import MonitorRegistry, UpdateEvent
from .stats import StatsCollector
from .transport import Address, DatagramTransport, LossSimulator, format_address

logger = logging.getLogger(__name__)


class ServerListener:
    """
    Request/reply server over one datagram endpoint.

    Args:
        transport: Endpoint to receive requests on
        operations: Registry the requests are dispatched to
        cache: Duplicate cache for at-most-once requests
        registry: Monitor registry for subscriptions and callbacks
        loss: Loss simulator applied to inbound requests and outbound replies
        subscribe_op: Op code routed to the monitor registry
        semantics_override: Force one semantics for every request
            (None honours each request's own field)
        workers: Handler threads draining the inbound channel
        stats: Shared statistics collector
    """

    def __init__(
        self,
        transport: DatagramTransport,
        operations: OperationRegistry,
        cache: Optional[DuplicateCache] = None,
        registry: Optional[MonitorRegistry] = None,
        loss: Optional[LossSimulator] = None,
        subscribe_op: int = SUBSCRIBE_OP_CODE,
        semantics_override: Optional[Semantics] = None,
        workers: int = 1,
        stats: Optional[StatsCollector] = None,
        poll_interval: float = LISTENER_POLL_INTERVAL,
    ):
        if workers < 1:
            raise ValidationError(f"Worker count must be at least 1, got {workers}")

        self._transport = transport
        self._operations = operations
        self._stats = stats or StatsCollector()
        self._cache = cache if cache is not None else DuplicateCache()
        self._loss = loss or LossSimulator(0.0)
        self._registry = registry if registry is not None else MonitorRegistry(
            loss=self._loss, stats=self._stats
        )
        self._subscribe_op = subscribe_op
        self._semantics_override = (
            Semantics.parse(semantics_override) if semantics_override is not None else None
        )
        self._workers = workers
        self._poll_interval = poll_interval

        # Keys currently executing, so a concurrent duplicate cannot run twice
        self._inflight: Set[CacheKey] = set()
        self._inflight_lock = threading.Lock()

        self._inbound: "queue.Queue[Optional[Tuple[bytes, Address]]]" = queue.Queue(
            maxsize=INBOUND_QUEUE_SIZE
        )
        self._running = False
        self._receiver: Optional[threading.Thread] = None
        self._handlers: List[threading.Thread] = []

    @classmethod
    def from_config(
        cls,
        transport: DatagramTransport,
        operations: OperationRegistry,
        config: RuntimeConfig,
        semantics_override: Optional[Semantics] = None,
        rng: Optional[random.Random] = None,
        stats: Optional[StatsCollector] = None,
    ) -> "ServerListener":
        """Build a listener whose cache, loss rate and workers follow config."""
        stats = stats or StatsCollector()
        loss = LossSimulator(config.loss_rate, rng)
        return cls(
            transport,
            operations,
            cache=DuplicateCache(policy_from_config(config)),
            registry=MonitorRegistry(loss=loss, stats=stats),
            loss=loss,
            semantics_override=semantics_override,
            workers=config.workers,
            stats=stats,
        )

    # ---------------- Properties ----------------

    @property
    def address(self) -> Address:
        return self._transport.address

    @property
    def cache(self) -> DuplicateCache:
        return self._cache

    @property
    def registry(self) -> MonitorRegistry:
        return self._registry

    @property
    def stats(self) -> StatsCollector:
        return self._stats

    @property
    def running(self) -> bool:
        return self._running

    # ---------------- Datagram Handling ----------------

    def handle_datagram(self, data: bytes, address: Address) -> None:
        """Process one inbound datagram to completion."""
        self._stats.increment("requests_received")

        if self._loss.should_drop():
            self._stats.increment("simulated_drops")
            logger.info(f"[DROP] Simulating request loss from {format_address(address)}")
            return

        try:
            request = decode_request(data)
        except FrameDecodeError as e:
            self._stats.increment("invalid_requests")
            logger.warning(f"[RECV] Malformed frame from {format_address(address)}: {e}")
            reply = make_invalid_request_reply(peek_request_id(data), str(e))
            self._send(encode_reply(reply), address)
            return

        self._stats.increment_caller(request.caller_id, "requests_received")
        logger.debug(
            f"[RECV] req={request.request_id} op={request.op_code} "
            f"caller={request.caller_id} {request.semantics.label} "
            f"from {format_address(address)}"
        )

        if request.op_code == self._subscribe_op:
            self._handle_subscribe(request, address)
            return

        semantics = request.semantics
        if self._semantics_override is not None:
            semantics = self._semantics_override
        if semantics is Semantics.AT_MOST_ONCE:
            reply_bytes = self._handle_at_most_once(request, address)
            if reply_bytes is None:
                return
        else:
            reply_bytes = self._execute(request)

        if self._loss.should_drop():
            self._stats.increment("simulated_drops")
            logger.info(f"[DROP] Simulating reply loss for req={request.request_id}")
            return

        self._send(reply_bytes, address)

    def _handle_at_most_once(self, request: Request, address: Address) -> Optional[bytes]:
        """
        Answer from the cache or execute and remember.

        Returns:
            Reply bytes still to be sent, or None when already handled
        """
        key = request.key
        with self._inflight_lock:
            if key in self._inflight:
                self._stats.increment("duplicates_in_flight")
                logger.info(
                    f"[DUP] req={request.request_id} caller={request.caller_id} "
                    "still executing, dropping duplicate"
                )
                return None
            self._inflight.add(key)

        try:
            cached = self._cache.lookup(request.caller_id, request.request_id)
            if cached is not None:
                self._stats.increment("duplicates_suppressed")
                self._stats.increment_caller(request.caller_id, "duplicates_suppressed")
                logger.info(
                    f"[DUP] req={request.request_id} caller={request.caller_id} "
                    "answered from cache"
                )
                self._send(cached, address)
                return None

            reply_bytes = self._execute(request)
            # Stored whether or not the reply survives the loss draw
            self._cache.store(request.caller_id, request.request_id, reply_bytes)
            return reply_bytes
        finally:
            with self._inflight_lock:
                self._inflight.discard(key)

    def _execute(self, request: Request) -> bytes:
        result = self._operations.dispatch(request)
        self._stats.increment("operations_dispatched")
        reply = Reply(request.request_id, int(result.status), result.payload)
        try:
            return encode_reply(reply)
        except PayloadTooLargeError as e:
            logger.error(f"[SEND] Reply for req={request.request_id} too large: {e}")
            return encode_reply(make_invalid_request_reply(request.request_id, str(e)))

    def _handle_subscribe(self, request: Request, address: Address) -> None:
        try:
            duration, _ = decode_int(request.payload, 0)
            self._registry.subscribe(address, duration)
        except (CodecError, ValidationError) as e:
            self._stats.increment("invalid_requests")
            logger.warning(f"[MONITOR] Bad subscribe from {format_address(address)}: {e}")
            reply = make_invalid_request_reply(request.request_id, f"Bad subscription: {e}")
        else:
            reply = make_success_reply(request.request_id)
        self._send(encode_reply(reply), address)

    def _send(self, data: bytes, address: Address) -> None:
        try:
            self._transport.sendto(data, address)
        except TransportError as e:
            logger.warning(f"[SEND] Reply to {format_address(address)} failed: {e}")
            return
        self._stats.increment("replies_sent")

    # ---------------- Monitoring ----------------

    def publish(self, event: UpdateEvent) -> int:
        """Push an update event to every live subscriber."""
        return self._registry.publish(event, self._transport.sendto)

    # ---------------- Loops ----------------

    def serve_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Run the sequential receive-process-reply loop in this thread.

        Returns when stop_event is set or the transport is closed.
        """
        stop_event = stop_event or threading.Event()
        logger.info(f"[LISTEN] Serving on {format_address(self.address)}")
        while not stop_event.is_set():
            try:
                data, address = self._transport.recvfrom(self._poll_interval)
            except TransportTimeout:
                continue
            except TransportClosedError:
                break
            except TransportError as e:
                logger.warning(f"[RECV] {e}")
                continue
            self._handle_safely(data, address)
        logger.info("[LISTEN] Stopped")

    def start(self) -> None:
        """Start the receiver and handler threads."""
        if self._running:
            return
        self._running = True
        self._handlers = [
            threading.Thread(
                target=self._handler_loop, name=f"dgrpc-handler-{i}", daemon=True
            )
            for i in range(self._workers)
        ]
        for thread in self._handlers:
            thread.start()
        self._receiver = threading.Thread(
            target=self._receive_loop, name="dgrpc-receiver", daemon=True
        )
        self._receiver.start()
        logger.info(
            f"[LISTEN] Serving on {format_address(self.address)} "
            f"with {self._workers} handler(s)"
        )

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop and wait for the threads to finish."""
        if not self._running:
            return
        self._running = False
        if self._receiver:
            self._receiver.join(timeout=timeout)
            self._receiver = None
        for _ in self._handlers:
            self._inbound.put(None)
        for thread in self._handlers:
            thread.join(timeout=timeout)
        self._handlers = []
        logger.info("[LISTEN] Stopped")

    def _receive_loop(self) -> None:
        while self._running:
            try:
                data, address = self._transport.recvfrom(self._poll_interval)
            except TransportTimeout:
                continue
            except TransportClosedError:
                break
            except TransportError as e:
                logger.warning(f"[RECV] {e}")
                continue
            try:
                self._inbound.put_nowait((data, address))
            except queue.Full:
                logger.warning(
                    f"[RECV] Inbound channel full, dropping datagram from {format_address(address)}"
                )

    def _handler_loop(self) -> None:
        while True:
            item = self._inbound.get()
            if item is None:
                break
            self._handle_safely(*item)

    def _handle_safely(self, data: bytes, address: Address) -> None:
        try:
            self.handle_datagram(data, address)
        except Exception:
            logger.exception(f"[RECV] Error processing datagram from {format_address(address)}")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
