"""
Tests for dgrpc.server module.
"""

import pytest
import threading

from dgrpc.cache import DuplicateCache
from dgrpc.codec import encode_int
from dgrpc.config import STATUS_INVALID_REQUEST, SUBSCRIBE_OP_CODE
from dgrpc.dispatch import OperationRegistry, OperationResult
from dgrpc.messages import (
    Request,
    Semantics,
    decode_reply,
    encode_request,
)
from dgrpc.monitor import UpdateEvent
from dgrpc.server import ServerListener
from dgrpc.transport import LossSimulator

from conftest import SERVER_ADDRESS, ScriptedRandom


COUNT_OP = 1
BIG_OP = 2


class CountingService:
    """Test double that counts how often each operation body runs."""

    def __init__(self):
        self.calls = 0
        self.lock = threading.Lock()

    def count(self, caller_id, payload):
        with self.lock:
            self.calls += 1
            return OperationResult.success(encode_int(self.calls))


def make_registry(service):
    registry = OperationRegistry()
    registry.register(COUNT_OP, "COUNT", service.count)
    registry.register(BIG_OP, "BIG", lambda caller_id, payload: OperationResult.success(b"x" * 5000))
    registry.register_subscription(SUBSCRIBE_OP_CODE)
    return registry


@pytest.fixture
def service():
    return CountingService()


@pytest.fixture
def endpoints(network):
    server = network.bind(SERVER_ADDRESS)
    client = network.bind()
    yield server, client
    client.close()
    server.close()


def request(request_id=1, op_code=COUNT_OP, caller_id=7,
            semantics=Semantics.AT_MOST_ONCE, payload=b""):
    return encode_request(Request(request_id, op_code, caller_id, semantics, payload))


def receive(client):
    data, _ = client.recvfrom(timeout=0)
    return data


class TestAtMostOnce:
    """Tests for duplicate suppression."""

    def test_duplicate_not_re_executed(self, endpoints, service):
        """Test a repeated request is answered from the cache."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(), client.address)
        first = receive(client)
        listener.handle_datagram(request(), client.address)
        second = receive(client)

        assert first == second
        assert service.calls == 1
        assert listener.stats.get("duplicates_suppressed") == 1

    def test_distinct_callers_both_execute(self, endpoints, service):
        """Test the same request id from two callers runs twice."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(caller_id=1), client.address)
        listener.handle_datagram(request(caller_id=2), client.address)

        assert service.calls == 2

    def test_request_id_reuse_returns_stale_reply(self, endpoints, service):
        """Test a reused request id gets the earlier reply, not a new execution."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(op_code=COUNT_OP), client.address)
        first = receive(client)
        # Different operation, same identity
        listener.handle_datagram(request(op_code=99, payload=b"other"), client.address)
        second = receive(client)

        assert second == first
        assert decode_reply(second).ok
        assert service.calls == 1

    def test_lost_reply_still_cached(self, endpoints, service):
        """Test a reply lost on the way out is replayed to the retry."""
        server, client = endpoints
        # inbound ok, reply dropped, retry inbound ok
        loss = LossSimulator(0.5, ScriptedRandom([0.9, 0.1, 0.9]))
        listener = ServerListener(server, make_registry(service), loss=loss)

        listener.handle_datagram(request(), client.address)
        assert client.network.depth(client.address) == 0

        listener.handle_datagram(request(), client.address)
        reply = decode_reply(receive(client))

        assert reply.ok
        assert reply.payload == encode_int(1)
        assert service.calls == 1

    def test_concurrent_duplicate_dropped(self, endpoints):
        """Test a duplicate arriving mid-execution neither runs nor replies."""
        server, client = endpoints
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow(caller_id, payload):
            calls.append(caller_id)
            started.set()
            release.wait(5.0)
            return OperationResult.success(b"done")

        registry = OperationRegistry()
        registry.register(COUNT_OP, "SLOW", slow)
        listener = ServerListener(server, registry)

        worker = threading.Thread(
            target=listener.handle_datagram, args=(request(), client.address)
        )
        worker.start()
        assert started.wait(5.0)

        listener.handle_datagram(request(), client.address)
        assert listener.stats.get("duplicates_in_flight") == 1

        release.set()
        worker.join(5.0)

        assert calls == [7]
        assert decode_reply(receive(client)).payload == b"done"
        assert client.network.depth(client.address) == 0

    def test_uses_injected_cache(self, endpoints, service):
        """Test replies land in the supplied cache."""
        server, client = endpoints
        cache = DuplicateCache()
        listener = ServerListener(server, make_registry(service), cache=cache)

        listener.handle_datagram(request(request_id=5, caller_id=9), client.address)

        assert (9, 5) in cache


class TestAtLeastOnce:
    """Tests for plain re-execution."""

    def test_duplicate_re_executed(self, endpoints, service):
        """Test at-least-once requests are never deduplicated."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))
        frame = request(semantics=Semantics.AT_LEAST_ONCE)

        listener.handle_datagram(frame, client.address)
        listener.handle_datagram(frame, client.address)

        assert service.calls == 2
        assert len(listener.cache) == 0
        assert decode_reply(receive(client)).payload == encode_int(1)
        assert decode_reply(receive(client)).payload == encode_int(2)

    def test_override_forces_at_most_once(self, endpoints, service):
        """Test a server-wide override caches at-least-once requests."""
        server, client = endpoints
        listener = ServerListener(
            server, make_registry(service), semantics_override=Semantics.AT_MOST_ONCE
        )
        frame = request(semantics=Semantics.AT_LEAST_ONCE)

        listener.handle_datagram(frame, client.address)
        listener.handle_datagram(frame, client.address)

        assert service.calls == 1

    def test_override_forces_at_least_once(self, endpoints, service):
        """Test a server-wide override disables caching."""
        server, client = endpoints
        listener = ServerListener(
            server, make_registry(service), semantics_override="atleast"
        )

        listener.handle_datagram(request(), client.address)
        listener.handle_datagram(request(), client.address)

        assert service.calls == 2


class TestInvalidRequests:
    """Tests for malformed frames and unknown operations."""

    def test_short_frame(self, endpoints, service):
        """Test a truncated frame gets an invalid-request reply with its id."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(request_id=0x1234)[:6], client.address)
        reply = decode_reply(receive(client))

        assert reply.status == STATUS_INVALID_REQUEST
        assert reply.request_id == 0x1234
        assert service.calls == 0

    def test_unknown_op_code(self, endpoints, service):
        """Test unknown codes are rejected by dispatch."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(op_code=42), client.address)
        reply = decode_reply(receive(client))

        assert reply.status == STATUS_INVALID_REQUEST
        assert "42" in reply.detail

    def test_reply_too_large(self, endpoints, service):
        """Test an oversize result is answered with invalid-request."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(request(op_code=BIG_OP), client.address)

        assert decode_reply(receive(client)).status == STATUS_INVALID_REQUEST


class TestSubscriptions:
    """Tests for subscribe routing and publish."""

    def test_subscribe_ack(self, endpoints, service):
        """Test subscribe registers the sender and acknowledges."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(
            request(op_code=SUBSCRIBE_OP_CODE, payload=encode_int(30)), client.address
        )
        reply = decode_reply(receive(client))

        assert reply.ok
        assert reply.payload == b""
        assert client.address in listener.registry
        assert len(listener.cache) == 0
        assert service.calls == 0

    @pytest.mark.parametrize("payload", [encode_int(-5), b"", b"\x00\x01"])
    def test_bad_duration(self, endpoints, service, payload):
        """Test negative or missing durations are invalid."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))

        listener.handle_datagram(
            request(op_code=SUBSCRIBE_OP_CODE, payload=payload), client.address
        )

        assert decode_reply(receive(client)).status == STATUS_INVALID_REQUEST
        assert len(listener.registry) == 0

    def test_publish_reaches_subscriber(self, endpoints, service):
        """Test publish pushes a callback to the subscriber."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service))
        listener.handle_datagram(
            request(op_code=SUBSCRIBE_OP_CODE, payload=encode_int(30)), client.address
        )
        receive(client)

        event = UpdateEvent("DEPOSIT", 1000, "alice", 0, 10.0)
        assert listener.publish(event) == 1

        callback = decode_reply(receive(client))
        assert callback.is_callback
        assert UpdateEvent.decode(callback.payload) == event


class TestLoss:
    """Tests for inbound loss simulation."""

    def test_inbound_drop(self, endpoints, service):
        """Test a dropped request is never processed."""
        server, client = endpoints
        loss = LossSimulator(0.5, ScriptedRandom([0.1]))
        listener = ServerListener(server, make_registry(service), loss=loss)

        listener.handle_datagram(request(), client.address)

        assert service.calls == 0
        assert client.network.depth(client.address) == 0
        assert listener.stats.get("simulated_drops") == 1


class TestListenerLoop:
    """Tests for the threaded receive loop."""

    @pytest.mark.parametrize("workers", [1, 4])
    def test_start_and_stop(self, endpoints, service, workers):
        """Test the background loop answers requests and stops cleanly."""
        server, client = endpoints
        listener = ServerListener(
            server, make_registry(service), workers=workers, poll_interval=0.05
        )

        with listener:
            assert listener.running
            for i in range(1, 6):
                client.sendto(request(request_id=i), SERVER_ADDRESS)
            replies = {decode_reply(client.recvfrom(timeout=2.0)[0]).request_id for _ in range(5)}

        assert not listener.running
        assert replies == {1, 2, 3, 4, 5}
        assert service.calls == 5

    def test_serve_forever_stops_on_event(self, endpoints, service):
        """Test the sequential loop returns once the stop event is set."""
        server, client = endpoints
        listener = ServerListener(server, make_registry(service), poll_interval=0.05)
        stop = threading.Event()
        thread = threading.Thread(target=listener.serve_forever, args=(stop,))
        thread.start()

        client.sendto(request(), SERVER_ADDRESS)
        reply = decode_reply(client.recvfrom(timeout=2.0)[0])
        stop.set()
        thread.join(2.0)

        assert reply.ok
        assert not thread.is_alive()
