"""
Pytest configuration and fixtures for dgrpc tests.
"""

import pytest
import os
import random
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dgrpc.bank import BankService, create_bank_listener
from dgrpc.client import ClientDispatcher
from dgrpc.loopback import LoopbackNetwork


SERVER_ADDRESS = ("loopback", 8888)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedRandom(random.Random):
    """
    Random source that replays a fixed list of draws.

    Once the script runs out every draw is 0.999999, which drops nothing
    below a 100% loss rate.
    """

    def __init__(self, values=()):
        super().__init__(0)
        self.values = list(values)
        self.draws = 0

    def random(self) -> float:
        self.draws += 1
        if self.values:
            return self.values.pop(0)
        return 0.999999


@pytest.fixture
def network():
    """An in-memory datagram network."""
    return LoopbackNetwork()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted_random():
    return ScriptedRandom


@pytest.fixture
def bank_service():
    return BankService()


@pytest.fixture
def bank_server(network, bank_service):
    """A running account server on the loopback network."""
    transport = network.bind(SERVER_ADDRESS)
    listener = create_bank_listener(transport, bank_service)
    listener.start()
    yield listener
    listener.stop()
    transport.close()


@pytest.fixture
def make_client(network):
    """Factory for dispatchers aimed at the loopback server."""
    clients = []

    def _make(**kwargs):
        kwargs.setdefault("timeout", 0.5)
        kwargs.setdefault("max_retries", 3)
        client = ClientDispatcher(network.bind(), SERVER_ADDRESS, **kwargs)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()
