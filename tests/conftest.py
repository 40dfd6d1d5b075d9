"""Shared test fixtures."""

from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from feedback_relay.broker.http import create_app
from feedback_relay.broker.rendezvous import FeedbackBroker
from feedback_relay.config import RelayConfig
from feedback_relay.poller.client import BrokerClient
from feedback_relay.poller.poller import DiscoveryPoller, EditorHost

BASE_PORT = 5678
PROJECT = "/home/dev/proj"


@pytest.fixture
def config():
    """Config with short timings and a small scan range."""
    return RelayConfig(
        base_port=BASE_PORT,
        scan_range=5,
        default_timeout_seconds=5,
        idle_timeout_seconds=120,
        shutdown_grace_seconds=0.01,
        poll_interval_seconds=0.01,
        health_interval_seconds=0.01,
        freshness_seconds=10,
    )


@pytest.fixture
def broker(config):
    """Broker registered on the base port."""
    return FeedbackBroker(config, port=BASE_PORT)


@pytest.fixture
def app(broker):
    """HTTP side-channel for the broker fixture."""
    return create_app(broker)


@pytest.fixture
def client(app):
    """Sync test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app):
    """Async test client sharing the test's event loop."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client


# ===== Poller fixtures =====


class BrokerNetwork(httpx.AsyncBaseTransport):
    """Routes loopback requests to in-process brokers by port."""

    def __init__(self):
        self.transports: dict[int, ASGITransport] = {}
        self.brokers: dict[int, FeedbackBroker] = {}
        self.requests: list[httpx.Request] = []

    def add(self, broker: FeedbackBroker) -> FeedbackBroker:
        self.brokers[broker.port] = broker
        self.transports[broker.port] = ASGITransport(app=create_app(broker))
        return broker

    def remove(self, port: int) -> None:
        self.brokers.pop(port, None)
        self.transports.pop(port, None)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        transport = self.transports.get(request.url.port)
        if transport is None:
            raise httpx.ConnectError("Connection refused", request=request)
        return await transport.handle_async_request(request)


class FakeHost(EditorHost):
    """Editor host that records everything the poller does."""

    def __init__(self, workspaces: Optional[list[str]] = None):
        self.workspaces = list(workspaces or [])
        self.messages: list = []
        self.focus_count = 0
        self.infos: list[str] = []
        self.errors: list[str] = []
        self.picked: list[str] = []

    def workspace_paths(self) -> list[str]:
        return list(self.workspaces)

    async def post_message(self, message) -> None:
        self.messages.append(message)

    async def focus_panel(self) -> None:
        self.focus_count += 1

    async def notify_info(self, text: str) -> None:
        self.infos.append(text)

    async def notify_error(self, text: str) -> None:
        self.errors.append(text)

    async def pick_paths(self, folders: bool) -> list[str]:
        return list(self.picked)

    def of_type(self, kind: str) -> list:
        return [m for m in self.messages if m.type == kind]


@pytest.fixture
def network():
    """Empty set of reachable brokers."""
    return BrokerNetwork()


@pytest.fixture
def host():
    """Window with one workspace folder open."""
    return FakeHost([PROJECT])


@pytest.fixture
async def poller(host, config, network):
    """Poller wired to the in-process broker network."""
    poller = DiscoveryPoller(host, config, BrokerClient(config, transport=network))
    yield poller
    await poller.close()


@pytest.fixture
def add_broker(config, network):
    """Register a broker on a port with a fixed start time."""

    def _add(port: int, start_time: int) -> FeedbackBroker:
        broker = FeedbackBroker(config, port=port)
        broker.start_time = start_time
        return network.add(broker)

    return _add


@pytest.fixture
async def open_window(config, network):
    """Factory for additional pollers, one per editor window."""
    pollers = []

    def _open(workspaces: list[str]) -> DiscoveryPoller:
        poller = DiscoveryPoller(FakeHost(workspaces), config, BrokerClient(config, transport=network))
        pollers.append(poller)
        return poller

    yield _open
    for poller in pollers:
        await poller.close()
