"""Shared fixtures: a fake socket transport and gateways on an in-process broker."""
from __future__ import annotations

import asyncio
import os
import socket
from typing import Any, Optional

import pytest
import pytest_asyncio

os.environ.setdefault("BROKER_BACKEND", "memory")

from broker import InMemoryBrokerBridge, InMemoryExchange
from gateway import RelayGateway


class NetworkBlockedError(RuntimeError):
    pass


def _blocked(*_args: Any, **_kwargs: Any) -> Any:
    raise NetworkBlockedError(
        "Network access is disabled during tests. "
        "Mark the test with @pytest.mark.integration or set ALLOW_NETWORK=1."
    )


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Prevent accidental outbound network calls in unit tests."""

    if os.getenv("ALLOW_NETWORK") == "1":
        return

    if request.node.get_closest_marker("integration"):
        return

    monkeypatch.setattr(socket, "create_connection", _blocked)
    monkeypatch.setattr(socket, "getaddrinfo", _blocked)


class FakeTransport:
    """In-memory stand-in for a client WebSocket."""

    def __init__(self, supports_ping: bool = True):
        self.supports_ping = supports_ping
        self.sent: list[dict] = []
        self.accepted = False
        self.open = False
        self.closed_with: Optional[tuple] = None
        self.pings = 0
        self.terminated = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.open

    async def accept(self):
        self.accepted = True
        self.open = True

    async def reject(self, code: int, reason: str):
        self.closed_with = (code, reason)

    async def send_json(self, data: dict):
        if not self.open:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    async def ping(self):
        self.pings += 1

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        if self.closed_with is None:
            self.closed_with = (code, reason)
        self.open = False
        self._inbox.put_nowait(None)

    async def terminate(self):
        self.terminated = True
        await self.close(1001, "Heartbeat timeout")

    async def frames(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            yield item

    def push(self, text: str):
        self._inbox.put_nowait(text)

    def hang_up(self):
        self.open = False
        self._inbox.put_nowait(None)

    def of_type(self, event_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == event_type]

    def texts(self, event_type: str) -> list[str]:
        return [frame["text"] for frame in self.of_type(event_type)]


async def settle(exchange: InMemoryExchange, *gateways: RelayGateway):
    """Let background tasks and broker deliveries run to completion."""
    for _ in range(3):
        for gateway in gateways:
            await gateway.wait_idle()
        await exchange.settle()


@pytest.fixture
def exchange() -> InMemoryExchange:
    return InMemoryExchange("chat_exchange")


@pytest_asyncio.fixture
async def make_gateway(exchange):
    gateways = []

    async def factory(**kwargs) -> RelayGateway:
        bridge = kwargs.pop("bridge", None) or InMemoryBrokerBridge(exchange)
        await bridge.connect()
        kwargs.setdefault("heartbeat_interval", 0)
        gateway = RelayGateway(bridge, **kwargs)
        gateways.append(gateway)
        return gateway

    yield factory

    for gateway in gateways:
        await gateway.shutdown(grace=1)
