import asyncio

import pytest

from broker import BrokerError, InMemoryBrokerBridge
from registry import ConnectionRegistry
from subscriptions import TopicSubscriptionManager


class FlakyBridge(InMemoryBrokerBridge):
    def __init__(self, exchange):
        super().__init__(exchange)
        self.bind_failures = 0
        self.bind_calls = 0
        self.unbind_gate = None

    async def bind(self, routing_key):
        self.bind_calls += 1
        if self.bind_failures:
            self.bind_failures -= 1
            raise BrokerError("bind refused")
        await super().bind(routing_key)

    async def unbind(self, routing_key):
        if self.unbind_gate is not None:
            await self.unbind_gate.wait()
        await super().unbind(routing_key)


@pytest.mark.asyncio
async def test_subscribe_is_idempotent(exchange):
    bridge = FlakyBridge(exchange)
    await bridge.connect()
    manager = TopicSubscriptionManager(bridge, ConnectionRegistry())

    assert await manager.ensure_subscribed("r1")
    assert await manager.ensure_subscribed("r1")

    assert bridge.bind_calls == 1
    assert manager.subscribed_rooms() == {"r1"}
    assert exchange.bindings(bridge.instance_queue) == {"room.r1"}
    await bridge.close()


@pytest.mark.asyncio
async def test_bind_failure_is_not_fatal_and_retries(exchange):
    bridge = FlakyBridge(exchange)
    await bridge.connect()
    bridge.bind_failures = 1
    manager = TopicSubscriptionManager(bridge, ConnectionRegistry())

    assert await manager.ensure_subscribed("r1") is False
    assert not manager.is_subscribed("r1")

    assert await manager.ensure_subscribed("r1") is True
    assert manager.is_subscribed("r1")
    await bridge.close()


@pytest.mark.asyncio
async def test_unsubscribe_skipped_while_room_has_members(exchange):
    bridge = FlakyBridge(exchange)
    await bridge.connect()
    registry = ConnectionRegistry()
    manager = TopicSubscriptionManager(bridge, registry)
    await manager.ensure_subscribed("r1")
    registry.register("r1", object())

    assert await manager.ensure_unsubscribed("r1") is False
    assert manager.is_subscribed("r1")
    await bridge.close()


@pytest.mark.asyncio
async def test_join_during_unbind_rebinds(exchange):
    bridge = FlakyBridge(exchange)
    await bridge.connect()
    registry = ConnectionRegistry()
    manager = TopicSubscriptionManager(bridge, registry)
    await manager.ensure_subscribed("r1")

    bridge.unbind_gate = asyncio.Event()
    leaving = asyncio.create_task(manager.ensure_unsubscribed("r1"))
    await asyncio.sleep(0)

    registry.register("r1", object())
    joining = asyncio.create_task(manager.ensure_subscribed("r1"))
    await asyncio.sleep(0)
    bridge.unbind_gate.set()

    assert await leaving is True
    assert await joining is True
    assert manager.is_subscribed("r1")
    assert exchange.bindings(bridge.instance_queue) == {"room.r1"}
    assert manager._locks == {}
    await bridge.close()


@pytest.mark.asyncio
async def test_unsubscribe_unknown_room_is_noop(exchange):
    bridge = FlakyBridge(exchange)
    await bridge.connect()
    manager = TopicSubscriptionManager(bridge, ConnectionRegistry())

    assert await manager.ensure_unsubscribed("never") is True
    await bridge.close()
