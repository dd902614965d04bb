import pytest

from conftest import FakeTransport
from gateway import Connection
from registry import ConnectionRegistry


async def open_connection(room_id="r1", user_id="alice"):
    transport = FakeTransport()
    await transport.accept()
    return Connection(transport, room_id, user_id)


@pytest.mark.asyncio
async def test_register_is_idempotent():
    registry = ConnectionRegistry()
    conn = await open_connection()

    registry.register("r1", conn)
    registry.register("r1", conn)

    assert registry.size("r1") == 1
    assert registry.total_rooms() == 1
    assert registry.total_connections() == 1


@pytest.mark.asyncio
async def test_unregister_reports_empty_room():
    registry = ConnectionRegistry()
    first = await open_connection()
    second = await open_connection(user_id="bob")
    registry.register("r1", first)
    registry.register("r1", second)

    assert registry.unregister("r1", first) is False
    assert "r1" in registry
    assert registry.unregister("r1", second) is True
    assert "r1" not in registry
    assert registry.total_rooms() == 0


def test_unregister_unknown_room():
    registry = ConnectionRegistry()
    assert registry.unregister("missing", object()) is False


@pytest.mark.asyncio
async def test_broadcast_skips_closed_connections():
    registry = ConnectionRegistry()
    live = await open_connection()
    stale = await open_connection(user_id="bob")
    other_room = await open_connection(room_id="r2", user_id="carol")
    stale.transport.open = False
    for conn in (live, stale, other_room):
        registry.register(conn.room_id, conn)

    delivered = await registry.broadcast_local("r1", {"type": "chat", "text": "hi"})

    assert delivered == 1
    assert live.transport.sent == [{"type": "chat", "text": "hi"}]
    assert stale.transport.sent == []
    assert other_room.transport.sent == []
    # stale connections are left for the close handler
    assert registry.size("r1") == 2


@pytest.mark.asyncio
async def test_broadcast_survives_send_failure():
    registry = ConnectionRegistry()
    good = await open_connection()
    broken = await open_connection(user_id="bob")

    async def explode(_payload):
        raise ConnectionResetError("peer gone")

    broken.transport.send_json = explode
    registry.register("r1", good)
    registry.register("r1", broken)

    assert await registry.broadcast_local("r1", {"type": "info"}) == 1
    assert good.transport.sent == [{"type": "info"}]


@pytest.mark.asyncio
async def test_broadcast_to_empty_room():
    registry = ConnectionRegistry()
    assert await registry.broadcast_local("nobody", {"type": "info"}) == 0
