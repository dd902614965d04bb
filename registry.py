import asyncio
from typing import Dict, Iterator, Set

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """Local connections per room for this instance only.

    Every mutation is synchronous, so on a single event loop a room key is
    present exactly when it has at least one registered connection.
    """

    def __init__(self):
        self._rooms: Dict[str, Set] = {}

    def register(self, room_id: str, connection):
        self._rooms.setdefault(room_id, set()).add(connection)
        logger.debug(f"Registered connection in room {room_id} (local connections: {len(self._rooms[room_id])})")

    def unregister(self, room_id: str, connection) -> bool:
        """Remove a connection. Returns True when the room has no local members left."""
        members = self._rooms.get(room_id)
        if members is None:
            return False
        members.discard(connection)
        if members:
            return False
        del self._rooms[room_id]
        logger.debug(f"Room {room_id} has no local connections left")
        return True

    async def broadcast_local(self, room_id: str, payload: dict) -> int:
        members = self._rooms.get(room_id)
        if not members:
            return 0

        targets = [conn for conn in members if conn.is_open]
        if not targets:
            return 0

        results = await asyncio.gather(*(conn.send_json(payload) for conn in targets), return_exceptions=True)
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                # removal happens in the connection's close handler
                logger.warning(f"Error sending to {conn} in room {room_id}: {result}")
            else:
                delivered += 1
        logger.debug(f"Broadcasted to {delivered}/{len(targets)} local connections in room {room_id}")
        return delivered

    def size(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def total_rooms(self) -> int:
        return len(self._rooms)

    def total_connections(self) -> int:
        return sum(len(members) for members in self._rooms.values())

    def connections(self) -> Iterator:
        for members in list(self._rooms.values()):
            yield from list(members)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms
