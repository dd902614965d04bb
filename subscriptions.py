import asyncio
from typing import Dict, Set

from broker import BrokerBridge, BrokerError
from redis_keys import room_routing_key
from registry import ConnectionRegistry
from logging_config import get_logger

logger = get_logger(__name__)


class TopicSubscriptionManager:
    """Keeps the instance queue's room bindings in step with local membership.

    Transitions for one room are serialised by a per-room lock, and the
    unbind path re-checks the registry after acquiring it. A join that lands
    while an unbind is in flight therefore waits for the unbind and then
    binds again instead of being left without a binding.
    """

    def __init__(self, bridge: BrokerBridge, registry: ConnectionRegistry):
        self.bridge = bridge
        self.registry = registry
        self._subscribed: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def is_subscribed(self, room_id: str) -> bool:
        return room_id in self._subscribed

    def subscribed_rooms(self) -> Set[str]:
        return set(self._subscribed)

    async def ensure_subscribed(self, room_id: str) -> bool:
        if room_id in self._subscribed and room_id not in self._locks:
            return True
        async with self._transition(room_id):
            if room_id in self._subscribed:
                return True
            try:
                await self.bridge.bind(room_routing_key(room_id))
            except BrokerError as e:
                logger.error(f"Failed to subscribe instance to room {room_id}: {e}")
                return False
            self._subscribed.add(room_id)
            logger.info(f"Subscribed to room {room_id}")
            return True

    async def ensure_unsubscribed(self, room_id: str) -> bool:
        async with self._transition(room_id):
            if room_id not in self._subscribed:
                return True
            if self.registry.size(room_id) > 0:
                logger.debug(f"Room {room_id} regained local members, keeping subscription")
                return False
            try:
                await self.bridge.unbind(room_routing_key(room_id))
            except BrokerError as e:
                logger.error(f"Failed to unsubscribe instance from room {room_id}: {e}")
                return False
            self._subscribed.discard(room_id)
            logger.info(f"Unsubscribed from room {room_id}")
            return True

    def clear(self):
        self._subscribed.clear()

    def _transition(self, room_id: str) -> "_RoomTransition":
        return _RoomTransition(self, room_id)


class _RoomTransition:
    """Reference-counted per-room lock, dropped once nobody holds or waits on it."""

    def __init__(self, manager: TopicSubscriptionManager, room_id: str):
        self.manager = manager
        self.room_id = room_id

    async def __aenter__(self):
        locks = self.manager._locks
        users = self.manager._lock_users
        lock = locks.setdefault(self.room_id, asyncio.Lock())
        users[self.room_id] = users.get(self.room_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_ref()
            raise
        return lock

    async def __aexit__(self, exc_type, exc, tb):
        self.manager._locks[self.room_id].release()
        self._release_ref()

    def _release_ref(self):
        users = self.manager._lock_users
        users[self.room_id] -= 1
        if users[self.room_id] == 0:
            del users[self.room_id]
            del self.manager._locks[self.room_id]
