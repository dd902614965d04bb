import asyncio
import random
import string
from typing import Optional, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broker import BrokerBridge, BrokerError, BrokerUnavailableError
from constants import EXCHANGE_NAME, REDIS_URL, ROOM_ID_LENGTH
from redis_keys import EXCHANGE_CHANNEL, REDIS_ROOM_KEY
from schemas.events import ChatEvent
from logging_config import get_logger

logger = get_logger(__name__)

CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisBrokerBridge(BrokerBridge):
    """Broker bridge over Redis pub/sub.

    The exchange is a channel namespace and the instance queue is a single
    pub/sub connection named after the queue. Binding a routing key
    subscribes that connection to the key's channel. Redis does not track
    acknowledgements, so ack/nack only feed the delivery counters.
    """

    def __init__(
        self,
        url: str = REDIS_URL,
        exchange_name: str = EXCHANGE_NAME,
        instance_queue: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        poll_timeout: float = 1.0,
    ):
        super().__init__(exchange_name, instance_queue)
        self.url = url
        self.poll_timeout = poll_timeout
        self._client = client
        self._pubsub = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def channel_for(self, routing_key: str) -> str:
        return EXCHANGE_CHANNEL.format(exchange=self.exchange_name, routing_key=routing_key)

    def routing_key_for(self, channel: str) -> str:
        prefix = f"{self.exchange_name}:"
        return channel[len(prefix):] if channel.startswith(prefix) else channel

    async def connect(self):
        logger.info(f"Connecting broker bridge to Redis, instance queue {self.instance_queue}")
        if self._client is None:
            self._client = redis.Redis.from_url(self.url, decode_responses=True, client_name=self.instance_queue)
        try:
            await self._client.ping()
        except RedisError as e:
            logger.error(f"Failed to connect to Redis for broker bridge: {e}")
            raise BrokerUnavailableError(f"Redis unreachable: {e}") from e

        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"consume:{self.instance_queue}")
        logger.info(f"Broker bridge connected, consuming on {self.instance_queue}")

    async def publish(self, routing_key: str, event: ChatEvent) -> bool:
        if not self._connected:
            logger.warning(f"Publish to {routing_key} skipped: broker bridge is disconnected")
            return False
        channel = self.channel_for(routing_key)
        try:
            receivers = await self._client.publish(channel, event.to_wire())
        except CONNECTION_ERRORS as e:
            self._connection_lost(e)
            return False
        except RedisError as e:
            logger.error(f"Failed to publish to {channel}: {e}")
            return False
        logger.debug(f"Published {event.type.value} event to {channel}, {receivers} instances subscribed")
        return True

    async def bind(self, routing_key: str):
        self._require_connection()
        channel = self.channel_for(routing_key)
        try:
            await self._pubsub.subscribe(channel)
        except CONNECTION_ERRORS as e:
            self._connection_lost(e)
            raise BrokerUnavailableError(f"Lost broker connection while binding {routing_key}") from e
        except RedisError as e:
            raise BrokerError(f"Failed to bind {routing_key}: {e}") from e
        logger.info(f"Instance queue {self.instance_queue} bound to {channel}")

    async def unbind(self, routing_key: str):
        self._require_connection()
        channel = self.channel_for(routing_key)
        try:
            await self._pubsub.unsubscribe(channel)
        except CONNECTION_ERRORS as e:
            self._connection_lost(e)
            raise BrokerUnavailableError(f"Lost broker connection while unbinding {routing_key}") from e
        except RedisError as e:
            raise BrokerError(f"Failed to unbind {routing_key}: {e}") from e
        logger.info(f"Instance queue {self.instance_queue} unbound from {channel}")

    async def close(self):
        logger.info(f"Closing broker bridge {self.instance_queue}")
        self._connected = False
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except RedisError as e:
                logger.error(f"Error closing pub/sub connection: {e}")
            self._pubsub = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.error(f"Error closing Redis client: {e}")
            self._client = None

    def _require_connection(self):
        if not self._connected:
            raise BrokerUnavailableError("Broker bridge is disconnected")

    def _connection_lost(self, error: Exception):
        # No reconnect: exchange bindings are gone with the connection
        if self._connected:
            logger.error(f"Broker connection lost on {self.instance_queue}: {error}. Re-initialization required.")
        self._connected = False

    async def _read_loop(self):
        while self._connected:
            if not self._pubsub.subscribed:
                await asyncio.sleep(self.poll_timeout)
                continue
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
            except CONNECTION_ERRORS as e:
                self._connection_lost(e)
                return
            except RedisError as e:
                logger.error(f"Error reading from pub/sub on {self.instance_queue}: {e}", exc_info=True)
                continue

            if message is None or message.get("type") != "message":
                continue
            routing_key = self.routing_key_for(message["channel"])
            await self._dispatch(self._make_delivery(routing_key, message["data"]))


class RoomStoreError(Exception):
    """The room store cannot be reached."""


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


class RedisRoomStore:
    """Room ids known to the room service, one marker key per room."""

    def __init__(self, url: str = REDIS_URL, client: Optional[redis.Redis] = None):
        self.url = url
        self.redis_client = client or redis.Redis.from_url(url, decode_responses=True)

    async def create_room(self, room_id: str) -> bool:
        key = REDIS_ROOM_KEY.format(slug=room_id)
        try:
            created = await self.redis_client.set(key, "active", nx=True)
        except RedisError as e:
            logger.error(f"Failed to create room {room_id}: {e}")
            raise RoomStoreError(str(e)) from e
        logger.debug(f"Room key {key} created={bool(created)}")
        return bool(created)

    async def room_exists(self, room_id: str) -> bool:
        key = REDIS_ROOM_KEY.format(slug=room_id)
        try:
            return await self.redis_client.exists(key) > 0
        except RedisError as e:
            logger.error(f"Failed to look up room {room_id}: {e}")
            raise RoomStoreError(str(e)) from e

    async def close(self):
        await self.redis_client.aclose()


class InMemoryRoomStore:
    def __init__(self):
        self.rooms: Set[str] = set()

    async def create_room(self, room_id: str) -> bool:
        if room_id in self.rooms:
            return False
        self.rooms.add(room_id)
        return True

    async def room_exists(self, room_id: str) -> bool:
        return room_id in self.rooms

    async def close(self):
        self.rooms.clear()
