import asyncio
import random
import string
import time
from enum import Enum
from typing import Coroutine, Optional, Set

from pydantic import ValidationError

from broker import BrokerBridge, Delivery
from constants import (
    HEARTBEAT_INTERVAL_SECONDS,
    MAX_MESSAGE_LENGTH,
    SHUTDOWN_GRACE_SECONDS,
    SYSTEM_SENDER,
    WS_GOING_AWAY,
    WS_INTERNAL_ERROR,
    WS_POLICY_VIOLATION,
)
from redis_keys import room_routing_key
from registry import ConnectionRegistry
from schemas.events import ChatEvent, ClientFrame, EventType
from subscriptions import TopicSubscriptionManager
from transport import Transport
from logging_config import get_logger

logger = get_logger(__name__)


def generate_user_id() -> str:
    return "user_" + "".join(random.choices(string.ascii_lowercase + string.digits, k=7))


class MillisecondClock:
    """Epoch milliseconds that never repeat or go backwards."""

    def __init__(self):
        self._last = 0

    def now(self) -> int:
        self._last = max(int(time.time() * 1000), self._last + 1)
        return self._last


class Liveness(str, Enum):
    ALIVE = "alive"
    PENDING = "pending"
    DEAD = "dead"


class Connection:
    def __init__(self, transport: Transport, room_id: str, user_id: str):
        self.transport = transport
        self.room_id = room_id
        self.user_id = user_id
        self.liveness = Liveness.ALIVE
        self.clock = MillisecondClock()
        self.released = False

    @property
    def is_open(self) -> bool:
        return self.liveness is not Liveness.DEAD and self.transport.is_open

    async def send_json(self, payload: dict):
        await self.transport.send_json(payload)

    def mark_alive(self):
        if self.liveness is not Liveness.DEAD:
            self.liveness = Liveness.ALIVE

    def __repr__(self):
        return f"<Connection {self.user_id} in {self.room_id} ({self.liveness.value})>"


class RelayGateway:
    """Relays chat frames between local sockets and the broker.

    Every chat event, including one going to the sender's other tabs on this
    instance, is delivered through the broker round trip. Nothing is echoed
    locally.
    """

    def __init__(
        self,
        bridge: BrokerBridge,
        registry: Optional[ConnectionRegistry] = None,
        subscriptions: Optional[TopicSubscriptionManager] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        max_message_length: int = MAX_MESSAGE_LENGTH,
        shutdown_grace: float = SHUTDOWN_GRACE_SECONDS,
    ):
        self.bridge = bridge
        self.registry = registry or ConnectionRegistry()
        self.subscriptions = subscriptions or TopicSubscriptionManager(bridge, self.registry)
        self.heartbeat_interval = heartbeat_interval
        self.max_message_length = max_message_length
        self.shutdown_grace = shutdown_grace
        self.closing = False
        self._clock = MillisecondClock()
        self._background: Set[asyncio.Task] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        bridge.on_message(self.handle_delivery)

    def start(self):
        if self.heartbeat_interval > 0 and self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")
            logger.info(f"Heartbeat started with interval {self.heartbeat_interval}s")

    def stats(self) -> dict:
        return {
            "broker_connected": self.bridge.is_connected,
            "active_rooms_on_instance": self.registry.total_rooms(),
            "web_socket_clients": self.registry.total_connections(),
            "instance_queue": self.bridge.instance_queue,
        }

    async def serve(self, transport: Transport, room_id: Optional[str], user_id: Optional[str] = None):
        """Run one client socket from admission to teardown."""
        conn = await self.admit(transport, room_id, user_id)
        if conn is None:
            return
        try:
            async for raw in transport.frames():
                await self.handle_frame(conn, raw)
        except Exception as e:
            logger.error(f"WebSocket error for {conn.user_id} in room {conn.room_id}: {e}", exc_info=True)
        finally:
            self.release(conn)
            await transport.close()

    async def admit(self, transport: Transport, room_id: Optional[str], user_id: Optional[str] = None) -> Optional[Connection]:
        if not room_id or not room_id.strip():
            logger.info("WebSocket connection rejected: room id missing")
            await transport.reject(WS_POLICY_VIOLATION, "Room ID is required")
            return None
        if self.closing:
            await transport.reject(WS_GOING_AWAY, "Server shutting down")
            return None
        user_id = user_id or generate_user_id()
        if not self.bridge.is_connected:
            logger.error(f"Broker unavailable, rejecting {user_id} for room {room_id}")
            await transport.reject(WS_INTERNAL_ERROR, "Server error, try again later.")
            return None

        await transport.accept()
        conn = Connection(transport, room_id, user_id)
        self.registry.register(room_id, conn)
        try:
            if not await self.subscriptions.ensure_subscribed(room_id):
                logger.warning(f"Room {room_id} has no broker binding yet, {user_id} will only see events after a retry")

            logger.info(f"Client {user_id} connected to room {room_id}")
            await self.send_local(conn, EventType.INFO, f"Welcome {user_id}!")
            await self.publish_system(room_id, f"{user_id} has joined the room.")
        except BaseException:
            self.release(conn)
            raise
        return conn

    async def handle_frame(self, conn: Connection, raw: str):
        conn.mark_alive()
        try:
            frame = ClientFrame.model_validate_json(raw)
        except ValidationError:
            logger.debug(f"Invalid frame from {conn.user_id} in room {conn.room_id}")
            await self.send_local(conn, EventType.ERROR, "Invalid message format.")
            return

        text = (frame.text or "").strip()
        if not text:
            await self.send_local(conn, EventType.ERROR, "Message text cannot be empty.")
            return
        if len(text) > self.max_message_length:
            await self.send_local(conn, EventType.ERROR, f"Message text exceeds {self.max_message_length} characters.")
            return

        if not self.subscriptions.is_subscribed(conn.room_id):
            await self.subscriptions.ensure_subscribed(conn.room_id)

        event = ChatEvent(
            room_id=conn.room_id,
            type=EventType.CHAT,
            sender=conn.user_id,
            text=text,
            timestamp=conn.clock.now(),
        )
        if not await self.bridge.publish(room_routing_key(conn.room_id), event):
            logger.error(f"Could not publish message from {conn.user_id} in room {conn.room_id}")
            await self.send_local(conn, EventType.ERROR, "Cannot send message now.")

    async def handle_delivery(self, delivery: Delivery):
        try:
            event = ChatEvent.model_validate_json(delivery.body)
        except ValidationError as e:
            logger.error(f"Dropping malformed broker message on {delivery.routing_key}: {e.error_count()} validation errors")
            delivery.nack(requeue=False)
            return
        await self.registry.broadcast_local(event.room_id, event.to_client_frame())
        delivery.ack()

    def release(self, conn: Connection):
        """Tear down a closed connection without waiting on the broker."""
        if conn.released:
            return
        conn.released = True
        room_empty = self.registry.unregister(conn.room_id, conn)
        logger.info(f"Client {conn.user_id} disconnected from room {conn.room_id}")
        self.spawn(
            self._announce_departure(conn.room_id, conn.user_id, room_empty),
            name=f"leave:{conn.room_id}:{conn.user_id}",
        )

    async def _announce_departure(self, room_id: str, user_id: str, room_empty: bool):
        try:
            if self.bridge.is_connected:
                await self.publish_system(room_id, f"{user_id} has left the room.")
        finally:
            if room_empty:
                await self.subscriptions.ensure_unsubscribed(room_id)

    async def publish_system(self, room_id: str, text: str) -> bool:
        event = ChatEvent(
            room_id=room_id,
            type=EventType.SYSTEM,
            sender=SYSTEM_SENDER,
            text=text,
            timestamp=self._clock.now(),
        )
        return await self.bridge.publish(room_routing_key(room_id), event)

    async def send_local(self, conn: Connection, event_type: EventType, text: str) -> bool:
        frame = {
            "type": event_type.value,
            "sender": SYSTEM_SENDER,
            "text": text,
            "timestamp": self._clock.now(),
        }
        try:
            await conn.send_json(frame)
        except Exception as e:
            logger.warning(f"Could not send {event_type.value} frame to {conn.user_id}: {e}")
            return False
        return True

    def handle_pong(self, conn: Connection):
        conn.mark_alive()

    async def heartbeat_tick(self):
        """Advance every pingable connection one step of ALIVE -> PENDING -> DEAD.

        Transports without protocol ping (the ASGI socket) are left to the
        server's own keepalive and never change state here.
        """
        pinged = []
        for conn in self.registry.connections():
            if not conn.transport.supports_ping:
                continue
            if conn.liveness is Liveness.PENDING:
                conn.liveness = Liveness.DEAD
                logger.info(f"Terminating unresponsive connection {conn.user_id} in room {conn.room_id}")
                self.spawn(conn.transport.terminate(), name=f"terminate:{conn.user_id}")
            elif conn.liveness is Liveness.ALIVE:
                conn.liveness = Liveness.PENDING
                pinged.append(conn)

        if not pinged:
            return
        results = await asyncio.gather(*(conn.transport.ping() for conn in pinged), return_exceptions=True)
        for conn, result in zip(pinged, results):
            if isinstance(result, BaseException):
                logger.debug(f"Ping to {conn.user_id} failed: {result}")

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_tick()
            except Exception as e:
                logger.error(f"Heartbeat tick failed: {e}", exc_info=True)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run work the caller does not wait for; failures are logged."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)

    async def wait_idle(self):
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self, grace: Optional[float] = None):
        grace = self.shutdown_grace if grace is None else grace
        logger.info(f"Shutting down gateway (grace period {grace}s)")
        self.closing = True

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        try:
            await asyncio.wait_for(self._drain(), timeout=grace)
        except asyncio.TimeoutError:
            logger.error(f"Graceful shutdown exceeded {grace}s, forcing teardown")
        finally:
            pending = list(self._background)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self.subscriptions.clear()
        logger.info("Gateway shutdown complete")

    async def _drain(self):
        closes = [conn.transport.close(WS_GOING_AWAY, "Server shutting down") for conn in self.registry.connections()]
        if closes:
            await asyncio.gather(*closes, return_exceptions=True)
        await self.wait_idle()
        await self.bridge.close()
