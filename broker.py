"""Broker bridge contract and the in-process topic exchange.

Only a bridge talks to the broker. The gateway and the subscription manager
go through the methods below and never touch a client library directly.
"""
import asyncio
import random
import string
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Set

from redis_keys import INSTANCE_QUEUE_NAME
from schemas.events import ChatEvent
from logging_config import get_logger

logger = get_logger(__name__)


class BrokerError(Exception):
    """A broker operation could not be carried out."""


class BrokerUnavailableError(BrokerError):
    """The broker cannot be reached, or the bridge is disconnected."""


def new_instance_queue_name() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return INSTANCE_QUEUE_NAME.format(suffix=suffix)


class Delivery:
    """One message handed to the consumer callback.

    The handler settles it exactly once: ack after local processing,
    nack (never requeued) when the payload cannot be parsed.
    """

    def __init__(self, routing_key: str, body: str, on_settle: Optional[Callable[[bool], None]] = None):
        self.routing_key = routing_key
        self.body = body
        self.settled = False
        self.acked = False
        self._on_settle = on_settle

    def ack(self):
        self._settle(True)

    def nack(self, requeue: bool = False):
        if requeue:
            # a malformed payload stays malformed
            logger.debug(f"Ignoring requeue request for message on {self.routing_key}")
        self._settle(False)

    def _settle(self, acked: bool):
        if self.settled:
            return
        self.settled = True
        self.acked = acked
        if self._on_settle:
            self._on_settle(acked)


MessageHandler = Callable[[Delivery], Awaitable[None]]


class BrokerBridge(ABC):
    """Owns the broker connection, the topic exchange and the instance queue."""

    def __init__(self, exchange_name: str, instance_queue: Optional[str] = None):
        self.exchange_name = exchange_name
        self.instance_queue = instance_queue or new_instance_queue_name()
        self._handler: Optional[MessageHandler] = None
        self.acked_count = 0
        self.nacked_count = 0

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self):
        """Connect, declare the exchange and the instance queue, start consuming.

        Raises BrokerUnavailableError if the broker cannot be reached.
        """

    @abstractmethod
    async def publish(self, routing_key: str, event: ChatEvent) -> bool:
        """Best-effort publish. Returns False instead of raising when disconnected."""

    @abstractmethod
    async def bind(self, routing_key: str):
        ...

    @abstractmethod
    async def unbind(self, routing_key: str):
        ...

    @abstractmethod
    async def close(self):
        ...

    def on_message(self, handler: MessageHandler):
        self._handler = handler

    def _make_delivery(self, routing_key: str, body: str) -> Delivery:
        return Delivery(routing_key, body, on_settle=self._record_settle)

    def _record_settle(self, acked: bool):
        if acked:
            self.acked_count += 1
        else:
            self.nacked_count += 1

    async def _dispatch(self, delivery: Delivery):
        if self._handler is None:
            logger.warning(f"No consumer registered on {self.instance_queue}, dropping message for {delivery.routing_key}")
            delivery.nack(requeue=False)
            return
        try:
            await self._handler(delivery)
        except Exception as e:
            logger.error(f"Consumer failed on message for {delivery.routing_key}: {e}", exc_info=True)
            delivery.nack(requeue=False)
        else:
            if not delivery.settled:
                delivery.ack()


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: `*` is exactly one word, `#` is zero or more."""
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head = pattern[0]
    if head == "#":
        return any(_match_words(pattern[1:], words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(pattern[1:], words[1:])
    return False


class InMemoryExchange:
    """A topic exchange living inside the process.

    Several bridges attached to one exchange behave like several relay
    instances sharing a broker node.
    """

    def __init__(self, name: str = "chat_exchange"):
        self.name = name
        self.reachable = True
        self._queues: Dict[str, "InMemoryBrokerBridge"] = {}
        self._bindings: Dict[str, Set[str]] = {}

    def declare_queue(self, bridge: "InMemoryBrokerBridge"):
        if not self.reachable:
            raise BrokerUnavailableError(f"Exchange {self.name} is unreachable")
        if bridge.instance_queue in self._queues:
            raise BrokerError(f"Queue {bridge.instance_queue} is exclusive to another consumer")
        self._queues[bridge.instance_queue] = bridge
        self._bindings[bridge.instance_queue] = set()
        logger.debug(f"Queue {bridge.instance_queue} declared on exchange {self.name}")

    def delete_queue(self, queue_name: str):
        # auto-delete drops the bindings with the queue
        self._queues.pop(queue_name, None)
        self._bindings.pop(queue_name, None)

    def bind(self, queue_name: str, routing_key: str):
        self._bindings[queue_name].add(routing_key)

    def unbind(self, queue_name: str, routing_key: str):
        self._bindings[queue_name].discard(routing_key)

    def bindings(self, queue_name: str) -> Set[str]:
        return set(self._bindings.get(queue_name, ()))

    def publish(self, routing_key: str, body: str) -> int:
        routed = 0
        for queue_name, patterns in self._bindings.items():
            if any(topic_matches(pattern, routing_key) for pattern in patterns):
                self._queues[queue_name].enqueue(routing_key, body)
                routed += 1
        logger.debug(f"Routed message for {routing_key} to {routed} queues")
        return routed

    def drop_connections(self):
        """Simulate the broker going away under every attached bridge."""
        self.reachable = False
        for bridge in list(self._queues.values()):
            bridge.connection_lost()

    async def settle(self):
        """Wait until every queued message has been consumed."""
        for bridge in list(self._queues.values()):
            await bridge.drain()


class InMemoryBrokerBridge(BrokerBridge):
    def __init__(self, exchange: InMemoryExchange, instance_queue: Optional[str] = None):
        super().__init__(exchange.name, instance_queue)
        self.exchange = exchange
        self._connected = False
        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self):
        self.exchange.declare_queue(self)
        self._queue = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume(), name=f"consume:{self.instance_queue}")
        self._connected = True
        logger.info(f"In-memory broker bridge connected with queue {self.instance_queue}")

    async def publish(self, routing_key: str, event: ChatEvent) -> bool:
        if not self._connected:
            logger.warning(f"Publish to {routing_key} skipped: bridge {self.instance_queue} is disconnected")
            return False
        self.exchange.publish(routing_key, event.to_wire())
        return True

    async def bind(self, routing_key: str):
        self._require_connection()
        self.exchange.bind(self.instance_queue, routing_key)
        logger.debug(f"Queue {self.instance_queue} bound with key {routing_key}")

    async def unbind(self, routing_key: str):
        self._require_connection()
        self.exchange.unbind(self.instance_queue, routing_key)
        logger.debug(f"Queue {self.instance_queue} unbound for key {routing_key}")

    async def close(self):
        self._connected = False
        self.exchange.delete_queue(self.instance_queue)
        await self._stop_consumer()
        logger.info(f"In-memory broker bridge {self.instance_queue} closed")

    def enqueue(self, routing_key: str, body: str):
        if self._queue is not None:
            self._queue.put_nowait((routing_key, body))

    def connection_lost(self):
        logger.error(f"Broker connection lost for queue {self.instance_queue}")
        self._connected = False
        self.exchange.delete_queue(self.instance_queue)
        if self._consumer_task:
            self._consumer_task.cancel()

    async def drain(self):
        if self._queue is not None and self._connected:
            await self._queue.join()

    def _require_connection(self):
        if not self._connected:
            raise BrokerUnavailableError(f"Bridge {self.instance_queue} is disconnected")

    async def _consume(self):
        while True:
            routing_key, body = await self._queue.get()
            try:
                await self._dispatch(self._make_delivery(routing_key, body))
            finally:
                self._queue.task_done()

    async def _stop_consumer(self):
        if self._consumer_task is None:
            return
        self._consumer_task.cancel()
        try:
            await self._consumer_task
        except asyncio.CancelledError:
            pass
        self._consumer_task = None
