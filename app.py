import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import InMemoryRoomStore, RedisBrokerBridge, RedisRoomStore
from broker import BrokerBridge, BrokerUnavailableError, InMemoryBrokerBridge, InMemoryExchange
from constants import BROKER_BACKEND, EXCHANGE_NAME, HEARTBEAT_INTERVAL_SECONDS, REDIS_URL
from gateway import RelayGateway
from routers.health import health_router
from routers.rooms import rooms_router
from transport import StarletteTransport
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_bridge(backend: str = BROKER_BACKEND) -> BrokerBridge:
    if backend == "memory":
        return InMemoryBrokerBridge(InMemoryExchange(EXCHANGE_NAME))
    return RedisBrokerBridge(REDIS_URL, EXCHANGE_NAME)


def build_room_store(backend: str = BROKER_BACKEND):
    if backend == "memory":
        return InMemoryRoomStore()
    return RedisRoomStore(REDIS_URL)


def create_app(
    bridge: Optional[BrokerBridge] = None,
    room_store=None,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
) -> FastAPI:
    """Build the relay application.

    Each app owns its own bridge, registry and subscriptions, so several apps
    attached to one broker behave like separate relay instances.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        instance_bridge = bridge or build_bridge()
        store = room_store or build_room_store()
        try:
            await instance_bridge.connect()
        except BrokerUnavailableError as e:
            # no retry loop: the supervisor restarts the process
            logger.critical(f"Broker unavailable at startup, shutting down: {e}")
            raise

        gateway = RelayGateway(instance_bridge, heartbeat_interval=heartbeat_interval)
        gateway.start()
        app.state.gateway = gateway
        app.state.room_store = store
        logger.info(f"Relay instance started with queue {instance_bridge.instance_queue}")
        try:
            yield
        finally:
            await gateway.shutdown()
            await store.close()
            logger.info("Relay instance stopped")

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(health_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, roomId: Optional[str] = None, userId: Optional[str] = None):
        """WebSocket endpoint relaying chat frames through the broker.

        Query parameters:
        - roomId: required, the room to join
        - userId: optional display identity; generated when absent
        """
        logger.info(f"WebSocket connection attempt for room: {roomId}, userId: {userId}")
        await websocket.app.state.gateway.serve(StarletteTransport(websocket), roomId, userId)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
