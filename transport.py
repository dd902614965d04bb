from typing import AsyncIterator, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from constants import WS_GOING_AWAY
from logging_config import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """What the gateway needs from a client socket."""

    @property
    def is_open(self) -> bool: ...

    # True when ping() sends a protocol ping whose pong reaches Connection.mark_alive
    supports_ping: bool

    async def accept(self): ...

    async def reject(self, code: int, reason: str): ...

    async def send_json(self, data: dict): ...

    async def ping(self): ...

    async def close(self, code: int = 1000, reason: Optional[str] = None): ...

    async def terminate(self): ...

    def frames(self) -> AsyncIterator[str]: ...


class StarletteTransport:
    """Adapts a FastAPI WebSocket to the gateway.

    ASGI gives applications no access to protocol ping/pong. uvicorn sends
    the pings itself (ws_ping_interval / ws_ping_timeout) and closes sockets
    whose pong never comes, which ends frames() like any other disconnect.
    """

    supports_ping = False

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def accept(self):
        await self.websocket.accept()

    async def reject(self, code: int, reason: str):
        # accept first so the browser sees the close code instead of a failed handshake
        await self.websocket.accept()
        await self.websocket.close(code=code, reason=reason)

    async def send_json(self, data: dict):
        await self.websocket.send_json(data)

    async def ping(self):
        raise NotImplementedError("protocol pings are sent by the ASGI server")

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        if WebSocketState.DISCONNECTED in (self.websocket.application_state, self.websocket.client_state):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"Error closing WebSocket: {e}")

    async def terminate(self):
        await self.close(WS_GOING_AWAY, "Heartbeat timeout")

    async def frames(self) -> AsyncIterator[str]:
        try:
            async for data in self.websocket.iter_text():
                yield data
        except WebSocketDisconnect as e:
            logger.debug(f"WebSocket disconnected with code {e.code}")
