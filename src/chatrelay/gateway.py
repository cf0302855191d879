import asyncio
import json
import logging
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .errors import ConnectionGone

logger = logging.getLogger(__name__)


class ClientGateway(Protocol):
    async def send(self, connection_id: str, payload: dict[str, Any]) -> None: ...


class WebSocketGateway:
    """Pushes JSON messages to live WebSocket connections.

    Sends to one connection are serialized through a per-connection lock so
    they reach the socket in call order.
    """

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def register(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket
        self._locks[connection_id] = asyncio.Lock()

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        self._locks.pop(connection_id, None)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sockets

    async def send(self, connection_id: str, payload: dict[str, Any]) -> None:
        websocket = self._sockets.get(connection_id)
        lock = self._locks.get(connection_id)
        if websocket is None or lock is None:
            raise ConnectionGone(f"connection {connection_id} is not connected")
        async with lock:
            if websocket.application_state is not WebSocketState.CONNECTED:
                raise ConnectionGone(f"connection {connection_id} is closed")
            try:
                await websocket.send_text(json.dumps(payload, ensure_ascii=False))
            except (RuntimeError, OSError, WebSocketDisconnect) as exc:
                logger.warning("gateway.send_failed connection=%s error=%s", connection_id, exc)
                raise ConnectionGone(f"connection {connection_id} is closed") from exc
