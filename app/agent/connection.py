import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from app.agent.events import CLOSE_NORMAL
from app.core.security import TokenIdentity

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection(Protocol):
    id: str
    user: Optional[TokenIdentity]
    state: ConnectionState

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        ...


class WebSocketConnection:
    """One client socket. Frames are ``{"event": name, "data": payload}`` JSON text."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.user: Optional[TokenIdentity] = None
        self.state = ConnectionState.CONNECTING
        self._websocket = websocket

    @property
    def client_host(self) -> Optional[str]:
        return self._websocket.client.host if self._websocket.client else None

    @property
    def is_open(self) -> bool:
        return (
            self.state is ConnectionState.OPEN
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def accept(self) -> None:
        await self._websocket.accept()
        self.state = ConnectionState.OPEN

    async def receive(self) -> Any:
        """Next raw text frame; raises WebSocketDisconnect when the client goes away."""
        return await self._websocket.receive_text()

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send one event. Returns False instead of raising when the socket is gone."""
        if not self.is_open:
            logger.debug("Dropping %s for closed connection %s", event, self.id)
            return False

        frame: Dict[str, Any] = {"event": event}
        if data is not None:
            frame["data"] = data
        try:
            await self._websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("Send of %s failed on connection %s: %s", event, self.id, e)
            self.state = ConnectionState.CLOSED
            return False
        return True

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self._websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self._websocket.close(code=code, reason=reason)
            except RuntimeError as e:
                logger.debug("Close on connection %s ignored: %s", self.id, e)

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED


class ConnectionRegistry:
    """Live connections, for the health endpoint."""

    def __init__(self):
        self._connections: Dict[str, WebSocketConnection] = {}

    def add(self, connection: WebSocketConnection) -> None:
        self._connections[connection.id] = connection

    def remove(self, connection: WebSocketConnection) -> None:
        self._connections.pop(connection.id, None)

    def __len__(self) -> int:
        return len(self._connections)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "active_connections": len(self._connections),
            "connection_ids": list(self._connections.keys()),
            "users": sorted({c.user.user_id for c in self._connections.values() if c.user}),
        }
