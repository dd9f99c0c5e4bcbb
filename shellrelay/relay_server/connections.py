"""Channel connections and the set of open agent-chat clients.

``Connection`` wraps an accepted WebSocket.  Sends are serialised per
connection and silently dropped once the socket is gone, so background
producers (process output, watcher broadcasts) never have to care whether
the client is still there.
"""

from __future__ import annotations

import asyncio
import uuid

from fastapi import WebSocket
from loguru import logger
from starlette.websockets import WebSocketState

from shellrelay.relay_server.models.enums import ConnectionKind
from shellrelay.relay_server.models.frames import Frame, encode_frame
from shellrelay.relay_server.models.session import Identity


class Connection:
    """One authenticated client channel."""

    def __init__(self, websocket: WebSocket, user: Identity, kind: ConnectionKind) -> None:
        self.connection_id = uuid.uuid4().hex
        self.user = user
        self.kind = kind
        self.bound_session_key: str | None = None
        self._websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id[:8]} {self.kind} user={self.user.username}>"

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self._websocket.client_state is WebSocketState.CONNECTED
            and self._websocket.application_state is WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_frame(self, frame: Frame) -> bool:
        """Send one frame.  Returns ``False`` if the connection is no longer writable."""
        if not self.is_open:
            return False
        payload = encode_frame(frame)
        async with self._send_lock:
            if not self.is_open:
                return False
            try:
                await self._websocket.send_text(payload)
            except Exception as exc:
                logger.debug("Send failed on {}: {}", self, exc)
                self._closed = True
                return False
        return True

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state is WebSocketState.CONNECTED:
            try:
                await self._websocket.close(code=code)
            except RuntimeError as exc:
                logger.debug("Close failed on {}: {}", self, exc)


class ConnectedClientSet:
    """Open agent-chat connections that receive project-change broadcasts.

    Shell relay connections are never members.
    """

    def __init__(self) -> None:
        self._clients: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, connection: Connection) -> bool:
        return connection.connection_id in self._clients

    def add(self, connection: Connection) -> None:
        self._clients[connection.connection_id] = connection
        logger.debug("Chat client connected: {} (clients={})", connection, len(self._clients))

    def discard(self, connection: Connection) -> None:
        if self._clients.pop(connection.connection_id, None) is not None:
            logger.debug("Chat client disconnected: {} (clients={})", connection, len(self._clients))

    async def broadcast(self, frame: Frame) -> int:
        """Send *frame* to every writable client.  Returns the number reached.

        Iterates a snapshot, so clients joining or leaving mid-broadcast are
        safe.  A failure on one client does not affect the others.
        """
        delivered = 0
        for connection in list(self._clients.values()):
            if not connection.is_open:
                continue
            if await connection.send_frame(frame):
                delivered += 1
            else:
                logger.warning("Broadcast to {} failed; skipping", connection)
        return delivered

    async def close_all(self, code: int = 1001) -> int:
        """Close every member (server shutdown).  Returns the number closed."""
        connections = list(self._clients.values())
        for connection in connections:
            await connection.close(code)
        self._clients.clear()
        return len(connections)
