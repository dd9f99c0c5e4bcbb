"""WebSocket channels.

- ``/shell`` -- interactive terminal relay (one ``ShellRelay`` per connection)
- ``/ws``    -- agent-chat commands and ``projects_updated`` broadcasts

Both authenticate during the handshake: a missing or invalid token closes
the upgrade with 1008 before ``accept()``, so nothing downstream runs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, WebSocket, status
from loguru import logger

from shellrelay.relay_server.auth import AuthError, authenticate
from shellrelay.relay_server.connections import Connection
from shellrelay.relay_server.execution.shell_relay import ShellRelay
from shellrelay.relay_server.models.enums import ConnectionKind

router = APIRouter(tags=["channels"])


async def _accept(websocket: WebSocket, kind: ConnectionKind) -> Connection | None:
    verifier = getattr(websocket.app.state, "verifier", None)
    try:
        if verifier is None:
            msg = "Server is not ready"
            raise AuthError(msg)
        identity = authenticate(verifier, websocket.query_params, websocket.headers)
    except AuthError as exc:
        logger.warning("Rejected {} handshake from {}: {}", kind, websocket.client, exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    await websocket.accept()
    connection = Connection(websocket, identity, kind)
    logger.info("Channel opened: {} from {}", connection, websocket.client)
    return connection


async def _frames(websocket: WebSocket) -> AsyncIterator[str | bytes]:
    """Yield text and binary frames until the client disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        data = message.get("text")
        if data is None:
            data = message.get("bytes")
        if data is not None:
            yield data


@router.websocket("/shell")
async def shell_channel(websocket: WebSocket) -> None:
    connection = await _accept(websocket, ConnectionKind.SHELL_RELAY)
    if connection is None:
        return

    state = websocket.app.state
    relay = ShellRelay(
        connection,
        state.registry,
        state.supervisor,
        default_cols=state.settings.default_cols,
        default_rows=state.settings.default_rows,
    )
    relay.start()
    try:
        async for raw in _frames(websocket):
            await relay.handle_message(raw)
    finally:
        connection.mark_closed()
        await relay.close()
        logger.info("Channel closed: {}", connection)


@router.websocket("/ws")
async def chat_channel(websocket: WebSocket) -> None:
    connection = await _accept(websocket, ConnectionKind.AGENT_CHAT)
    if connection is None:
        return

    state = websocket.app.state
    state.clients.add(connection)
    try:
        async for raw in _frames(websocket):
            await state.dispatcher.handle_message(connection, raw)
    finally:
        connection.mark_closed()
        state.clients.discard(connection)
        logger.info("Channel closed: {}", connection)
