import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.agent import events
from app.agent.connection import WebSocketConnection
from app.agent.relay import RelayOrchestrator
from app.api.chat.schemas import ChatCreateRequest, DeleteChatRequest
from app.core.errors import AuthenticationError, NotFoundError, PersistenceError
from app.core.security import authenticate_token, token_from_headers
from app.core.services import RelayServices

logger = logging.getLogger(__name__)


def _extract_token(websocket: WebSocket) -> Optional[str]:
    return websocket.query_params.get("token") or token_from_headers(websocket.headers.get("authorization"))


def _parse_frame(raw: str) -> Optional[Dict[str, Any]]:
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    return frame


async def websocket_endpoint(websocket: WebSocket, services: RelayServices):
    """Handle one client socket: authenticate once, then dispatch events until it closes."""
    connection = WebSocketConnection(websocket)
    await connection.accept()
    logger.info(
        "WebSocket connection %s accepted at %s from %s",
        connection.id, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), connection.client_host,
    )

    try:
        connection.user = authenticate_token(_extract_token(websocket))
    except AuthenticationError as e:
        logger.warning("Socket %s rejected: %s", connection.id, e)
        await connection.emit(events.AUTH_ERROR, {"message": e.public_message})
        await connection.close(code=events.CLOSE_POLICY_VIOLATION, reason="Authentication failed")
        return

    services.connections.add(connection)
    services.metrics.connection_opened()
    logger.info(
        "Socket connected: connection_id=%s user_id=%s total_connections=%d",
        connection.id, connection.user.user_id, len(services.connections),
    )

    relay = RelayOrchestrator(
        connection,
        services.chats,
        services.inference,
        metrics=services.metrics,
        flush_interval=services.settings.flush_interval,
        system_prompt=services.settings.SYSTEM_PROMPT,
    )

    try:
        while connection.is_open:
            raw = await connection.receive()
            frame = _parse_frame(raw)
            if frame is None:
                await connection.emit(events.ERROR, {"message": "Malformed event frame"})
                continue
            await _dispatch(connection, relay, services, frame["event"], frame.get("data"))

    except WebSocketDisconnect as e:
        logger.info("WebSocket %s disconnected by client (code=%s)", connection.id, e.code)
    finally:
        await relay.cancel()
        connection.mark_closed()
        services.connections.remove(connection)
        services.metrics.connection_closed()
        logger.info(
            "Socket disconnected: connection_id=%s user_id=%s total_connections=%d",
            connection.id, connection.user.user_id, len(services.connections),
        )


async def _dispatch(
    connection: WebSocketConnection,
    relay: RelayOrchestrator,
    services: RelayServices,
    event: str,
    data: Any,
) -> None:
    if event == events.CHAT_WITH_LLM:
        await relay.submit(data)
    elif event == events.CREATE_CHAT:
        await _handle_create_chat(connection, services, data)
    elif event == events.GET_USER_CHATS:
        await _handle_get_user_chats(connection, services)
    elif event == events.DELETE_CHAT:
        await _handle_delete_chat(connection, services, data)
    else:
        logger.debug("Unknown event %r on connection %s", event, connection.id)
        await connection.emit(events.ERROR, {"message": f"Unknown event: {event}"})


# ---------------------------------------------------
# 🗂️ Chat management events
# ---------------------------------------------------

async def _handle_create_chat(connection: WebSocketConnection, services: RelayServices, data: Any) -> None:
    try:
        request = ChatCreateRequest.model_validate(data or {})
        chat = await services.chats.create_chat(connection.user.user_id, request.title, request.context)
    except ValidationError:
        await connection.emit(events.ERROR, {"message": "Invalid chat details"})
        return
    except PersistenceError:
        await connection.emit(events.ERROR, {"message": "Failed to create chat"})
        return

    await connection.emit(
        events.CHAT_CREATED,
        {"chatId": chat.id, "chat": chat.model_dump(mode="json", by_alias=True)},
    )


async def _handle_get_user_chats(connection: WebSocketConnection, services: RelayServices) -> None:
    try:
        chats = await services.chats.list_chats(connection.user.user_id)
    except PersistenceError:
        await connection.emit(events.ERROR, {"message": "Failed to get chats"})
        return

    await connection.emit(
        events.USER_CHATS,
        {"chats": [c.model_dump(mode="json", by_alias=True) for c in chats]},
    )


async def _handle_delete_chat(connection: WebSocketConnection, services: RelayServices, data: Any) -> None:
    try:
        request = DeleteChatRequest.model_validate(data or {})
        await services.chats.delete_chat(request.chat_id, connection.user.user_id)
    except ValidationError:
        await connection.emit(events.ERROR, {"message": "chatId is required"})
        return
    except (NotFoundError, PersistenceError) as e:
        logger.warning("Failed to delete chat via socket: %s", e)
        await connection.emit(events.ERROR, {"message": "Failed to delete chat"})
        return

    await connection.emit(events.CHAT_DELETED, {"chatId": request.chat_id})
