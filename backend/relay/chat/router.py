"""Chat router providing HTTP and WebSocket endpoints.

This module provides:
    - GET /messages: Most recent messages, oldest first
    - POST /messages: Store a message and broadcast it
    - WebSocket /ws: Real-time messaging

The WebSocket protocol uses JSON text frames with a "type" field.

Inbound:
    - join_global: Join the default room (every connection is already in it)
    - send_message: {user?, text} - store and broadcast a message
    - history: {limit?} - reply with recent messages to the sender only

Outbound:
    - new_message: {...ChatMessage} - sent to everyone on every stored message
    - history: {messages: [...]} - reply to a history request
    - error: {message} - sent to the originating connection only
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from relay.errors import StoreError, ValidationError
from relay.messages.schemas import MessageCreate

from .context import ChatContext
from .registry import Connection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

# Sent to the originating connection when its message could not be stored
SAVE_FAILED_MESSAGE = "Message save failed"
HISTORY_FAILED_MESSAGE = "History load failed"
INVALID_BODY_MESSAGE = "Invalid JSON body"


def _context(request: Request) -> ChatContext:
    return request.app.state.chat


@router.get("/messages")
async def list_messages(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return (capped at 100)")
) -> JSONResponse:
    """Get the most recent messages in chronological order.

    Args:
        limit: Maximum number of messages; defaults to and is capped by
               the configured history limit.

    Returns:
        JSON array of messages, oldest first. 500 if the store fails.

    Example:
        GET /messages
        GET /messages?limit=20
    """
    try:
        messages = await _context(request).history.fetch(limit)
    except StoreError as e:
        logger.error(f"[HTTP] History query failed: {e.message}")
        return JSONResponse({"error": "Server error"}, status_code=500)

    return JSONResponse([msg.model_dump(mode="json") for msg in messages])


@router.post(
    "/messages",
    status_code=201,
    openapi_extra={
        "requestBody": {
            "content": {"application/json": {"schema": MessageCreate.model_json_schema()}},
        }
    },
)
async def create_message(request: Request) -> JSONResponse:
    """Store a message and broadcast it to all connected clients.

    The body is parsed here rather than by FastAPI so that every client
    error, malformed JSON included, is a 400 with an {"error": ...} body.

    Body:
        {user?, text}. A missing user becomes "Anonymous". Non-string
        fields are treated as missing.

    Returns:
        The created message (201), 400 if the body is not JSON or text is
        missing or blank, or 500 if the store fails.
    """
    raw = await request.body()
    try:
        body = json.loads(raw) if raw.strip() else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse({"error": INVALID_BODY_MESSAGE}, status_code=400)
    if not isinstance(body, dict):
        body = {}

    try:
        message = await _context(request).pipeline.ingest(body)
    except ValidationError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    except StoreError as e:
        logger.error(f"[HTTP] Message save failed: {e.message}")
        return JSONResponse({"error": "Server error"}, status_code=500)

    return JSONResponse(message.model_dump(mode="json"), status_code=201)


async def _reply(connection: Connection, payload: dict) -> None:
    """Send to the originating connection only; a dead sender is not an error."""
    try:
        await connection.send(payload)
    except Exception as e:
        logger.debug(f"[WS] Could not reply to {connection.id}: {e}")


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects → registered and auto-joined to the default room
           (no event is sent; clients fetch history themselves)
        2. Client sends: {type: "join_global"} → no-op if already joined
        3. Client sends: {type: "send_message", user, text}
           → Server broadcasts: {type: "new_message", ...message} to everyone,
             the sender included
           → On store failure the sender alone gets:
             {type: "error", message: "Message save failed"}
           → Blank text is ignored
        4. Client sends: {type: "history", limit}
           → Server replies: {type: "history", messages: [...]}
        5. On disconnect → unregistered; nothing survives a reconnect
    """
    chat: ChatContext = websocket.app.state.chat

    origin = websocket.headers.get("origin")
    if not chat.config.server.allows_origin(origin):
        logger.warning(f"[WS] Rejecting connection from disallowed origin {origin!r}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    connection = Connection(websocket)
    chat.registry.register(connection)
    chat.registry.join(connection.id, chat.default_room)
    logger.info(f"[WS] Client connected: {connection.id} ({len(chat.registry)} connections)")

    try:
        # Events from one connection are handled strictly in arrival order
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))
            raw = frame.get("text")
            if raw is None:
                logger.debug(f"[WS] Ignoring binary frame from {connection.id}")
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"[WS] Ignoring non-JSON frame from {connection.id}")
                continue
            if not isinstance(data, dict):
                logger.debug(f"[WS] Ignoring non-object frame from {connection.id}")
                continue

            message_type = data.get("type")
            logger.debug("[WS] %s received: type=%s", connection.id, message_type)

            if message_type == "join_global":
                chat.registry.join(connection.id, chat.default_room)
                continue

            if message_type == "send_message":
                try:
                    await chat.pipeline.ingest(data)
                except ValidationError:
                    logger.debug(f"[WS] Dropped blank message from {connection.id}")
                except StoreError as e:
                    logger.error(f"[WS] Error saving message from {connection.id}: {e.message}")
                    await _reply(connection, {"type": "error", "message": SAVE_FAILED_MESSAGE})
                continue

            if message_type == "history":
                limit = data.get("limit")
                if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
                    limit = None
                try:
                    messages = await chat.history.fetch(limit)
                except StoreError as e:
                    logger.error(f"[WS] History query failed for {connection.id}: {e.message}")
                    await _reply(connection, {"type": "error", "message": HISTORY_FAILED_MESSAGE})
                    continue
                await _reply(connection, {
                    "type": "history",
                    "messages": [msg.model_dump(mode="json") for msg in messages],
                })
                continue

            logger.debug(f"[WS] Ignoring unknown event type {message_type!r} from {connection.id}")

    except WebSocketDisconnect as e:
        logger.info(f"[WS] Client disconnected: {connection.id} (code={e.code})")
    finally:
        chat.registry.unregister(connection.id)
