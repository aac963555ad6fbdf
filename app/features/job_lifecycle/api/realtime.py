"""
realtime.py
-----------
Purpose:
    WebSocket endpoint for the real-time job channel.

    Frames in both directions are JSON objects `{"event": str, "data": {...}}`.
    The token comes from the `token` query parameter or a bearer
    Authorization header; an invalid token closes the socket with code 4401
    before it is accepted.

    A writer task drains the connection's outbound queue so room events are
    delivered in the order they were published, and a heartbeat task keeps the
    user's presence entry alive while the socket is open. A store outage during
    the handshake closes with 1011.
"""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.auth.verify import AuthenticationError
from app.infrastructure.observability.logging import bind_request_context, clear_request_context, get_logger

from ..domain.errors import ErrorKind, StorageUnavailableError
from ..realtime import events
from ..realtime.events import RealtimeEvent

router = APIRouter(tags=["realtime"])
logger = get_logger(__name__)

AUTH_FAILED_CLOSE_CODE = 4401


def _token_from(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def _invalid_frame(message: str) -> RealtimeEvent:
    return RealtimeEvent(events.ERROR, {"message": message, "code": ErrorKind.VALIDATION_ERROR.value})


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event: RealtimeEvent = await queue.get()
        await websocket.send_json(event.to_frame())


async def _stop(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning("Real-time background task failed", task=task.get_name(), error=str(e))


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    services = websocket.app.state.services
    gateway = services.gateway

    try:
        conn = await gateway.connect(_token_from(websocket))
    except AuthenticationError as e:
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=str(e))
        return
    except StorageUnavailableError as e:
        logger.error("Storage unavailable during real-time handshake", operation=e.operation, error=str(e))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Service unavailable")
        return

    await websocket.accept()
    bind_request_context(connection_id=conn.id, user_id=conn.user_id)
    writer = asyncio.create_task(_pump(websocket, conn.queue), name=f"ws-writer-{conn.id}")
    heartbeat = asyncio.create_task(gateway.keep_presence(conn), name=f"ws-presence-{conn.id}")

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                services.broadcaster.send(conn.id, _invalid_frame("Frames must be JSON"))
                continue

            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                services.broadcaster.send(conn.id, _invalid_frame("Frames must carry an event name"))
                continue
            data = frame.get("data") or {}
            if not isinstance(data, dict):
                services.broadcaster.send(conn.id, _invalid_frame("Event data must be an object"))
                continue

            await gateway.handle(conn, frame["event"], data)
    except WebSocketDisconnect as e:
        logger.debug("WebSocket disconnected", code=e.code)
    finally:
        await _stop(heartbeat)
        await _stop(writer)
        await gateway.disconnect(conn)
        clear_request_context()
