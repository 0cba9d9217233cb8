# app/routers/realtime.py
"""
Fan-out socket endpoint.

Protocol:
1. The upgrade is accepted unauthenticated
2. The first frame must be {"type": "auth", "token": ...}
3. After auth_success the connection is registered and frames are dispatched by type
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from .. import schemas, security
from ..core.errors import AppError
from ..database import SessionLocal
from ..services.realtime_service import Connection, connection_manager
from ..services.signaling_service import call_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Real-time"])

AUTH_TIMEOUT_SECONDS = 30
POLICY_VIOLATION = 1008
SUPERSEDED = 4000


def _resolve(token: str) -> schemas.Principal:
    db = SessionLocal()
    try:
        return security.resolve_token(token, db)
    finally:
        db.close()


async def _receive_text(websocket: WebSocket) -> str:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


def _parse(raw: str):
    try:
        return schemas.ws_message_adapter.validate_json(raw)
    except PydanticValidationError:
        return None


async def _reject(websocket: WebSocket, reason: str) -> None:
    await websocket.send_text(schemas.AuthError(message=reason).model_dump_json())
    await websocket.close(code=POLICY_VIOLATION)


async def _authenticate(websocket: WebSocket) -> Optional[schemas.Principal]:
    try:
        with anyio.fail_after(AUTH_TIMEOUT_SECONDS):
            raw = await _receive_text(websocket)
    except TimeoutError:
        await _reject(websocket, "Authentication timed out")
        return None
    except WebSocketDisconnect:
        return None

    message = _parse(raw)
    if not isinstance(message, schemas.AuthMessage):
        await _reject(websocket, "First message must be authentication")
        return None

    try:
        return await run_in_threadpool(_resolve, message.token)
    except AppError as e:
        await _reject(websocket, e.message)
    except SQLAlchemyError as e:
        logger.error(f"Storage error during socket authentication: {e}")
        await _reject(websocket, "Authentication is temporarily unavailable")
    return None


def _dispatch(connection: Connection, raw: str) -> None:
    message = _parse(raw)
    if message is None:
        connection.send(schemas.ErrorMessage(message="Malformed or unknown message"))
        return

    if isinstance(message, schemas.Heartbeat):
        connection.send(schemas.HeartbeatAck())
    elif isinstance(message, schemas.ChatMessage):
        chat = message.model_copy(update={
            "id": uuid.uuid4(),
            "sender_id": connection.user_id,
            "timestamp": datetime.now(timezone.utc),
        })
        connection.send(chat)
        if chat.receiver_id != connection.user_id:
            connection_manager.send_to_user(chat.receiver_id, chat)
    elif isinstance(message, (schemas.VideoCallAccepted, schemas.VideoCallRejected, schemas.VideoCallEnded)):
        call_registry.relay(connection.user_id, message)
    else:
        logger.debug(f"Ignoring inbound {message.type} from {connection.user_id}")


async def _reader(websocket: WebSocket, connection: Connection, scope: anyio.CancelScope) -> None:
    try:
        while True:
            _dispatch(connection, await _receive_text(websocket))
    except WebSocketDisconnect as e:
        logger.debug(f"Socket for user {connection.user_id} disconnected ({e.code})")
    finally:
        scope.cancel()


async def _writer(websocket: WebSocket, connection: Connection, scope: anyio.CancelScope) -> None:
    try:
        while True:
            message = await connection.next_message()
            if message is None:
                # closed from the server side (superseded)
                await websocket.close(code=SUPERSEDED)
                return
            await websocket.send_text(message.model_dump_json())
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Socket for user {connection.user_id} already closed: {e}")
    finally:
        scope.cancel()


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    await websocket.accept()
    principal = await _authenticate(websocket)
    if principal is None:
        return

    connection = Connection(principal.user_id, principal.role)
    await websocket.send_text(schemas.AuthSuccess(user_id=principal.user_id, role=principal.role).model_dump_json())
    connection_manager.register(connection)
    try:
        # whichever loop ends first tears down the other
        async with anyio.create_task_group() as tg:
            tg.start_soon(_reader, websocket, connection, tg.cancel_scope)
            tg.start_soon(_writer, websocket, connection, tg.cancel_scope)
    finally:
        connection_manager.unregister(connection)
