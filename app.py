from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from routers.rooms import rooms_router
from routers.guests import guests_router
from backend import RedisBackend, get_redis_backend, shutdown_redis_backend
from errors import QuotaExceeded, ValidationError
from schemas.rooms import Channel, HealthResponse, Identity, RoomKey
from services.room_session import RoomSession
from contextlib import asynccontextmanager
import json
import asyncio
from typing import Optional
from constants import LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_redis_backend()


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)
app.include_router(guests_router)

logger.info("FastAPI application initialized")


@app.get("/health", response_model=HealthResponse)
async def health(backend: RedisBackend = Depends(get_redis_backend)):
    redis_ok = backend.ping()
    return HealthResponse(status="ok" if redis_ok else "degraded", redis=redis_ok)


class ClientConnection:
    """Serializes writes to one WebSocket; events and replies are sent from different tasks."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self._lock = asyncio.Lock()

    async def send(self, payload: dict):
        async with self._lock:
            await self.websocket.send_text(json.dumps(payload))

    async def send_error(self, code: str, message: str, **extra):
        await self.send({"type": "error", "code": code, "message": message, **extra})


def quota_payload(session: RoomSession) -> Optional[dict]:
    status = session.quota_status()
    return status.model_dump() if status else None


async def relay_events(connection: ClientConnection, session: RoomSession):
    """Forward broker events for the session's room to the client."""
    async for event in session.events():
        await connection.send(event.model_dump(mode="json"))
    logger.info(f"Event stream ended for connection {connection.connection_id} in room {session.room_key}")


async def receive_commands(connection: ClientConnection, session: RoomSession) -> Optional[Channel]:
    """Handle client frames until the client leaves, disconnects or switches channel.

    Returns the channel to switch to, or None when the connection should end.
    """
    message_count = 0
    while True:
        try:
            data = await connection.websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for connection {connection.connection_id} in room {session.room_key}")
            return None
        message_count += 1
        logger.debug(f"Received frame #{message_count} from connection {connection.connection_id} in room {session.room_key}")

        # If not JSON, treat as plain text message
        try:
            command = json.loads(data)
        except json.JSONDecodeError:
            command = None
        if not isinstance(command, dict):
            command = {"type": "send", "content": data}

        command_type = command.get("type", "send")
        if command_type == "send":
            try:
                message = await session.send(command.get("content"), reply_to=command.get("reply_to"))
            except QuotaExceeded as e:
                await connection.send_error("quota_exceeded", str(e), count=e.count, limit=e.limit)
            except ValidationError as e:
                await connection.send_error("validation_error", str(e))
            else:
                await connection.send({"type": "ack", "message_id": message.id, "quota": quota_payload(session)})
        elif command_type == "switch_channel":
            try:
                return Channel(command.get("channel"))
            except ValueError:
                await connection.send_error("invalid_command", f"Unknown channel {command.get('channel')!r}")
        elif command_type == "leave":
            logger.info(f"Connection {connection.connection_id} left room {session.room_key}")
            return None
        else:
            await connection.send_error("invalid_command", f"Unknown command type {command_type!r}")


async def serve_session(connection: ClientConnection, session: RoomSession) -> Optional[Channel]:
    relay = asyncio.create_task(relay_events(connection, session))
    receiver = asyncio.create_task(receive_commands(connection, session))
    try:
        done, _ = await asyncio.wait({relay, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (relay, receiver):
            task.cancel()
        results = await asyncio.gather(relay, receiver, return_exceptions=True)

    for task, result in zip((relay, receiver), results):
        if isinstance(result, Exception):
            logger.error(f"Error on connection {connection.connection_id} in room {session.room_key}: {result}", exc_info=result)
    if receiver in done and not receiver.cancelled() and receiver.exception() is None:
        return receiver.result()
    return None


@app.websocket("/rooms/{topic_id}/{category}/{channel}/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    topic_id: str,
    category: str,
    channel: str,
    participant_id: Optional[str] = None,
    display_name: Optional[str] = None,
    role: str = "guest",
    backend: RedisBackend = Depends(get_redis_backend),
):
    """WebSocket endpoint binding one client to one room.

    Query parameters (resolved by the authentication layer in front of this service):
    - participant_id: Stable participant id, guests must reuse theirs for the quota to hold
    - display_name: Optional display name for the user
    - role: user, consultant, resident or guest (default)
    """
    logger.info(f"WebSocket connection attempt for room: {topic_id}/{category}/{channel}, participant: {participant_id}")

    try:
        room_key = RoomKey(topic_id=topic_id, category=category, channel=channel)
    except PydanticValidationError:
        logger.info(f"WebSocket connection rejected: invalid room key {topic_id}/{category}/{channel}")
        await websocket.close(code=1008, reason="Invalid room key")
        return

    if not participant_id or not participant_id.strip():
        logger.info(f"WebSocket connection rejected: missing participant_id for room {room_key}")
        await websocket.close(code=1008, reason="participant_id is required")
        return

    final_display_name = display_name.strip() if display_name and display_name.strip() else f"User_{participant_id.strip()[:8]}"
    try:
        identity = Identity(participant_id=participant_id, display_name=final_display_name, role=role)
    except PydanticValidationError:
        logger.info(f"WebSocket connection rejected: invalid identity for room {room_key}, role={role}")
        await websocket.close(code=1008, reason="Invalid identity")
        return

    await websocket.accept()
    session = backend.create_session(room_key, identity)
    connection = ClientConnection(websocket, session.connection_id)
    logger.info(f"WebSocket connection {session.connection_id} accepted for room: {room_key}")

    try:
        await session.open()
        while True:
            snapshot = session.snapshot()
            await connection.send({"type": "snapshot", **snapshot.model_dump(mode="json"), "connection_id": session.connection_id, "quota": quota_payload(session)})
            next_channel = await serve_session(connection, session)
            if next_channel is None:
                break
            session = await session.switch_channel(next_channel)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected during setup for connection {connection.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id} in room {session.room_key}: {e}", exc_info=True)
    finally:
        # Cleanup on disconnect
        await session.leave()
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
