from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError as PydanticValidationError

from backend import RedisBackend, get_redis_backend
from logging_config import get_logger
from schemas.rooms import Message, PresenceEntry, RoomDetailsResponse, RoomKey

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def resolve_room_key(topic_id: str, category: str, channel: str) -> RoomKey:
    try:
        return RoomKey(topic_id=topic_id, category=category, channel=channel)
    except PydanticValidationError as e:
        logger.warning(f"Invalid room key {topic_id}/{category}/{channel}: {e.errors()}")
        raise HTTPException(status_code=400, detail="Invalid room key")


@rooms_router.get("/{topic_id}/{category}/{channel}", response_model=RoomDetailsResponse)
async def get_room_details(
    request: Request,
    room_key: RoomKey = Depends(resolve_room_key),
    include_messages: bool = Query(False, description="Include the currently valid messages"),
    backend: RedisBackend = Depends(get_redis_backend),
):
    """
    Get room details including who is online.

    Returns:
    - room_key: `{topic_id}/{category}/{channel}`
    - message_count: Number of messages that have not expired yet
    - online_users_count / online_users: Current presence snapshot
    - messages: Valid messages, only when include_messages=true
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room details request for {room_key} from {client_host}")

    snapshot = backend.room_snapshot(room_key)
    return RoomDetailsResponse(
        room_key=snapshot.room_key,
        topic_id=room_key.topic_id,
        category=room_key.category,
        channel=room_key.channel,
        message_count=len(snapshot.messages),
        online_users_count=len(snapshot.participants),
        online_users=snapshot.participants,
        messages=snapshot.messages if include_messages else None,
    )


@rooms_router.get("/{topic_id}/{category}/{channel}/messages", response_model=list[Message])
async def list_messages(room_key: RoomKey = Depends(resolve_room_key), backend: RedisBackend = Depends(get_redis_backend)):
    messages = backend.store.list_valid(room_key)
    logger.debug(f"Listing {len(messages)} messages for room {room_key}")
    return messages


@rooms_router.get("/{topic_id}/{category}/{channel}/presence", response_model=list[PresenceEntry])
async def list_presence(room_key: RoomKey = Depends(resolve_room_key), backend: RedisBackend = Depends(get_redis_backend)):
    return backend.presence.list(room_key)
