from typing import Optional

import redis

from constants import REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from logging_config import get_logger
from schemas.rooms import Identity, RoomKey, RoomSnapshot
from services.broker import Broker
from services.guest_quota import GuestQuotaTracker
from services.message_store import MessageStore
from services.presence import PresenceRegister
from services.room_session import RoomSession

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    try:
        client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise


class RedisBackend:
    """Wires the room engine components to Redis.

    One instance per process. Pass clients explicitly to share a server
    between instances (tests use fakeredis this way).
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None,
                 clock=None, **broker_options):
        self.redis_client = redis_client or create_redis_client()
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or create_redis_client()
        logger.info("Initializing RedisBackend")

        self.store = MessageStore(self.redis_client, clock=clock)
        self.presence = PresenceRegister(self.redis_client, clock=clock)
        self.quota = GuestQuotaTracker(self.redis_client)
        self.broker = Broker(self.redis_client, self.pubsub_client, self.store, self.presence, **broker_options)

    def create_session(self, room_key: RoomKey, identity: Identity, connection_id: Optional[str] = None,
                       **session_options) -> RoomSession:
        return RoomSession(self.store, self.presence, self.quota, self.broker, room_key, identity,
                           connection_id=connection_id, **session_options)

    async def open_session(self, room_key: RoomKey, identity: Identity, connection_id: Optional[str] = None,
                           **session_options) -> RoomSession:
        session = self.create_session(room_key, identity, connection_id=connection_id, **session_options)
        await session.open()
        return session

    def room_snapshot(self, room_key: RoomKey) -> RoomSnapshot:
        """Read-only view of a room for callers that do not hold a session."""
        return RoomSnapshot(
            room_key=str(room_key),
            messages=self.store.list_valid(room_key),
            participants=self.presence.list(room_key),
        )

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self):
        await self.broker.close()
        logger.info("RedisBackend closed")


_redis_backend: Optional[RedisBackend] = None


def get_redis_backend() -> RedisBackend:
    """FastAPI dependency returning the process-wide backend."""
    global _redis_backend
    if _redis_backend is None:
        _redis_backend = RedisBackend()
    return _redis_backend


async def shutdown_redis_backend():
    global _redis_backend
    if _redis_backend is not None:
        await _redis_backend.close()
        _redis_backend = None
