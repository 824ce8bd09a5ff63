from datetime import datetime, timedelta
from typing import Callable, Optional

import redis

from constants import PRESENCE_LEASE_SECONDS
from logging_config import get_logger
from redis_keys import REDIS_LEASE_KEY, REDIS_PRESENCE_KEY
from schemas.rooms import Identity, PresenceEntry, RoomKey
from services.message_store import epoch_micros, utcnow

logger = get_logger(__name__)


class PresenceRegister:
    """Who is connected to each room.

    Every entry carries a lease that the owning session refreshes with
    `heartbeat`. Entries whose lease ran out are invisible to `list` and get
    removed by `reap`, which covers instances that died without cleaning up.
    """

    def __init__(self, redis_client: redis.Redis, clock: Optional[Callable[[], datetime]] = None,
                 lease_seconds: int = PRESENCE_LEASE_SECONDS):
        self.redis_client = redis_client
        self.clock = clock or utcnow
        self.lease = timedelta(seconds=lease_seconds)

    def _keys(self, room_key: RoomKey):
        slug = str(room_key)
        return REDIS_PRESENCE_KEY.format(slug=slug), REDIS_LEASE_KEY.format(slug=slug)

    def join(self, room_key: RoomKey, participant: Identity, connection_id: Optional[str] = None) -> PresenceEntry:
        presence_key, lease_key = self._keys(room_key)
        now = self.clock()
        entry = PresenceEntry(
            participant_id=participant.participant_id,
            display_name=participant.display_name,
            role=participant.role,
            joined_at=now,
            connection_id=connection_id,
        )
        pipe = self.redis_client.pipeline()
        pipe.hset(presence_key, participant.participant_id, entry.model_dump_json())
        pipe.zadd(lease_key, {participant.participant_id: epoch_micros(now + self.lease)})
        pipe.execute()
        logger.info(f"Participant {participant.participant_id} ({participant.display_name}) joined room {room_key}")
        return entry

    def leave(self, room_key: RoomKey, participant_id: str, connection_id: Optional[str] = None) -> bool:
        """Remove a participant. With `connection_id`, only the entry owned by that connection goes."""
        presence_key, lease_key = self._keys(room_key)

        def remove(pipe):
            raw = pipe.hget(presence_key, participant_id)
            if raw is None:
                return False
            if connection_id is not None:
                if PresenceEntry.model_validate_json(raw).connection_id != connection_id:
                    logger.debug(f"Presence of {participant_id} in room {room_key} belongs to another connection, keeping it")
                    return False
            pipe.multi()
            pipe.hdel(presence_key, participant_id)
            pipe.zrem(lease_key, participant_id)
            return True

        removed = self.redis_client.transaction(remove, presence_key, value_from_callable=True)
        if removed:
            logger.info(f"Participant {participant_id} left room {room_key}")
        return removed

    def heartbeat(self, room_key: RoomKey, participant_id: str) -> bool:
        """Extend the participant's lease. Returns False if the entry is gone."""
        _, lease_key = self._keys(room_key)
        expires = epoch_micros(self.clock() + self.lease)
        self.redis_client.zadd(lease_key, {participant_id: expires}, xx=True)
        return self.redis_client.zscore(lease_key, participant_id) is not None

    def reap(self, room_key: RoomKey) -> list[str]:
        """Drop entries whose lease has run out and return their participant ids."""
        presence_key, lease_key = self._keys(room_key)
        stale = self.redis_client.zrangebyscore(lease_key, "-inf", epoch_micros(self.clock()))
        if not stale:
            return []
        pipe = self.redis_client.pipeline()
        pipe.hdel(presence_key, *stale)
        pipe.zrem(lease_key, *stale)
        pipe.execute()
        logger.info(f"Reaped {len(stale)} stale participants from room {room_key}: {stale}")
        return stale

    def list(self, room_key: RoomKey) -> list[PresenceEntry]:
        presence_key, lease_key = self._keys(room_key)
        now = epoch_micros(self.clock())
        pipe = self.redis_client.pipeline()
        pipe.hgetall(presence_key)
        pipe.zrangebyscore(lease_key, f"({now}", "+inf")
        entries, live = pipe.execute()
        live = set(live)
        participants = [
            PresenceEntry.model_validate_json(raw)
            for participant_id, raw in entries.items()
            if participant_id in live
        ]
        logger.debug(f"Room {room_key} has {len(participants)} participants online")
        return participants
