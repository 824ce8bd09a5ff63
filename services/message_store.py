from datetime import datetime, timezone
from typing import Callable, Optional

import redis

from constants import MESSAGE_TTL
from errors import ValidationError
from logging_config import get_logger
from redis_keys import REDIS_EXPIRY_KEY, REDIS_MESSAGES_KEY, REDIS_SEQUENCE_KEY, REDIS_TIMELINE_KEY
from schemas.rooms import Message, MessageDraft, RoomKey

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MESSAGE_ID_WIDTH = 12


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_micros(moment: datetime) -> int:
    """Exact integer microseconds since the epoch, used as a sorted set score."""
    delta = moment - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def format_message_id(sequence: int) -> str:
    return str(sequence).zfill(MESSAGE_ID_WIDTH)


class MessageStore:
    """Per-room message storage with a fixed 48 hour lifetime.

    Layout per room (see redis_keys.py):
    - messages hash: id -> message json
    - timeline zset: id scored by assignment sequence (read order)
    - expiry zset: id scored by expires_at, used for purging
    - sequence hash: last assigned sequence and last created_at

    Expired records are purged lazily on append and read. Reads filter on
    expires_at themselves. A read never purges past its own `as_of`, but a
    historical read cannot see records an earlier present-time call purged.
    """

    def __init__(self, redis_client: redis.Redis, clock: Optional[Callable[[], datetime]] = None):
        self.redis_client = redis_client
        self.clock = clock or utcnow

    def _keys(self, room_key: RoomKey):
        slug = str(room_key)
        return (
            REDIS_MESSAGES_KEY.format(slug=slug),
            REDIS_TIMELINE_KEY.format(slug=slug),
            REDIS_EXPIRY_KEY.format(slug=slug),
            REDIS_SEQUENCE_KEY.format(slug=slug),
        )

    def append(self, room_key: RoomKey, draft: MessageDraft) -> Message:
        content = (draft.content or "").strip()
        if not content:
            raise ValidationError("Message content must not be empty")

        messages_key, timeline_key, expiry_key, sequence_key = self._keys(room_key)
        ttl_seconds = int(MESSAGE_TTL.total_seconds())
        self._purge_expired(room_key)

        def write(pipe):
            state = pipe.hgetall(sequence_key)
            sequence = int(state.get("sequence", 0)) + 1
            created_at = self.clock()
            last_created_at = state.get("created_at")
            if last_created_at:
                # createdAt never goes backwards along the sequence
                created_at = max(created_at, datetime.fromisoformat(last_created_at))

            message = Message(
                id=format_message_id(sequence),
                room_key=str(room_key),
                sender_id=draft.sender_id,
                sender_name=draft.sender_name,
                sender_role=draft.sender_role,
                content=content,
                created_at=created_at,
                expires_at=created_at + MESSAGE_TTL,
                reply_to=draft.reply_to,
            )

            pipe.multi()
            pipe.hset(sequence_key, mapping={"sequence": sequence, "created_at": created_at.isoformat()})
            pipe.hset(messages_key, message.id, message.model_dump_json())
            pipe.zadd(timeline_key, {message.id: sequence})
            pipe.zadd(expiry_key, {message.id: epoch_micros(message.expires_at)})
            for key in (messages_key, timeline_key, expiry_key):
                pipe.expire(key, ttl_seconds)
            return message

        message = self.redis_client.transaction(write, sequence_key, value_from_callable=True)
        logger.debug(f"Stored message {message.id} in room {room_key}, expires_at={message.expires_at.isoformat()}")
        return message

    def list_valid(self, room_key: RoomKey, as_of: Optional[datetime] = None, after_sequence: int = 0) -> list[Message]:
        """Messages of the room still valid at `as_of`, in creation order.

        `after_sequence` skips everything assigned at or before that sequence.
        Only records that expired before both `as_of` and now are purged here;
        a query for a past `as_of` still sees records a present-time append
        has not purged yet.
        """
        messages_key, timeline_key, _, _ = self._keys(room_key)
        now = self.clock()
        as_of = as_of or now
        self._purge_expired(room_key, min(as_of, now))

        ids = self.redis_client.zrangebyscore(timeline_key, f"({after_sequence}", "+inf")
        if not ids:
            return []

        messages = []
        for raw in self.redis_client.hmget(messages_key, ids):
            if raw is None:
                # purged between the two reads
                continue
            message = Message.model_validate_json(raw)
            if message.is_valid(as_of):
                messages.append(message)
        logger.debug(f"Room {room_key} has {len(messages)} valid messages after sequence {after_sequence}")
        return messages

    def get(self, room_key: RoomKey, message_id: str, as_of: Optional[datetime] = None) -> Optional[Message]:
        messages_key, _, _, _ = self._keys(room_key)
        raw = self.redis_client.hget(messages_key, message_id)
        if raw is None:
            return None
        message = Message.model_validate_json(raw)
        if not message.is_valid(as_of or self.clock()):
            return None
        return message

    def last_sequence(self, room_key: RoomKey) -> int:
        _, _, _, sequence_key = self._keys(room_key)
        return int(self.redis_client.hget(sequence_key, "sequence") or 0)

    def _purge_expired(self, room_key: RoomKey, cutoff: Optional[datetime] = None) -> int:
        messages_key, timeline_key, expiry_key, _ = self._keys(room_key)
        expired = self.redis_client.zrangebyscore(expiry_key, "-inf", epoch_micros(cutoff or self.clock()))
        if not expired:
            return 0
        pipe = self.redis_client.pipeline()
        pipe.hdel(messages_key, *expired)
        pipe.zrem(timeline_key, *expired)
        pipe.zrem(expiry_key, *expired)
        pipe.execute()
        logger.info(f"Purged {len(expired)} expired messages from room {room_key}")
        return len(expired)
