import asyncio
import uuid
from enum import Enum
from typing import AsyncIterator, Optional

from constants import PRESENCE_HEARTBEAT_SECONDS
from errors import QuotaExceeded, SessionClosed, ValidationError
from logging_config import get_logger
from schemas.rooms import (Channel, Identity, Message, MessageDraft, QuotaStatus, ReplyTo, RoomEvent, RoomKey,
                           RoomSnapshot)
from services.broker import Broker, Subscription
from services.guest_quota import GuestQuotaTracker
from services.message_store import MessageStore
from services.presence import PresenceRegister

logger = get_logger(__name__)


class SessionState(str, Enum):
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"
    CLOSED = "closed"


class RoomSession:
    """Binds one connected client to one room.

    `open()` registers presence and subscribes to the room; `leave()` undoes
    both exactly once. Use it as an async context manager so the release
    runs on every exit path, including a dropped connection:

        async with backend.create_session(room_key, identity) as session:
            async for event in session.events():
                ...
    """

    def __init__(self, store: MessageStore, presence: PresenceRegister, quota: GuestQuotaTracker, broker: Broker,
                 room_key: RoomKey, identity: Identity, connection_id: Optional[str] = None,
                 heartbeat_interval: float = PRESENCE_HEARTBEAT_SECONDS):
        self.store = store
        self.presence = presence
        self.quota = quota
        self.broker = broker
        self.room_key = room_key
        self.identity = identity
        self.connection_id = connection_id or str(uuid.uuid4())
        self.heartbeat_interval = heartbeat_interval
        self.state = SessionState.JOINING
        self.subscription: Optional[Subscription] = None
        self._snapshot: Optional[RoomSnapshot] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "RoomSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.leave()

    async def open(self) -> RoomSnapshot:
        if self.state is not SessionState.JOINING:
            raise SessionClosed(f"Session {self.connection_id} was already opened")
        participant_id = self.identity.participant_id
        logger.info(f"Opening session {self.connection_id} for {participant_id} in room {self.room_key}")

        try:
            self.presence.join(self.room_key, self.identity, connection_id=self.connection_id)
            self.subscription = await self.broker.subscribe(self.room_key)
            participants = self.presence.list(self.room_key)
            self.broker.publish_presence(self.room_key, participants)
        except Exception as e:
            logger.error(f"Failed to open session {self.connection_id} in room {self.room_key}: {e}", exc_info=True)
            await self._release()
            raise

        self._snapshot = RoomSnapshot(
            room_key=str(self.room_key),
            messages=self.subscription.snapshot,
            participants=participants,
        )
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        self.state = SessionState.ACTIVE
        return self._snapshot

    def snapshot(self) -> RoomSnapshot:
        """Valid messages and participants as of the moment the session opened."""
        if self.state is SessionState.CLOSED:
            raise SessionClosed(f"Session {self.connection_id} is closed")
        if self._snapshot is None:
            raise SessionClosed(f"Session {self.connection_id} has not been opened")
        return self._snapshot

    async def events(self) -> AsyncIterator[RoomEvent]:
        if self.state is not SessionState.ACTIVE or self.subscription is None:
            raise SessionClosed(f"Session {self.connection_id} is not active")
        async for event in self.subscription:
            yield event

    async def send(self, content: str, reply_to: Optional[str] = None) -> Message:
        if self.state is not SessionState.ACTIVE:
            raise SessionClosed(f"Session {self.connection_id} is not active")

        if content is not None and not isinstance(content, str):
            raise ValidationError("Message content must be text")
        if reply_to is not None and not isinstance(reply_to, str):
            raise ValidationError("Reply target must be a message id")
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content must not be empty")

        reply = None
        if reply_to:
            target = self.store.get(self.room_key, reply_to)
            if target is None:
                raise ValidationError(f"Message {reply_to} is not available in room {self.room_key}")
            reply = ReplyTo.from_message(target)

        draft = MessageDraft(
            sender_id=self.identity.participant_id,
            sender_name=self.identity.display_name,
            sender_role=self.identity.role,
            content=content,
            reply_to=reply,
        )

        reserved = False
        if self.identity.is_guest:
            decision = self.quota.check_and_reserve(self.identity.participant_id)
            if not decision.allowed:
                raise QuotaExceeded(decision.count, self.quota.limit)
            reserved = True

        try:
            message = self.store.append(self.room_key, draft)
        except Exception:
            if reserved:
                self.quota.release(self.identity.participant_id)
            raise

        self.broker.publish_message(self.room_key, message)
        logger.debug(f"Session {self.connection_id} sent message {message.id} to room {self.room_key}")
        return message

    def quota_status(self) -> Optional[QuotaStatus]:
        if not self.identity.is_guest:
            return None
        return self.quota.status(self.identity.participant_id)

    async def switch_channel(self, channel: Channel) -> "RoomSession":
        """Leave this room and open a session on another channel of the same topic and category."""
        if self.state is not SessionState.ACTIVE:
            raise SessionClosed(f"Session {self.connection_id} is not active")
        room_key = self.room_key.with_channel(Channel(channel))
        if room_key == self.room_key:
            return self

        await self.leave()
        session = RoomSession(self.store, self.presence, self.quota, self.broker, room_key, self.identity,
                              connection_id=self.connection_id, heartbeat_interval=self.heartbeat_interval)
        await session.open()
        logger.info(f"Session {self.connection_id} switched from {self.room_key} to {room_key}")
        return session

    async def leave(self):
        if self.state in (SessionState.LEAVING, SessionState.CLOSED):
            return
        self.state = SessionState.LEAVING
        await self._release()

    async def _release(self):
        participant_id = self.identity.participant_id

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        if self.subscription is not None:
            await self.broker.unsubscribe(self.subscription)

        try:
            if self.presence.leave(self.room_key, participant_id, connection_id=self.connection_id):
                self.broker.publish_presence(self.room_key, self.presence.list(self.room_key))
        except Exception as e:
            # the lease expires on its own, other sessions will reap the entry
            logger.error(f"Error removing presence of {participant_id} from room {self.room_key}: {e}", exc_info=True)

        self.state = SessionState.CLOSED
        logger.info(f"Session {self.connection_id} for {participant_id} left room {self.room_key}")

    async def _heartbeat(self):
        participant_id = self.identity.participant_id
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                changed = False
                if not self.presence.heartbeat(self.room_key, participant_id):
                    logger.info(f"Presence of {participant_id} in room {self.room_key} was lost, rejoining")
                    self.presence.join(self.room_key, self.identity, connection_id=self.connection_id)
                    changed = True
                if self.presence.reap(self.room_key):
                    changed = True
                if changed:
                    self.broker.publish_presence(self.room_key, self.presence.list(self.room_key))
            except Exception as e:
                logger.error(f"Heartbeat failed for {participant_id} in room {self.room_key}: {e}", exc_info=True)
