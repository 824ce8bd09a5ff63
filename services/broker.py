import asyncio
import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

import redis
from pydantic import TypeAdapter

from constants import BROKER_LISTENER_THREADS, BROKER_POLL_TIMEOUT, SUBSCRIPTION_QUEUE_SIZE
from logging_config import get_logger
from redis_keys import REDIS_ROOM_CHANNEL
from schemas.rooms import Message, MessageAdded, PresenceChanged, PresenceEntry, RoomEvent, RoomKey
from services.message_store import MessageStore
from services.presence import PresenceRegister

logger = get_logger(__name__)

room_event_adapter = TypeAdapter(RoomEvent)

_CLOSED = object()


class Subscription:
    """One consumer's view of a room: a snapshot plus a stream of events.

    Events are pulled with `receive()` (or `async for`). The stream ends
    once the subscription is closed, either by `Broker.unsubscribe` or
    because the consumer fell too far behind.
    """

    def __init__(self, room_key: RoomKey, max_queue: int = SUBSCRIPTION_QUEUE_SIZE):
        self.id = uuid.uuid4().hex
        self.room_key = room_key
        self.snapshot: list[Message] = []
        # sequence of the last message this subscriber has seen
        self.cursor = 0
        # set once snapshot and cursor are in place, dispatch skips it until then
        self.live = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)

    def deliver(self, event) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        if isinstance(event, MessageAdded):
            self.cursor = max(self.cursor, event.message.sequence)
        return True

    async def receive(self):
        """Next event, or None once the subscription is closed."""
        if self.closed:
            return None
        event = await self._queue.get()
        if event is _CLOSED or self.closed:
            return None
        return event

    def close(self):
        if self.closed:
            return
        self.closed = True
        # wake up a pending receive(); a full queue means nobody is waiting
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self.receive()
        if event is None:
            raise StopAsyncIteration
        return event


class Broker:
    """Fans room events out to local subscriptions through Redis pub/sub.

    Publishing goes to the room's Redis channel so every app instance sees
    it. Each instance runs one listener task per room that has local
    subscribers and hands events to their queues.

    Message order: each subscription keeps a cursor on the message sequence.
    A message that does not directly follow the cursor triggers a catch-up
    read from the store, so all subscribers see the store's order with no
    gaps and no duplicates of their snapshot.
    """

    def __init__(self, redis_client: redis.Redis, pubsub_client: redis.Redis, store: MessageStore,
                 presence: PresenceRegister, poll_timeout: float = BROKER_POLL_TIMEOUT,
                 max_queue: int = SUBSCRIPTION_QUEUE_SIZE, listener_threads: int = BROKER_LISTENER_THREADS):
        self.redis_client = redis_client
        self.pubsub_client = pubsub_client
        self.store = store
        self.presence = presence
        self.poll_timeout = poll_timeout
        self.max_queue = max_queue
        # Format: {room_key: {subscription_id: subscription}}
        self.subscriptions: Dict[str, Dict[str, Subscription]] = {}
        # Format: {room_key: task}
        self.listeners: Dict[str, asyncio.Task] = {}
        # Format: {room_key: future resolved once the room channel is live}
        self.listener_ready: Dict[str, asyncio.Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=listener_threads, thread_name_prefix="room-listener")
        self._closing = False

    def get_room_channel_name(self, room_key: RoomKey) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=str(room_key))

    async def subscribe(self, room_key: RoomKey) -> Subscription:
        """Register a subscription and fill in its snapshot of valid messages."""
        slug = str(room_key)
        subscription = Subscription(room_key, max_queue=self.max_queue)
        self.subscriptions.setdefault(slug, {})[subscription.id] = subscription

        try:
            # The channel must be live before the snapshot is read, otherwise
            # a message stored in between would never be announced.
            await self._ensure_listener(room_key)
            # Read before the snapshot: anything assigned in between is in the snapshot.
            last_sequence = self.store.last_sequence(room_key)
            subscription.snapshot = self.store.list_valid(room_key)
        except BaseException:
            self._discard(subscription)
            raise

        subscription.cursor = last_sequence
        if subscription.snapshot:
            subscription.cursor = max(last_sequence, subscription.snapshot[-1].sequence)
        subscription.live = True
        logger.info(f"Subscription {subscription.id} added to room {slug} with {len(subscription.snapshot)} messages (local subscribers: {len(self.subscriptions[slug])})")
        return subscription

    async def unsubscribe(self, subscription: Subscription):
        if self._discard(subscription):
            logger.info(f"Subscription {subscription.id} removed from room {subscription.room_key}")

    def _discard(self, subscription: Subscription) -> bool:
        subscription.close()
        slug = str(subscription.room_key)
        room_subscriptions = self.subscriptions.get(slug)
        if not room_subscriptions or subscription.id not in room_subscriptions:
            return False
        del room_subscriptions[subscription.id]
        if not room_subscriptions:
            del self.subscriptions[slug]
        return True

    def publish_message(self, room_key: RoomKey, message: Message):
        """Publish a stored message to the room's Redis pub/sub channel."""
        self._publish(room_key, MessageAdded(message=message))

    def publish_presence(self, room_key: RoomKey, snapshot: list[PresenceEntry]):
        self._publish(room_key, PresenceChanged(participants=snapshot))

    def _publish(self, room_key: RoomKey, event):
        channel = self.get_room_channel_name(room_key)
        subscribers = self.redis_client.publish(channel, event.model_dump_json())
        logger.debug(f"Published {event.type} to room {room_key} channel {channel}, {subscribers} subscribers")

    async def _ensure_listener(self, room_key: RoomKey):
        """Start the room's listener if needed and wait until its channel is live."""
        slug = str(room_key)
        task = self.listeners.get(slug)
        if task is None or task.done():
            ready = asyncio.get_running_loop().create_future()
            self.listener_ready[slug] = ready
            self.listeners[slug] = asyncio.create_task(self._listen(room_key, ready))
        # one future per room, shared by every subscriber waiting on it
        await asyncio.shield(self.listener_ready[slug])

    async def _listen(self, room_key: RoomKey, ready: asyncio.Future):
        """Background task to read the room channel and dispatch to local subscriptions."""
        slug = str(room_key)
        loop = asyncio.get_running_loop()
        pubsub = None

        def open_channel():
            """Blocking subscribe that returns once Redis confirmed the channel."""
            channel_pubsub = self.pubsub_client.pubsub()
            try:
                channel_pubsub.subscribe(self.get_room_channel_name(room_key))
                channel_pubsub.get_message(timeout=self.poll_timeout)
            except Exception:
                channel_pubsub.close()
                raise
            return channel_pubsub

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=self.poll_timeout, ignore_subscribe_messages=True)
            except Exception as e:
                logger.error(f"Error in pubsub.get_message() for room {slug}: {e}", exc_info=True)
                return None

        try:
            try:
                pubsub = await loop.run_in_executor(self._executor, open_channel)
            except Exception as e:
                logger.error(f"Failed to subscribe to Redis channel for room {slug}: {e}", exc_info=True)
                ready.set_exception(e)
                return
            ready.set_result(None)
            logger.debug(f"Started Redis pub/sub listener for room: {slug}")

            while not self._closing:
                if not self.subscriptions.get(slug):
                    logger.info(f"No more subscriptions in room {slug}, stopping listener")
                    break

                message = await loop.run_in_executor(self._executor, get_message)
                if message is None or message.get("type") != "message":
                    continue

                try:
                    event = room_event_adapter.validate_json(message["data"])
                except ValueError as e:
                    logger.error(f"Error parsing event from Redis for room {slug}: {e}")
                    continue

                try:
                    if isinstance(event, MessageAdded):
                        self._dispatch_message(room_key, event.message)
                    else:
                        self._dispatch_presence(room_key)
                except Exception as e:
                    logger.error(f"Error dispatching {event.type} for room {slug}: {e}", exc_info=True)
        finally:
            if not ready.done():
                ready.cancel()
            if pubsub is not None:
                try:
                    pubsub.close()
                    logger.debug(f"Closed pub/sub connection for room: {slug}")
                except Exception as e:
                    logger.error(f"Error closing pub/sub for room {slug}: {e}")
            if self.listeners.get(slug) is asyncio.current_task():
                del self.listeners[slug]
            if self.listener_ready.get(slug) is ready:
                del self.listener_ready[slug]

    def _dispatch_message(self, room_key: RoomKey, message: Message):
        backlog: Dict[int, list[Message]] = {}
        for subscription in list(self.subscriptions.get(str(room_key), {}).values()):
            if not subscription.live or message.sequence <= subscription.cursor:
                continue
            if message.sequence == subscription.cursor + 1:
                pending = [message]
            else:
                if subscription.cursor not in backlog:
                    backlog[subscription.cursor] = self.store.list_valid(room_key, after_sequence=subscription.cursor)
                    logger.debug(f"Room {room_key} catch-up from sequence {subscription.cursor}: {len(backlog[subscription.cursor])} messages")
                pending = [m for m in backlog[subscription.cursor] if m.sequence <= message.sequence]
            for item in pending:
                if not self._deliver(subscription, MessageAdded(message=item)):
                    break
            subscription.cursor = max(subscription.cursor, message.sequence)

    def _dispatch_presence(self, room_key: RoomKey):
        subscriptions = [s for s in self.subscriptions.get(str(room_key), {}).values() if s.live]
        if not subscriptions:
            return
        # re-read so a late notification never carries an older snapshot
        event = PresenceChanged(participants=self.presence.list(room_key))
        for subscription in subscriptions:
            self._deliver(subscription, event)

    def _deliver(self, subscription: Subscription, event) -> bool:
        if subscription.deliver(event):
            return True
        if not subscription.closed:
            logger.warning(f"Subscription {subscription.id} in room {subscription.room_key} is too slow, dropping it")
            self._discard(subscription)
        return False

    async def close(self):
        """Stop all listeners and end every subscription stream."""
        self._closing = True
        for room_subscriptions in list(self.subscriptions.values()):
            for subscription in list(room_subscriptions.values()):
                self._discard(subscription)
        tasks = list(self.listeners.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=False)
        logger.info("Broker closed")
