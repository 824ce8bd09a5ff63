"""Shared fixtures for the test suite: a controllable clock and a fakeredis backed backend."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import fakeredis

from backend import RedisBackend
from schemas.rooms import Identity, MessageAdded, Role, RoomKey


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_redis_pair():
    server = fakeredis.FakeServer()
    return (fakeredis.FakeRedis(server=server, decode_responses=True),
            fakeredis.FakeRedis(server=server, decode_responses=True))


def make_backend(clock=None, **broker_options):
    redis_client, pubsub_client = make_redis_pair()
    broker_options.setdefault("poll_timeout", 0.05)
    return RedisBackend(redis_client, pubsub_client, clock=clock, **broker_options)


FR_STUDY_GENERAL = RoomKey(topic_id="FR", category="study", channel="general")
FR_STUDY_VISA = RoomKey(topic_id="FR", category="study", channel="visa")
DE_TRAVEL_GENERAL = RoomKey(topic_id="DE", category="travel", channel="general")


def guest(participant_id="guest-alex", name="Alex"):
    return Identity(participant_id=participant_id, display_name=name, role=Role.GUEST)


def member(participant_id="user-mina", name="Mina", role=Role.RESIDENT):
    return Identity(participant_id=participant_id, display_name=name, role=role)


async def next_event(subscription, timeout=2.0):
    return await asyncio.wait_for(subscription.receive(), timeout)


async def next_message(subscription, timeout=2.0):
    """Next MessageAdded event, skipping presence updates."""
    while True:
        event = await next_event(subscription, timeout)
        if event is None or isinstance(event, MessageAdded):
            return event
