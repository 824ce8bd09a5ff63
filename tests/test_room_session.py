"""
Tests for room sessions: lifecycle, guest quota, replies and channel switching.
"""

import asyncio
import unittest

from support import (DE_TRAVEL_GENERAL, FR_STUDY_GENERAL, FR_STUDY_VISA, FakeClock, guest, make_backend, member,
                     next_event, next_message)

from errors import QuotaExceeded, SessionClosed, ValidationError
from schemas.rooms import Channel, Identity, MessageAdded, PresenceChanged, Role
from services.room_session import SessionState


class TestRoomSession(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.backend = make_backend(clock=self.clock)

    async def asyncTearDown(self):
        await self.backend.close()

    def online(self, room_key):
        return sorted(entry.display_name for entry in self.backend.presence.list(room_key))

    async def test_open_registers_presence_and_returns_snapshot(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member())

        self.assertIs(session.state, SessionState.ACTIVE)
        snapshot = session.snapshot()
        self.assertEqual(snapshot.room_key, "FR/study/general")
        self.assertEqual(snapshot.messages, [])
        self.assertEqual([entry.display_name for entry in snapshot.participants], ["Mina"])

        event = await next_event(session.subscription)
        self.assertIsInstance(event, PresenceChanged)
        self.assertEqual([entry.participant_id for entry in event.participants], ["user-mina"])
        await session.leave()

    async def test_sender_receives_own_message_through_stream(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member())

        message = await session.send("Anyone applied to Sorbonne?")
        event = await next_message(session.subscription)

        self.assertEqual(event.message.id, message.id)
        self.assertEqual(event.message.sender_role, Role.RESIDENT)
        await session.leave()

    async def test_events_iterator_yields_typed_events(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member())
        await session.send("hi")

        received = []
        async for event in session.events():
            received.append(event)
            if isinstance(event, MessageAdded):
                break

        self.assertIsInstance(received[0], PresenceChanged)
        self.assertEqual(received[-1].message.content, "hi")
        await session.leave()

    async def test_guest_is_limited_to_five_messages(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, guest())

        for i in range(5):
            await session.send(f"message {i}")
            self.assertEqual(self.backend.quota.count("guest-alex"), i + 1)

        with self.assertRaises(QuotaExceeded) as ctx:
            await session.send("one too many")
        self.assertEqual((ctx.exception.count, ctx.exception.limit), (5, 5))
        self.assertEqual(len(self.backend.store.list_valid(FR_STUDY_GENERAL)), 5)
        self.assertIs(session.state, SessionState.ACTIVE)
        self.assertEqual(session.quota_status().remaining, 0)
        await session.leave()

    async def test_guest_quota_spans_all_rooms(self):
        general = await self.backend.open_session(FR_STUDY_GENERAL, guest())
        for i in range(3):
            await general.send(f"general {i}")
        visa = await general.switch_channel(Channel.VISA)
        for i in range(2):
            await visa.send(f"visa {i}")
        await visa.leave()

        elsewhere = await self.backend.open_session(DE_TRAVEL_GENERAL, guest())
        with self.assertRaises(QuotaExceeded):
            await elsewhere.send("hallo")
        await elsewhere.leave()

    async def test_members_are_not_limited(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member(role=Role.CONSULTANT))
        for i in range(8):
            await session.send(f"advice {i}")
        self.assertIsNone(session.quota_status())
        self.assertEqual(self.backend.quota.count("user-mina"), 0)
        await session.leave()

    async def test_blank_message_is_rejected_without_using_quota(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, guest())

        with self.assertRaises(ValidationError):
            await session.send("   ")

        self.assertEqual(self.backend.quota.count("guest-alex"), 0)
        self.assertEqual(self.backend.store.list_valid(FR_STUDY_GENERAL), [])
        await session.leave()

    async def test_non_text_content_or_reply_target_is_rejected(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, guest())
        target = await session.send("first")

        for content, reply_to in ((123, None), (["hi"], None), ({"text": "hi"}, None), ("re", {"id": target.id}),
                                  ("re", 1)):
            with self.assertRaises(ValidationError):
                await session.send(content, reply_to=reply_to)

        self.assertEqual(self.backend.quota.count("guest-alex"), 1)
        self.assertEqual(len(self.backend.store.list_valid(FR_STUDY_GENERAL)), 1)
        self.assertIs(session.state, SessionState.ACTIVE)
        await session.leave()

    async def test_reply_to_unknown_or_expired_message_is_rejected(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member())
        old = await session.send("old news")
        self.clock.advance(hours=48)

        with self.assertRaises(ValidationError):
            await session.send("re", reply_to="999999999999")
        with self.assertRaises(ValidationError):
            await session.send("re", reply_to=old.id)
        await session.leave()

    async def test_closed_session_rejects_operations(self):
        session = await self.backend.open_session(FR_STUDY_GENERAL, member())
        await session.leave()
        await session.leave()

        self.assertIs(session.state, SessionState.CLOSED)
        with self.assertRaises(SessionClosed):
            await session.send("hello?")
        with self.assertRaises(SessionClosed):
            await session.switch_channel(Channel.VISA)
        with self.assertRaises(SessionClosed):
            session.snapshot()
        with self.assertRaises(SessionClosed):
            async for _ in session.events():
                pass

    async def test_abnormal_exit_still_removes_presence(self):
        with self.assertRaises(ConnectionResetError):
            async with self.backend.create_session(FR_STUDY_GENERAL, member()) as session:
                self.assertEqual(self.online(FR_STUDY_GENERAL), ["Mina"])
                raise ConnectionResetError("client vanished")

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.online(FR_STUDY_GENERAL), [])
        self.assertTrue(session.subscription.closed)

    async def test_leave_notifies_remaining_participants(self):
        watcher = await self.backend.open_session(FR_STUDY_GENERAL, member())
        await next_event(watcher.subscription)
        visitor = await self.backend.open_session(FR_STUDY_GENERAL, guest())

        joined = await next_event(watcher.subscription)
        self.assertEqual(sorted(e.display_name for e in joined.participants), ["Alex", "Mina"])

        await visitor.leave()
        left = await next_event(watcher.subscription)
        self.assertEqual([e.display_name for e in left.participants], ["Mina"])
        await watcher.leave()

    async def test_switch_channel_moves_presence_and_subscription(self):
        general = await self.backend.open_session(FR_STUDY_GENERAL, member())
        await general.send("general message")

        visa = await general.switch_channel(Channel.VISA)

        self.assertIs(general.state, SessionState.CLOSED)
        self.assertIs(visa.state, SessionState.ACTIVE)
        self.assertEqual(visa.room_key, FR_STUDY_VISA)
        self.assertEqual(visa.connection_id, general.connection_id)
        self.assertEqual(self.online(FR_STUDY_GENERAL), [])
        self.assertEqual(self.online(FR_STUDY_VISA), ["Mina"])
        self.assertEqual(visa.snapshot().messages, [])
        self.assertIs(await visa.switch_channel(Channel.VISA), visa)
        await visa.leave()

    async def test_heartbeat_reaps_participants_whose_lease_expired(self):
        ghost = Identity(participant_id="ghost", display_name="Ghost", role=Role.USER)
        self.backend.presence.join(FR_STUDY_GENERAL, ghost)
        session = await self.backend.open_session(FR_STUDY_GENERAL, member(), heartbeat_interval=0.05)
        await next_event(session.subscription)

        self.clock.advance(seconds=31)

        event = await next_event(session.subscription)
        self.assertIsInstance(event, PresenceChanged)
        self.assertEqual([entry.participant_id for entry in event.participants], ["user-mina"])
        self.assertEqual(self.online(FR_STUDY_GENERAL), ["Mina"])
        await session.leave()

    async def test_guest_and_resident_conversation(self):
        alex = await self.backend.open_session(FR_STUDY_GENERAL, guest())
        hello = await alex.send("Hello")
        self.assertEqual((await next_message(alex.subscription)).message.id, hello.id)

        mina = await self.backend.open_session(FR_STUDY_GENERAL, member())
        self.assertEqual([m.content for m in mina.snapshot().messages], ["Hello"])
        self.assertEqual([m.sender_name for m in mina.snapshot().messages], ["Alex"])

        reply = await mina.send("Welcome! Which city?", reply_to=hello.id)

        received = await next_message(alex.subscription)
        self.assertEqual(received.message.id, reply.id)
        self.assertEqual(received.message.reply_to.message_id, hello.id)
        self.assertEqual(received.message.reply_to.sender_name, "Alex")
        self.assertEqual(received.message.reply_to.content, "Hello")
        self.assertEqual(received.message.sender_name, "Mina")

        await asyncio.gather(alex.leave(), mina.leave())
        self.assertEqual(self.online(FR_STUDY_GENERAL), [])


if __name__ == "__main__":
    unittest.main()
