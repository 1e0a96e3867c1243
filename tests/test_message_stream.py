"""
Tests for the message stream of a room.

These tests verify:
1. The window stays ordered, unique and bounded whatever the delivery order
2. Unread accounting and the badge ceiling
3. History pagination, including concurrent and stale loads
4. Sending with a single retry
5. The received-message sound only plays for fresh messages
"""

import asyncio
import random
from unittest.mock import patch

import pytest

from conftest import BASE_TIME, message_value, write_message
from roomsync.core.exceptions import BackendError
from roomsync.models.models import RoomType
from roomsync.services.backend import Snapshot
from roomsync.services.notifications import Notification


def deliver(room, mid, sender, time, text="hi"):
    room.stream._on_message_added(Snapshot(mid, message_value(sender, text, time)))


def times(room):
    return [m.time for m in room.messages]


def assert_linked(messages):
    for previous, current in zip(messages, messages[1:]):
        assert previous.next is current
        assert current.previous is previous
    if messages:
        assert messages[0].previous is None
        assert messages[-1].next is None


class TestMessageWindow:

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_is_sorted_and_trimmed(self, seed_room):
        """120 shuffled messages should leave the newest 100 in order."""
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        stamps = list(range(1, 121))
        random.Random(7).shuffle(stamps)

        for t in stamps:
            deliver(room, f"m{t:03d}", "alice", t)

        assert times(room) == list(range(21, 121))
        assert len({m.mid for m in room.messages}) == 100
        assert_linked(room.messages)

    @pytest.mark.asyncio
    async def test_replayed_messages_are_deduplicated(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        for t in (1, 2, 3):
            deliver(room, f"m{t}", "alice", t)
        deliver(room, "m2", "alice", 2)
        deliver(room, "m3", "alice", 3)

        assert [m.mid for m in room.messages] == ["m1", "m2", "m3"]
        assert_linked(room.messages)

    @pytest.mark.asyncio
    async def test_tied_timestamps_keep_duplicates_adjacent(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        for mid in ("b", "a", "c", "a", "b"):
            deliver(room, mid, "alice", 5)

        assert [m.mid for m in room.messages] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_blocked_sender_is_dropped(self, seed_room, session):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice", "spam": "Spam"})
        session.users.block("spam")

        deliver(room, "m1", "spam", 1)
        deliver(room, "m2", "alice", 2)

        assert [m.mid for m in room.messages] == ["m2"]

    @pytest.mark.asyncio
    async def test_malformed_message_is_dropped(self, seed_room):
        room = await seed_room()

        room.stream._on_message_added(Snapshot("bad", {"type": 0, "time": 1}))

        assert room.messages == []

    @pytest.mark.asyncio
    async def test_live_messages_arrive_through_subscription(self, seed_room, backend):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()

        await write_message(backend, "r1", "m1", "alice", "hello", BASE_TIME)

        assert [m.text() for m in room.messages] == ["hello"]

    @pytest.mark.asyncio
    async def test_removed_message_leaves_window_and_unread(self, seed_room, backend, recorder):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()
        for i in range(3):
            await write_message(backend, "r1", f"m{i}", "alice", "x", BASE_TIME + i)
        assert room.badge == 3

        await backend.delete("rooms/r1/messages/m1")

        assert [m.mid for m in room.messages] == ["m0", "m2"]
        assert room.badge == 2
        assert_linked(room.messages)

    @pytest.mark.asyncio
    async def test_initial_fetch_is_limited(self, seed_room, backend, test_settings):
        test_settings.MAX_HISTORIC_MESSAGES = 5
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        for i in range(8):
            await write_message(backend, "r1", f"m{i}", "alice", "x", BASE_TIME + i)

        await room.on()

        assert times(room) == [BASE_TIME + i for i in range(3, 8)]


class TestWatermark:

    @pytest.mark.asyncio
    async def test_watermark_without_messages(self, seed_room):
        room = await seed_room()

        assert room.stream.watermark() is None
        assert room.stream.watermark(50) == 51

    @pytest.mark.asyncio
    async def test_watermark_resumes_after_newest_message(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        deliver(room, "m1", "alice", 100)

        assert room.stream.watermark() == 101
        assert room.stream.watermark(50) == 101
        assert room.stream.watermark(200) == 201

    @pytest.mark.asyncio
    async def test_resubscribing_does_not_redeliver(self, seed_room, backend):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()
        await write_message(backend, "r1", "m1", "alice", "x", BASE_TIME)

        room.stream.messages_off()
        await room.stream.messages_on()
        await write_message(backend, "r1", "m2", "alice", "y", BASE_TIME + 1)

        assert [m.mid for m in room.messages] == ["m1", "m2"]


class TestUnreadBadge:

    @pytest.mark.asyncio
    async def test_background_room_counts_unread(self, seed_room, recorder):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        deliver(room, "m1", "alice", 1)
        deliver(room, "m2", "alice", 2)

        assert room.badge == 2
        assert [p["badge"] for p in recorder.of(Notification.ROOM_BADGE_CHANGED)] == [1, 2]

    @pytest.mark.asyncio
    async def test_foreground_room_marks_messages_read(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()
        await room.open()

        deliver(room, "m1", "alice", 1)

        assert room.badge == 0
        assert room.messages[0].read

    @pytest.mark.asyncio
    async def test_badge_is_capped(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        for t in range(1, 121):
            deliver(room, f"m{t:03d}", "alice", t)

        assert len(room.unread_messages) == 100
        assert room.badge == 99

    @pytest.mark.asyncio
    async def test_replayed_message_counts_once(self, seed_room, recorder):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        deliver(room, "m1", "alice", 1)
        deliver(room, "m1", "alice", 1)

        assert [m.mid for m in room.messages] == ["m1"]
        assert [m.mid for m in room.unread_messages] == ["m1"]
        assert room.badge == 1
        assert [p["badge"] for p in recorder.of(Notification.ROOM_BADGE_CHANGED)] == [1]

    @pytest.mark.asyncio
    async def test_evicted_messages_leave_unread(self, seed_room, test_settings):
        """Messages pushed out of the window no longer count as unread."""
        test_settings.MESSAGE_RETENTION_CAP = 10
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        for t in range(1, 16):
            deliver(room, f"m{t:03d}", "alice", t)

        window = {m.mid for m in room.messages}
        assert len(room.messages) == 10
        assert [m.mid for m in room.unread_messages] == [f"m{t:03d}" for t in range(6, 16)]
        assert all(m.mid in window for m in room.unread_messages)
        assert room.badge == 10

    @pytest.mark.asyncio
    async def test_messages_before_read_time_are_not_unread(self, seed_room, backend):
        await backend.write("users/me/rooms/r1", {"read": BASE_TIME + 1})
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        for i in range(4):
            await write_message(backend, "r1", f"m{i}", "alice", "x", BASE_TIME + i)

        await room.on()

        assert room.badge == 2
        assert [m.read for m in room.messages] == [True, True, False, False]

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, seed_room, backend, recorder):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()
        await write_message(backend, "r1", "m1", "alice", "x", BASE_TIME)

        await room.mark_read()
        await room.mark_read()

        assert room.badge == 0
        assert room.stream.read_timestamp == BASE_TIME
        assert [p["badge"] for p in recorder.of(Notification.ROOM_BADGE_CHANGED)] == [1, 0]
        assert (await backend.reference("users/me/rooms/r1/read").get()).exists()

    @pytest.mark.asyncio
    async def test_public_room_read_time_is_not_persisted(self, seed_room, backend):
        room = await seed_room("r1", RoomType.PUBLIC, include_me=False)
        await room.on()

        await room.mark_read()

        assert not (await backend.reference("users/me/rooms/r1").get()).exists()


class TestPagination:

    async def _room_with_history(self, seed_room, backend, test_settings, total=30, window=10):
        test_settings.MAX_HISTORIC_MESSAGES = window
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        for i in range(1, total + 1):
            await write_message(backend, "r1", f"m{i:03d}", "alice", "x", BASE_TIME + i)
        await room.on()
        return room

    @pytest.mark.asyncio
    async def test_load_more_prepends_older_messages(self, seed_room, backend, test_settings, recorder):
        room = await self._room_with_history(seed_room, backend, test_settings)

        loaded = await room.load_more_messages(5)

        assert [m.time for m in loaded] == [BASE_TIME + i for i in range(16, 21)]
        assert times(room) == [BASE_TIME + i for i in range(16, 31)]
        assert_linked(room.messages)
        assert recorder.of(Notification.LAZY_LOADED_MESSAGES)[-1]["count"] == 5

    @pytest.mark.asyncio
    async def test_concurrent_load_more_runs_once(self, seed_room, backend, test_settings):
        """A second request while one is in flight should return nothing."""
        room = await self._room_with_history(seed_room, backend, test_settings)

        first, second = await asyncio.gather(room.load_more_messages(5), room.load_more_messages(5))

        assert len(first) == 5
        assert second == []
        assert len(room.messages) == 15
        assert not room.stream.loading_more_messages

    @pytest.mark.asyncio
    async def test_load_more_is_clamped_to_capacity(self, seed_room, backend, test_settings):
        test_settings.MESSAGE_RETENTION_CAP = 12
        room = await self._room_with_history(seed_room, backend, test_settings)

        loaded = await room.load_more_messages(10)

        assert len(loaded) == 2
        assert len(room.messages) == 12
        assert await room.load_more_messages(10) == []

    @pytest.mark.asyncio
    async def test_failed_load_returns_empty(self, seed_room, backend, test_settings):
        room = await self._room_with_history(seed_room, backend, test_settings)

        with patch.object(backend, "read", side_effect=BackendError("timeout")):
            loaded = await room.load_more_messages(5)

        assert loaded == []
        assert len(room.messages) == 10
        assert not room.stream.loading_more_messages

    @pytest.mark.asyncio
    async def test_stale_load_is_discarded(self, seed_room, backend, test_settings):
        """Results arriving after the subscription was torn down are dropped."""
        room = await self._room_with_history(seed_room, backend, test_settings)
        original = backend.read

        async def read_then_close(path, spec):
            result = await original(path, spec)
            room.stream.messages_off()
            return result

        with patch.object(backend, "read", side_effect=read_then_close):
            loaded = await room.load_more_messages(5)

        assert loaded == []
        assert len(room.messages) == 10


class TestSending:

    @pytest.mark.asyncio
    async def test_send_appends_and_bumps_state(self, seed_room, backend, session):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        await room.on()

        mid = await room.send_text_message(session.user, "hello")

        stored = (await backend.reference(f"rooms/r1/messages/{mid}").get()).value
        assert stored["from"] == "me"
        assert stored["meta"]["text"] == "hello"
        assert stored["time"] == BASE_TIME
        assert sorted(stored["to"]) == ["alice", "me"]
        assert (await backend.reference("rooms/r1/state/messages").get()).value == BASE_TIME
        assert room.stream.get_message(mid) is not None

    @pytest.mark.asyncio
    async def test_empty_text_is_not_sent(self, seed_room, session):
        room = await seed_room()

        assert await room.send_text_message(session.user, "") is None

    @pytest.mark.asyncio
    async def test_send_retries_once_after_refresh(self, seed_room, backend, session):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        original = backend.write
        calls = []

        async def flaky(path, value):
            if "/messages/" in path:
                calls.append(path)
                if len(calls) == 1:
                    raise BackendError("connection dropped")
            await original(path, value)

        with patch.object(backend, "write", side_effect=flaky):
            mid = await room.send_text_message(session.user, "hello")

        assert len(calls) == 2
        assert mid is not None
        assert (await backend.reference("users/me/online").get()).value is True

    @pytest.mark.asyncio
    async def test_second_failure_raises(self, seed_room, backend, session):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        original = backend.write
        calls = []

        async def broken(path, value):
            if "/messages/" in path:
                calls.append(path)
                raise BackendError("backend down")
            await original(path, value)

        with patch.object(backend, "write", side_effect=broken):
            with pytest.raises(BackendError):
                await room.send_text_message(session.user, "hello")

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_after_state_failure_keeps_one_message(self, seed_room, backend, session):
        """A retry rewrites the same entry instead of appending a copy."""
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        original = room.update_state
        calls = []

        async def flaky_state(key):
            calls.append(key)
            if len(calls) == 1:
                raise BackendError("connection dropped")
            await original(key)

        with patch.object(room, "update_state", side_effect=flaky_state):
            mid = await room.send_text_message(session.user, "hello")

        stored = (await backend.reference("rooms/r1/messages").get()).value
        assert len(calls) == 2
        assert list(stored) == [mid]
        assert stored[mid]["meta"]["text"] == "hello"

    @pytest.mark.asyncio
    async def test_image_and_file_payloads(self, seed_room, backend, session):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

        image = await room.send_image_message(session.user, "https://img/1.png", 640, 480)
        document = await room.send_file_message(session.user, "a.pdf", "application/pdf", "https://f/a.pdf")

        stored_image = (await backend.reference(f"rooms/r1/messages/{image}").get()).value
        stored_file = (await backend.reference(f"rooms/r1/messages/{document}").get()).value
        assert stored_image["type"] == 2
        assert stored_image["meta"]["image-width"] == 640
        assert stored_file["type"] == 7
        assert stored_file["meta"]["file-name"] == "a.pdf"


class TestReceivedSound:

    async def _synced_room(self, seed_room, session):
        await session.clock.start("me")
        return await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})

    @pytest.mark.asyncio
    async def test_fresh_message_plays_sound(self, seed_room, session, recorder):
        room = await self._synced_room(seed_room, session)

        deliver(room, "m1", "alice", BASE_TIME - 5_000)

        sounds = recorder.of(Notification.PLAY_RECEIVED_SOUND)
        assert len(sounds) == 1
        assert sounds[0]["message"].mid == "m1"

    @pytest.mark.asyncio
    async def test_old_message_is_silent(self, seed_room, session, recorder):
        room = await self._synced_room(seed_room, session)

        deliver(room, "m1", "alice", BASE_TIME - 60_000)

        assert recorder.of(Notification.PLAY_RECEIVED_SOUND) == []

    @pytest.mark.asyncio
    async def test_own_and_muted_messages_are_silent(self, seed_room, session, recorder):
        room = await self._synced_room(seed_room, session)

        deliver(room, "m1", "me", BASE_TIME)
        room.muted = True
        deliver(room, "m2", "alice", BASE_TIME)

        assert recorder.of(Notification.PLAY_RECEIVED_SOUND) == []

    @pytest.mark.asyncio
    async def test_foreground_room_plays_only_when_hidden(self, seed_room, session, recorder):
        room = await self._synced_room(seed_room, session)
        await room.on()
        await room.open()

        deliver(room, "m1", "alice", BASE_TIME)
        session.visible = False
        deliver(room, "m2", "alice", BASE_TIME + 1)

        assert [p["message"].mid for p in recorder.of(Notification.PLAY_RECEIVED_SOUND)] == ["m2"]


class TestFlagging:

    @pytest.mark.asyncio
    async def test_toggle_flag_writes_and_removes_log_entry(self, seed_room, backend, recorder):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        deliver(room, "m1", "alice", BASE_TIME, text="look at this")
        message = room.stream.get_message("m1")

        await room.stream.toggle_message_flag(message)

        entry = (await backend.reference("flagged/m1").get()).value
        assert message.flagged
        assert entry == {
            "creator": "me",
            "from": "alice",
            "message": "look at this",
            "thread": "r1",
            "date": BASE_TIME,
        }

        await room.stream.toggle_message_flag(message)

        assert not message.flagged
        assert not (await backend.reference("flagged/m1").get()).exists()
        assert len(recorder.of(Notification.CHAT_UPDATED)) == 2


class TestAccessors:

    @pytest.mark.asyncio
    async def test_newer_and_older_than(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        for t in (10, 20, 30):
            deliver(room, f"m{t}", "alice", t)

        assert [m.time for m in room.stream.messages_newer_than(15)] == [20, 30]
        assert [m.time for m in room.stream.messages_older_than(30)] == [10, 20]
        assert room.stream.last_message_time() == 30

    @pytest.mark.asyncio
    async def test_consecutive_messages_from_same_sender(self, seed_room):
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
        deliver(room, "m1", "alice", 1)
        deliver(room, "m2", "alice", 2)
        deliver(room, "m3", "me", 3)

        assert [m.follows_same_sender for m in room.messages] == [False, True, False]
