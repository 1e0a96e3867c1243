# roomsync/services/message_stream.py

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from pydantic import ValidationError

from roomsync.core.exceptions import BackendError
from roomsync.core.session import User
from roomsync.models.message import Message
from roomsync.models.models import MessagePayload
from roomsync.services.backend import CHILD_ADDED, CHILD_REMOVED, SERVER_TIMESTAMP, Snapshot
from roomsync.services.notifications import Notification
from roomsync.services.retry import retry_async

if TYPE_CHECKING:
    from roomsync.services.room import Room

logger = logging.getLogger(__name__)

TIME_FIELD = "time"


# ============================================================================
# MESSAGE STREAM SYNCHRONIZER
# ============================================================================

class MessageStreamSynchronizer:
    """
    Keeps a room's message window in step with the backend log.

    Only this object mutates ``messages``; every change funnels through its
    listener callbacks or its own coroutines.

    Invariants after every live append:
        - ``messages`` is sorted by (time, mid) with unique mids
        - ``len(messages) <= MESSAGE_RETENTION_CAP``
        - ``badge == min(len(unread_messages), BADGE_CEILING)``
        - every unread message is also in ``messages``, once

    Attributes:
        messages: the in-memory window, oldest first
        unread_messages: messages that arrived while the room was in the background
        badge: unread count shown to the user
        read_timestamp: last time the session user read this room
        messages_are_on: single-flight guard of the live subscription
        loading_more_messages: busy flag of pagination
        generation: bumped when the subscription is torn down, stale
                    pagination results are dropped
    """

    def __init__(self, room: "Room") -> None:
        self.room = room
        self.messages: List[Message] = []
        self.unread_messages: List[Message] = []
        self.badge = 0
        self.read_timestamp: Optional[int] = None
        self.messages_are_on = False
        self.loading_more_messages = False
        self.generation = 0

    @property
    def session(self):
        return self.room.session

    @property
    def settings(self):
        return self.room.session.settings

    def _ref(self):
        return self.room.paths.room_messages_ref(self.room.rid)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def watermark(self, timestamp: Optional[int] = None) -> Optional[int]:
        """
        First timestamp the live subscription should deliver.

        Resumes one millisecond after the newest known message so it is
        not delivered again; an explicit watermark (e.g. the time the room
        was deleted) is exclusive as well.
        """
        last = self.last_message_time()
        if timestamp is None:
            return last + 1 if last is not None else None
        if last is not None:
            timestamp = max(timestamp, last)
        return timestamp + 1

    async def messages_on(self, timestamp: Optional[int] = None) -> None:
        if self.messages_are_on or not self.room.rid:
            return
        self.messages_are_on = True

        query = self._ref().order_by_child(TIME_FIELD)
        start = self.watermark(timestamp)
        if start is not None:
            query = query.start_at(start)
        query = query.limit_to_last(self.settings.MAX_HISTORIC_MESSAGES)

        try:
            await query.on(CHILD_ADDED, self._on_message_added)
            # Removals are matched against the whole window, paginated
            # history included, so they are not range limited
            await self._ref().on(CHILD_REMOVED, self._on_message_removed)
        except Exception:
            self.messages_off()
            raise
        logger.info("Messages on for room %s (from %s)", self.room.rid, start)

    def messages_off(self) -> None:
        self.messages_are_on = False
        self.generation += 1
        if self.room.rid:
            self._ref().off()

    def _on_message_added(self, snapshot: Snapshot) -> None:
        try:
            message = Message.from_value(snapshot.key, snapshot.value, self.room.rid)
        except ValidationError as e:
            logger.warning("Dropping malformed message %s in room %s: %s", snapshot.key, self.room.rid, e)
            return

        if self.session.users.is_blocked(message.sender_id):
            return

        self.add_message_to_end(message)
        # Keep the window bounded and ordered whatever the delivery order
        self.trim_message_list()
        self._play_sound_if_fresh(message)

    def _on_message_removed(self, snapshot: Snapshot) -> None:
        if not snapshot.value:
            return
        for index, message in enumerate(self.messages):
            if message.mid == snapshot.key:
                del self.messages[index]
                break
        unread = [m for m in self.unread_messages if m.mid != snapshot.key]
        if len(unread) != len(self.unread_messages):
            self.unread_messages = unread
            self._set_badge()
        self._relink()
        self.room.update()

    def _play_sound_if_fresh(self, message: Message) -> None:
        if self.room.muted or self.session.is_me(message.sender_id):
            return
        if self.room.in_foreground() and self.session.visible:
            return
        # Backlog delivered during catch-up is older than the threshold
        if self.session.clock.seconds_since(message.time) < self.settings.SOUND_FRESHNESS_SECONDS:
            self.room.bus.publish(Notification.PLAY_RECEIVED_SOUND, room=self.room, message=message)

    # ------------------------------------------------------------------
    # Window maintenance
    # ------------------------------------------------------------------

    def add_message_to_end(self, message: Message, silent: bool = False) -> None:
        if self.messages:
            previous = self.messages[-1]
            previous.next = message
            message.previous = previous
        self.update_badge_for_message(message)
        self.messages.append(message)
        self.room.update(silent)

    def add_message_to_start(self, message: Message, silent: bool = True) -> None:
        if self.messages:
            following = self.messages[0]
            following.previous = message
            message.next = following
        self.messages.insert(0, message)
        self.room.update(silent)

    def trim_message_list(self) -> None:
        """Sort, drop duplicate ids, then evict the oldest beyond the retention cap."""
        # Sorting on the id too keeps replayed copies adjacent even when
        # several messages share a timestamp
        self.messages.sort(key=lambda m: (m.time, m.mid))

        unique: List[Message] = []
        last_mid = None
        for message in self.messages:
            if message.mid != last_mid:
                unique.append(message)
            last_mid = message.mid

        overflow = len(unique) - self.settings.MESSAGE_RETENTION_CAP
        if overflow > 0:
            unique = unique[overflow:]

        self.messages = unique
        self._relink()

        # Unread only counts messages still in the window
        kept = {m.mid for m in unique}
        unread = [m for m in self.unread_messages if m.mid in kept]
        if len(unread) != len(self.unread_messages):
            self.unread_messages = unread
            self._set_badge()

    def _relink(self) -> None:
        previous = None
        for message in self.messages:
            message.previous = previous
            message.next = None
            if previous is not None:
                previous.next = message
            previous = message

    def delete_messages(self) -> None:
        self.messages.clear()
        self.unread_messages.clear()
        self._set_badge()

    # ------------------------------------------------------------------
    # Unread accounting
    # ------------------------------------------------------------------

    def should_increment_unread_badge(self) -> bool:
        return not self.room.in_foreground()

    def update_badge_for_message(self, message: Message) -> None:
        # A replayed copy is dropped by trim_message_list, never count it twice
        if self.get_message(message.mid) is not None or any(m.mid == message.mid for m in self.unread_messages):
            return
        newer_than_read = not self.read_timestamp or message.time > self.read_timestamp
        if self.should_increment_unread_badge() and not message.read and newer_than_read:
            self.unread_messages.append(message)
            self._set_badge()
        else:
            message.mark_read()

    def _set_badge(self) -> None:
        badge = min(len(self.unread_messages), self.settings.BADGE_CEILING)
        if badge != self.badge:
            self.badge = badge
            self.room.bus.publish(Notification.ROOM_BADGE_CHANGED, room=self.room, badge=badge)

    async def mark_read(self) -> None:
        for message in self.unread_messages:
            message.mark_read()
        self.unread_messages.clear()
        self._set_badge()

        last = self.last_message_time()
        if last is not None and (self.read_timestamp is None or last > self.read_timestamp):
            self.read_timestamp = last

        if not self.room.is_public():
            try:
                await self.session.mark_room_read_time(self.room.rid)
            except BackendError as e:
                logger.warning("Could not persist read time for room %s: %s", self.room.rid, e)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def load_messages_older_than(self, timestamp: Optional[int], amount: int) -> List[Message]:
        query = self._ref().order_by_child(TIME_FIELD).limit_to_last(amount)
        if timestamp is not None:
            query = query.end_at(timestamp - 1)

        try:
            snapshot = await query.get()
        except BackendError as e:
            logger.error("Loading history for room %s failed: %s", self.room.rid, e)
            return []

        messages = []
        for child in snapshot.children():
            try:
                message = Message.from_value(child.key, child.value, self.room.rid)
            except ValidationError as e:
                logger.warning("Dropping malformed message %s: %s", child.key, e)
                continue
            if not self.session.users.is_blocked(message.sender_id):
                messages.append(message)
        messages.sort(key=lambda m: (m.time, m.mid))
        return messages

    async def load_more_messages(self, count: Optional[int] = None) -> List[Message]:
        """
        Prepend up to ``count`` messages older than the oldest one held.

        Returns an empty list when a load is already in flight, when the
        window is full, when the query fails, or when the subscription was
        torn down before the result arrived.
        """
        if self.loading_more_messages:
            return []

        count = count or self.settings.LOAD_MORE_MESSAGES
        count = min(count, self.settings.MESSAGE_RETENTION_CAP - len(self.messages))
        if count <= 0:
            logger.debug("Room %s window is full, not loading more history", self.room.rid)
            return []

        self.loading_more_messages = True
        generation = self.generation
        oldest = self.messages[0].time if self.messages else None
        try:
            messages = await self.load_messages_older_than(oldest, count)
        finally:
            self.loading_more_messages = False

        if generation != self.generation:
            logger.info("Discarding %d stale messages for room %s", len(messages), self.room.rid)
            return []

        for message in reversed(messages):
            self.add_message_to_start(message)

        self.room.bus.publish(Notification.LAZY_LOADED_MESSAGES, room=self.room, count=len(messages))
        return messages

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, payload: MessagePayload) -> str:
        """
        Append ``payload`` to the log and bump the room's "messages" pointer.

        Retried once after a session refresh; the second failure raises.

        Returns:
            The backend id of the new message
        """
        data = payload.to_wire()
        data[TIME_FIELD] = SERVER_TIMESTAMP

        # One id for every attempt, a retry rewrites the same entry
        ref = self._ref().push()

        async def send() -> str:
            await asyncio.gather(ref.set(data), self.room.update_state("messages"))
            return ref.key

        return await retry_async(send, refresh=self.session.refresh, name=f"send to {self.room.rid}")

    async def send_text_message(self, user: User, text: str) -> Optional[str]:
        if not text:
            return None
        payload = MessagePayload.text(user.uid, text, self.room.get_user_ids())
        return await self.send_message(payload)

    async def send_image_message(self, user: User, url: str, width: int, height: int) -> str:
        payload = MessagePayload.image(user.uid, url, width, height, self.room.get_user_ids())
        return await self.send_message(payload)

    async def send_file_message(self, user: User, file_name: str, mime_type: str, file_url: str) -> str:
        payload = MessagePayload.file(user.uid, file_name, mime_type, file_url, self.room.get_user_ids())
        return await self.send_message(payload)

    # ------------------------------------------------------------------
    # Flagging
    # ------------------------------------------------------------------

    async def flag_message(self, message: Message) -> None:
        creator = self.session.user.uid
        await self.room.paths.flagged_message_ref(message.mid).set({
            "creator": creator,
            "from": message.sender_id,
            "message": message.text(),
            "thread": self.room.rid,
            "date": SERVER_TIMESTAMP,
        })
        message.flagged = True
        self.room.bus.publish(Notification.CHAT_UPDATED, room=self.room)

    async def unflag_message(self, message: Message) -> None:
        await self.room.paths.flagged_message_ref(message.mid).remove()
        message.flagged = False
        self.room.bus.publish(Notification.CHAT_UPDATED, room=self.room)

    async def toggle_message_flag(self, message: Message) -> None:
        if message.flagged:
            await self.unflag_message(message)
        else:
            await self.flag_message(message)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_message(self, mid: str) -> Optional[Message]:
        for message in self.messages:
            if message.mid == mid:
                return message
        return None

    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def last_message_time(self) -> Optional[int]:
        last = self.last_message()
        return last.time if last is not None else None

    def messages_newer_than(self, timestamp: Optional[int] = None) -> List[Message]:
        return [m for m in self.messages if timestamp is None or m.time > timestamp]

    def messages_older_than(self, timestamp: Optional[int] = None) -> List[Message]:
        return [m for m in self.messages if timestamp is None or m.time < timestamp]

    def transcript(self) -> str:
        lines = []
        for message in self.messages:
            user = self.session.users.get_user(message.sender_id)
            name = user.name if user and user.name else message.sender_id
            stamp = self.session.clock.format_timestamp(message.time, self.settings.TIME_FORMAT)
            lines.append(f"{stamp} {name}: {message.text()}")
        return "\n".join(lines) + ("\n" if lines else "")
