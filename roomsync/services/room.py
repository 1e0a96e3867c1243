# roomsync/services/room.py

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from roomsync.core.exceptions import BackendError
from roomsync.core.session import Session, User
from roomsync.models.message import Message
from roomsync.models.models import MessagePayload, RoomSummary, RoomType, UserStatus
from roomsync.services.backend import SERVER_TIMESTAMP
from roomsync.services.membership import MembershipSynchronizer
from roomsync.services.message_stream import MessageStreamSynchronizer
from roomsync.services.notifications import Notification
from roomsync.services.positions import RoomPositionManager
from roomsync.services.typing_presence import TypingPresence

logger = logging.getLogger(__name__)


# ============================================================================
# ROOM LIFECYCLE CONTROLLER
# ============================================================================

class Room:
    """
    One conversation and its synchronization state machine.

    Lifecycle:
        on()     meta, then (1:1 deletion check) membership + messages
        open()   join public rooms, position, messages + typing
        close()  typing + messages off, leave public rooms
        off()    meta + membership off; idempotent
        leave()  terminal: clear messages, mark deleted, remove membership, off()

    State is owned by the sub-components:
        membership: meta, members, display name, online count
        stream:     messages, unread buffer, badge, pagination, sending
        typing:     who is typing

    Usage:
        room = Room("room-1", session)
        await room.on()
        await room.open(slot=0)
        await room.send_text_message(session.user, "hello")
    """

    def __init__(
        self,
        rid: str,
        session: Session,
        positions: Optional[RoomPositionManager] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.rid = rid
        self.session = session
        self.paths = session.paths
        self.bus = session.bus
        self.positions = positions or RoomPositionManager()

        self.is_on = False
        self.is_open = False
        self.active = True
        self.minimized = False
        self.muted = False
        self.deleted = False
        self.deleted_timestamp: Optional[int] = None
        self.slot: Optional[int] = None

        self._bus_unsubscribe: Optional[Callable[[], None]] = None

        self.membership = MembershipSynchronizer(self, meta)
        self.stream = MessageStreamSynchronizer(self)
        self.typing = TypingPresence(self)
        self.membership.update()

    def __repr__(self) -> str:
        return f"<Room {self.rid} type={self.type.name} on={self.is_on} open={self.is_open}>"

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def type(self) -> RoomType:
        return self.membership.type

    def is_public(self) -> bool:
        return self.type == RoomType.PUBLIC

    @property
    def name(self) -> str:
        return self.membership.name

    @property
    def messages(self) -> List[Message]:
        return self.stream.messages

    @property
    def unread_messages(self) -> List[Message]:
        return self.stream.unread_messages

    @property
    def badge(self) -> int:
        return self.stream.badge

    @property
    def typing_message(self) -> Optional[str]:
        return self.typing.message

    @property
    def online_user_count(self) -> int:
        return self.membership.online_user_count

    def get_user_ids(self) -> List[str]:
        return self.membership.get_user_ids()

    def contains_user(self, user: User) -> bool:
        return self.membership.contains_user(user)

    def in_foreground(self) -> bool:
        """Open, active and not minimized; messages count as read on arrival."""
        return self.active and not self.minimized and self.is_open and self.positions.room_is_open(self)

    def update(self, silent: bool = False) -> None:
        self.membership.update()
        if not silent:
            self.bus.publish(Notification.ROOM_UPDATED, room=self)

    async def update_state(self, key: str) -> None:
        """Stamp ``rooms/{rid}/state/{key}`` so room lists can see activity."""
        await self.paths.room_state_ref(self.rid).update({key: SERVER_TIMESTAMP})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def on(self) -> None:
        if self.is_on or not self.rid:
            return
        self.is_on = True

        try:
            await self.membership.meta_on()

            room_type = self.type
            if room_type not in (RoomType.ONE_TO_ONE, RoomType.GROUP, RoomType.PUBLIC):
                logger.info("Room %s has no valid type yet, only meta is on", self.rid)
                return

            if room_type == RoomType.ONE_TO_ONE:
                self.deleted = False
                timestamp = await self.membership.user_deleted_date()
                if timestamp:
                    self.deleted = True
                    self.deleted_timestamp = timestamp

            if not self.is_public():
                self.stream.read_timestamp = await self.session.room_read_time(self.rid)

            self._bus_unsubscribe = self.bus.subscribe(
                self._on_user_state_changed, Notification.USER_ONLINE_STATE_CHANGED
            )
            await self.membership.users_meta_on()
            await self.stream.messages_on(self.deleted_timestamp)
        except BackendError as e:
            logger.error("Room %s failed to turn on: %s", self.rid, e)
            self.off()

    def _on_user_state_changed(self, event: Notification, payload: Dict[str, Any]) -> None:
        user = payload.get("user")
        if user is not None and self.contains_user(user):
            self.update()

    async def open(self, slot: int = 0, duration: int = 300) -> None:
        if self.is_public() and not self.membership.user_is_member(self.session.user):
            try:
                await self.membership.join(UserStatus.MEMBER)
            except BackendError as e:
                logger.error("Could not join public room %s: %s", self.rid, e)
                return

        self.is_open = True
        self.positions.insert_room(self, slot, duration)
        await self.stream.messages_on(self.deleted_timestamp)
        await self.typing.on()
        self.bus.publish(Notification.ROOM_ADDED, room=self)

    async def close(self) -> None:
        self.typing.off()
        self.stream.messages_off()
        self.is_open = False

        if self.is_public():
            try:
                await self.membership.remove_user(self.session.user)
            except BackendError as e:
                logger.error("Could not leave public room %s: %s", self.rid, e)

        self.positions.close_room(self)

    async def leave(self) -> None:
        self.stream.delete_messages()
        self.bus.publish(Notification.ROOM_REMOVED, room=self)
        self.deleted = True
        try:
            await self.membership.remove_user(self.session.user)
        finally:
            self.off()

    def off(self) -> None:
        self.is_on = False
        if self._bus_unsubscribe is not None:
            self._bus_unsubscribe()
            self._bus_unsubscribe = None
        self.membership.meta_off()
        self.membership.users_meta_off()

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def set_active(self, active: bool) -> None:
        if active:
            await self.stream.mark_read()
        self.active = active

    async def mark_read(self) -> None:
        await self.stream.mark_read()

    def flash_header(self) -> bool:
        if self.positions.room_is_open(self):
            self.bus.publish(Notification.ROOM_FLASH_HEADER, room=self)
            return True
        return False

    async def start_typing(self, user: User) -> None:
        await self.typing.start_typing(user)

    async def finish_typing(self, user: User) -> None:
        await self.typing.finish_typing(user)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, payload: MessagePayload) -> str:
        return await self.stream.send_message(payload)

    async def send_text_message(self, user: User, text: str) -> Optional[str]:
        return await self.stream.send_text_message(user, text)

    async def send_image_message(self, user: User, url: str, width: int, height: int) -> str:
        return await self.stream.send_image_message(user, url, width, height)

    async def send_file_message(self, user: User, file_name: str, mime_type: str, file_url: str) -> str:
        return await self.stream.send_file_message(user, file_name, mime_type, file_url)

    async def load_more_messages(self, count: Optional[int] = None) -> List[Message]:
        return await self.stream.load_more_messages(count)

    def transcript(self) -> str:
        return self.stream.transcript()

    def summary(self) -> RoomSummary:
        last = self.stream.last_message()
        return RoomSummary(
            id=self.rid,
            name=self.name,
            type=self.type,
            badge=self.badge,
            online_user_count=self.online_user_count,
            user_count=self.membership.user_count(),
            typing=self.typing_message,
            is_on=self.is_on,
            is_open=self.is_open,
            active=self.active,
            deleted=self.deleted,
            last_message=last.to_out() if last else None,
        )
