# roomsync/services/room_manager.py

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from roomsync.core.session import Session, User
from roomsync.models.models import RoomType, UserStatus
from roomsync.services.backend import CHILD_ADDED, CHILD_REMOVED, SERVER_TIMESTAMP, Snapshot
from roomsync.services.notifications import Notification
from roomsync.services.positions import RoomPositionManager
from roomsync.services.room import Room

logger = logging.getLogger(__name__)

# ============================================================================
# ROOM REGISTRY
# ============================================================================

class RoomManager:
    """
    Owns the Room objects of one session.

    There is at most one Room per room id, so every listener for a room is
    attached exactly once. The manager follows the session user's room
    index (``users/{uid}/rooms``): rooms added there are created and
    turned on, rooms removed there are turned off and dropped.

    Attributes:
        rooms: Dictionary mapping room_id -> Room object
        positions: layout collaborator shared by all rooms

    Usage:
        room_manager = RoomManager(session)
        await room_manager.rooms_on()
        room = await room_manager.create_room("Team", RoomType.GROUP, [alice, bob])
    """

    def __init__(self, session: Session, positions: Optional[RoomPositionManager] = None):
        self.session = session
        self.positions = positions or RoomPositionManager()
        self.rooms: Dict[str, Room] = {}
        self.rooms_are_on = False
        self._tasks: Set[asyncio.Task] = set()

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_or_create_room(self, room_id: str, meta: Optional[dict] = None) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id, self.session, self.positions, meta)
            self.rooms[room_id] = room
        elif meta:
            room.membership.set_meta(meta)
        return room

    def list_rooms(self) -> List[Room]:
        return list(self.rooms.values())

    def remove_room(self, room_id: str) -> bool:
        room = self.rooms.pop(room_id, None)
        if room is None:
            return False
        room.off()
        logger.info("✓ Removed room: %s", room_id)
        return True

    async def create_room(
        self,
        name: Optional[str],
        room_type: RoomType,
        users: Iterable[User] = (),
    ) -> Room:
        """
        Create a room in the backend with the session user as owner.

        Args:
            name: Explicit room name, empty to derive it from members
            room_type: RoomType of the new room
            users: Other members, added with status "member"

        Returns:
            Room: the new room, turned on
        """
        owner = self.session.user
        ref = self.session.paths.ref("rooms").push()
        rid = ref.key

        meta = {"type": int(room_type), "type_v4": int(room_type), "created": SERVER_TIMESTAMP}
        if name:
            meta["name"] = name
        await self.session.paths.room_meta_ref(rid).set(meta)

        members = [(owner, UserStatus.OWNER)] + [(u, UserStatus.MEMBER) for u in users if u.uid != owner.uid]
        users_ref = self.session.paths.room_users_ref(rid)
        for user, status in members:
            await users_ref.child(user.uid).set({"status": status.value, "time": SERVER_TIMESTAMP, "name": user.name})
            await self.session.paths.user_rooms_ref(user.uid).child(rid).update({"joined": SERVER_TIMESTAMP})

        if room_type == RoomType.PUBLIC:
            await self.session.paths.public_room_ref(rid).set({"created": SERVER_TIMESTAMP})

        room = self.get_or_create_room(rid)
        await room.on()
        # The index listener may have started turning the room on first
        await self.wait_idle()
        logger.info("✓ Created room: %s (%s)", rid, room_type.name)
        return room

    # ------------------------------------------------------------------
    # User room index
    # ------------------------------------------------------------------

    async def rooms_on(self) -> None:
        if self.rooms_are_on:
            return
        self.rooms_are_on = True
        ref = self.session.paths.user_rooms_ref(self.session.user.uid)
        await ref.on(CHILD_ADDED, self._on_room_added)
        await ref.on(CHILD_REMOVED, self._on_room_removed)

    def rooms_off(self) -> None:
        self.session.paths.user_rooms_ref(self.session.user.uid).off()
        self.rooms_are_on = False

    def _on_room_added(self, snapshot: Snapshot) -> None:
        room = self.get_or_create_room(snapshot.key)
        if room.is_on:
            return
        task = asyncio.create_task(room.on())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.session.bus.publish(Notification.ROOM_ADDED, room=room)

    def _on_room_removed(self, snapshot: Snapshot) -> None:
        room = self.rooms.get(snapshot.key)
        if room is not None and self.remove_room(snapshot.key):
            self.session.bus.publish(Notification.ROOM_REMOVED, room=room)

    async def wait_idle(self) -> None:
        """Wait for rooms that are still turning on."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def shutdown(self) -> None:
        self.rooms_off()
        for room in self.list_rooms():
            room.typing.off()
            room.stream.messages_off()
            room.off()
