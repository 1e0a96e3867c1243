# roomsync/services/membership.py

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from roomsync.core.session import User
from roomsync.models.models import MembershipRecord, RoomMeta, RoomType, UserStatus
from roomsync.services.backend import (
    CHILD_ADDED,
    CHILD_CHANGED,
    CHILD_REMOVED,
    SERVER_TIMESTAMP,
    VALUE,
    Snapshot,
)

if TYPE_CHECKING:
    from roomsync.services.room import Room

logger = logging.getLogger(__name__)

# ============================================================================
# MEMBERSHIP / META SYNCHRONIZER
# ============================================================================

class MembershipSynchronizer:
    """
    Mirrors a room's meta node and membership list.

    The backend is the source of truth; ``meta``, ``users_meta`` and
    ``users`` are caches refreshed by listener events.

    Attributes:
        meta: merged RoomMeta
        users_meta: uid -> MembershipRecord
        users: uid -> User resolved from the session's user directory
        name: derived display name
        online_user_count: members online (the session user always counts)
    """

    def __init__(self, room: "Room", meta: Optional[Dict[str, Any]] = None) -> None:
        self.room = room
        self.meta = RoomMeta()
        self.users_meta: Dict[str, MembershipRecord] = {}
        self.users: Dict[str, User] = {}
        self.name = ""
        self.online_user_count = 0
        self.meta_is_on = False
        self.users_meta_is_on = False
        if meta:
            self.set_meta(meta)

    @property
    def session(self):
        return self.room.session

    @property
    def settings(self):
        return self.room.session.settings

    def _users_ref(self):
        return self.room.paths.room_users_ref(self.room.rid)

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def set_meta(self, values: Dict[str, Any]) -> None:
        merged = {**self.meta.model_dump(exclude_none=True), **values}
        self.meta = RoomMeta.model_validate(merged)

    @property
    def type(self) -> RoomType:
        return self.meta.room_type()

    async def meta_on(self) -> None:
        """Listen to the meta node; returns once the current value is applied."""
        if self.meta_is_on:
            return
        self.meta_is_on = True
        try:
            await self.room.paths.room_meta_ref(self.room.rid).on(VALUE, self._on_meta)
        except Exception:
            self.meta_off()
            raise

    def meta_off(self) -> None:
        self.room.paths.room_meta_ref(self.room.rid).off()
        self.meta_is_on = False

    def _on_meta(self, snapshot: Snapshot) -> None:
        if not isinstance(snapshot.value, dict):
            return
        try:
            self.set_meta(snapshot.value)
        except ValidationError as e:
            logger.warning("Ignoring malformed meta for room %s: %s", self.room.rid, e)
            return
        self.room.update()

    async def update_meta(self, values: Dict[str, Any]) -> None:
        """Write meta fields, then bump the room's "meta" state pointer."""
        await self.room.paths.room_meta_ref(self.room.rid).update(values)
        await self.room.update_state("meta")

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def users_meta_on(self) -> None:
        if self.users_meta_is_on:
            return
        self.users_meta_is_on = True
        ref = self._users_ref()
        try:
            await ref.on(CHILD_ADDED, self._on_user_added)
            await ref.on(CHILD_CHANGED, self._on_user_added)
            await ref.on(CHILD_REMOVED, self._on_user_removed)
        except Exception:
            self.users_meta_off()
            raise

    def users_meta_off(self) -> None:
        self._users_ref().off()
        self.users_meta_is_on = False

    def _on_user_added(self, snapshot: Snapshot) -> None:
        if not isinstance(snapshot.value, dict):
            return
        try:
            record = MembershipRecord.model_validate({**snapshot.value, "uid": snapshot.key})
        except ValidationError as e:
            logger.warning("Ignoring malformed member %s of room %s: %s", snapshot.key, self.room.rid, e)
            return
        self.add_user_meta(record)

    def _on_user_removed(self, snapshot: Snapshot) -> None:
        if snapshot.value:
            self.remove_user_meta(snapshot.key)

    def add_user_meta(self, record: MembershipRecord) -> None:
        self.users_meta[record.uid] = record
        self.users[record.uid] = self.session.users.get_or_create_user(record.uid, record.name)
        self.room.update()

    def remove_user_meta(self, uid: str) -> None:
        self.users_meta.pop(uid, None)
        self.users.pop(uid, None)
        self.room.update()

    async def join(self, status: UserStatus = UserStatus.MEMBER) -> None:
        """Add the session user to the room and the room to the user's index."""
        user = self.session.user
        await self._users_ref().child(user.uid).update({
            "status": status.value,
            "time": SERVER_TIMESTAMP,
            "name": user.name,
        })
        await self.room.paths.user_rooms_ref(user.uid).child(self.room.rid).update({"joined": SERVER_TIMESTAMP})

    async def remove_user(self, user: User) -> None:
        """
        Remove ``user`` from the room.

        One-to-one rooms keep a "closed" record stamped with the server
        time so the room can later be restored from that point on.
        """
        ref = self._users_ref().child(user.uid)
        if self.type == RoomType.ONE_TO_ONE:
            await ref.set({"status": UserStatus.CLOSED.value, "time": SERVER_TIMESTAMP, "name": user.name})
        else:
            await ref.remove()
            await self.room.paths.user_rooms_ref(user.uid).child(self.room.rid).remove()

    async def user_deleted_date(self) -> Optional[int]:
        """Time the session user closed this room, if they did."""
        snapshot = await self._users_ref().child(self.session.user.uid).get()
        value = snapshot.value
        if isinstance(value, dict) and value.get("status") == UserStatus.CLOSED.value:
            return value.get("time")
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_user_status(self, user: User) -> Optional[str]:
        record = self.users_meta.get(user.uid)
        return record.status if record else None

    def user_is_member(self, user: User) -> bool:
        return self.get_user_status(user) in (UserStatus.MEMBER.value, UserStatus.OWNER.value)

    def contains_user(self, user: User) -> bool:
        return user.uid in self.users

    def user_count(self) -> int:
        return len(self.users)

    def contains_only_users(self, users: Iterable[User]) -> bool:
        uids = {u.uid for u in users}
        return uids == set(self.users)

    def get_users(self) -> Dict[str, User]:
        """Members other than the session user."""
        return {uid: u for uid, u in self.users.items() if not self.session.is_me(uid)}

    def get_user_ids(self) -> List[str]:
        return list(self.users)

    def get_owner(self) -> Optional[User]:
        for record in self.users_meta.values():
            if record.status == UserStatus.OWNER.value:
                return self.session.users.get_or_create_user(record.uid)
        return None

    def get_online_user_count(self) -> int:
        return sum(
            1 for uid in self.users_meta
            if self.session.users.is_online(uid) or self.session.is_me(uid)
        )

    def calculated_type(self) -> RoomType:
        if self.type == RoomType.PUBLIC:
            return RoomType.PUBLIC
        count = self.user_count()
        if count <= 1:
            return RoomType.INVALID
        if count == 2:
            return RoomType.ONE_TO_ONE
        return RoomType.GROUP

    async def update_type(self) -> None:
        """Persist the type implied by the member count. Groups never shrink to 1:1."""
        calculated = self.calculated_type()
        if calculated != self.type and self.type != RoomType.GROUP:
            await self.update_meta({"type": int(calculated)})

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def update(self) -> None:
        self.update_name()
        self.online_user_count = self.get_online_user_count()

    def update_name(self) -> None:
        if self.meta.name:
            self.name = self.meta.name
            return

        names = [u.name for uid, u in self.users.items() if not self.session.is_me(uid) and u.name]
        name = ", ".join(names)
        limit = self.settings.ROOM_NAME_MAX_LENGTH
        if limit and len(name) > limit:
            name = name[:max(limit - 3, 0)].rstrip(", ") + "..."

        if not name:
            if self.type == RoomType.PUBLIC:
                name = self.settings.ROOM_DEFAULT_NAME_PUBLIC
            elif self.user_count() == 1:
                name = self.settings.ROOM_DEFAULT_NAME_EMPTY
            elif self.type == RoomType.GROUP:
                name = self.settings.ROOM_DEFAULT_NAME_GROUP
            else:
                name = self.settings.ROOM_DEFAULT_NAME_1TO1
        self.name = name
