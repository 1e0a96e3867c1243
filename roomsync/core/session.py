# roomsync/core/session.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from roomsync.core.config import Settings, settings as default_settings
from roomsync.services.backend import LogBackend, SERVER_TIMESTAMP
from roomsync.services.clock import ClockSynchronizer
from roomsync.services.notifications import Notification, NotificationBus
from roomsync.services.paths import Paths

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class User:
    uid: str
    name: str = ""
    online: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# USER DIRECTORY
# ============================================================================

class UserStore:
    """
    In-memory user directory shared by every room of a session.

    Attributes:
        users: uid -> User, one object per uid for the whole session
        blocked: uids whose messages are dropped at ingestion
    """

    def __init__(self, bus: Optional[NotificationBus] = None) -> None:
        self.users: Dict[str, User] = {}
        self.blocked: Set[str] = set()
        self.bus = bus

    def get_or_create_user(self, uid: str, name: Optional[str] = None) -> User:
        user = self.users.get(uid)
        if user is None:
            user = User(uid=uid, name=name or "")
            self.users[uid] = user
        elif name:
            user.name = name
        return user

    def get_user(self, uid: str) -> Optional[User]:
        return self.users.get(uid)

    def is_online(self, uid: str) -> bool:
        user = self.users.get(uid)
        return bool(user and user.online)

    def set_online(self, uid: str, online: bool) -> None:
        user = self.get_or_create_user(uid)
        if user.online == online:
            return
        user.online = online
        if self.bus is not None:
            self.bus.publish(Notification.USER_ONLINE_STATE_CHANGED, user=user)

    def is_blocked(self, uid: Optional[str]) -> bool:
        return uid is not None and uid in self.blocked

    def block(self, uid: str) -> None:
        self.blocked.add(uid)

    def unblock(self, uid: str) -> None:
        self.blocked.discard(uid)


# ============================================================================
# SESSION CONTEXT
# ============================================================================

class Session:
    """
    Everything a room needs to know about the logged-in client.

    Owned by the composing application and handed to each room, there is
    no module-level session state in the engine.

    Attributes:
        user: the current session user
        backend / paths: the append-log and its path resolver
        users: the user directory
        clock: server clock estimate for this session
        bus: notification channel rooms publish to
        settings: tunables (retention cap, badge ceiling, ...)
        visible: False while the client window is hidden
    """

    def __init__(
        self,
        user: User,
        backend: LogBackend,
        *,
        bus: Optional[NotificationBus] = None,
        users: Optional[UserStore] = None,
        clock: Optional[ClockSynchronizer] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.backend = backend
        self.paths = Paths(backend)
        self.bus = bus or NotificationBus()
        self.users = users or UserStore(self.bus)
        self.user = self.users.users.setdefault(user.uid, user)
        self.clock = clock or ClockSynchronizer(self.paths)
        self.settings = settings or default_settings
        self.visible = True

    @property
    def current_user(self) -> User:
        return self.user

    def is_me(self, uid: Optional[str]) -> bool:
        return uid == self.user.uid

    async def start(self) -> None:
        """Synchronize the clock and publish presence."""
        await self.clock.start(self.user.uid)
        await self.refresh()

    async def refresh(self) -> None:
        """Re-publish presence; used before retrying a failed write."""
        ref = self.paths.user_online_ref(self.user.uid)
        await ref.set(True)
        ref.on_disconnect_remove()
        self.users.set_online(self.user.uid, True)
        logger.debug("Presence refreshed for %s", self.user.uid)

    async def mark_room_read_time(self, rid: str) -> None:
        await self.paths.user_rooms_ref(self.user.uid).child(rid).update({"read": SERVER_TIMESTAMP})

    async def room_read_time(self, rid: str) -> Optional[int]:
        snapshot = await self.paths.user_rooms_ref(self.user.uid).child(rid).get()
        if isinstance(snapshot.value, dict):
            return snapshot.value.get("read")
        return None
