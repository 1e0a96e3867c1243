# roomsync/services/typing_presence.py

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional

from roomsync.core.session import User
from roomsync.services.backend import CHILD_ADDED, CHILD_REMOVED, Snapshot
from roomsync.services.notifications import Notification

if TYPE_CHECKING:
    from roomsync.services.room import Room

logger = logging.getLogger(__name__)


def typing_summary(typing: Dict[str, str], own_uid: Optional[str]) -> Optional[str]:
    """Human readable summary of who is typing, ignoring ``own_uid``."""
    others = [name for uid, name in typing.items() if uid != own_uid]
    if not others:
        return None
    if len(others) == 1:
        return f"{others[0]}..."
    return f"{len(others)} people typing"


class TypingPresence:
    """
    Ephemeral "is typing" set of one room.

    Entries live at ``rooms/{rid}/typing/{uid}`` as ``{"name": ...}`` and
    are removed by the backend if the writer's connection drops.
    """

    def __init__(self, room: "Room") -> None:
        self.room = room
        self.typing: Dict[str, str] = {}
        self.message: Optional[str] = None
        self.is_on = False

    def _ref(self):
        return self.room.paths.room_typing_ref(self.room.rid)

    async def start_typing(self, user: User) -> None:
        ref = self._ref().child(user.uid)
        ref.on_disconnect_remove()
        await ref.set({"name": user.name})

    async def finish_typing(self, user: User) -> None:
        await self._ref().child(user.uid).remove()

    async def on(self) -> None:
        if self.is_on:
            return
        self.is_on = True
        ref = self._ref()
        try:
            await ref.on(CHILD_ADDED, self._on_added)
            await ref.on(CHILD_REMOVED, self._on_removed)
        except Exception:
            self.off()
            raise

    def off(self) -> None:
        self._ref().off()
        self.is_on = False
        if self.typing:
            self.typing.clear()
            self._update()

    def _on_added(self, snapshot: Snapshot) -> None:
        value = snapshot.value if isinstance(snapshot.value, dict) else {}
        self.typing[snapshot.key] = str(value.get("name", ""))
        self._update()

    def _on_removed(self, snapshot: Snapshot) -> None:
        self.typing.pop(snapshot.key, None)
        self._update()

    def _update(self) -> None:
        self.message = typing_summary(self.typing, self.room.session.user.uid)
        self.room.bus.publish(Notification.CHAT_UPDATED, room=self.room, typing=self.message)
