# roomsync/services/positions.py

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from roomsync.services.room import Room

logger = logging.getLogger(__name__)


class RoomPositionManager:
    """
    Tracks which rooms are open and the slot each one occupies.

    Presentation layers read this to lay rooms out; the engine only tells
    it when a room opens or closes and asks whether a room is open.
    """

    def __init__(self) -> None:
        self.slots: Dict[str, int] = {}
        self._rooms: Dict[str, "Room"] = {}

    def insert_room(self, room: "Room", slot: int = 0, duration: int = 300) -> None:
        # Rooms at or after the slot shift right by one
        for rid, current in self.slots.items():
            if rid != room.rid and current >= slot:
                self.slots[rid] = current + 1
        self.slots[room.rid] = slot
        self._rooms[room.rid] = room
        room.slot = slot
        logger.debug("Room %s inserted at slot %d (%d ms)", room.rid, slot, duration)

    def close_room(self, room: "Room") -> None:
        slot = self.slots.pop(room.rid, None)
        self._rooms.pop(room.rid, None)
        if slot is None:
            return
        for rid, current in self.slots.items():
            if current > slot:
                self.slots[rid] = current - 1

    def room_is_open(self, room: "Room") -> bool:
        return room.rid in self.slots

    def slot_for(self, room: "Room") -> Optional[int]:
        return self.slots.get(room.rid)

    def open_rooms(self) -> List["Room"]:
        return sorted(self._rooms.values(), key=lambda r: self.slots[r.rid])
