# roomsync/api/routes/utils.py

from __future__ import annotations

from fastapi import HTTPException

from roomsync.core import state
from roomsync.services.room import Room
from roomsync.services.room_manager import RoomManager


def get_manager() -> RoomManager:
    if state.room_manager is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return state.room_manager


def get_room_or_404(room_id: str) -> Room:
    room = get_manager().get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room
