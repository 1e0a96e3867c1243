# roomsync/api/routes/rooms.py

from typing import List, Optional

from fastapi import APIRouter, HTTPException

from roomsync.api.routes.utils import get_manager, get_room_or_404
from roomsync.core.exceptions import BackendError
from roomsync.models.models import (
    CreateRoomRequest,
    MessageOut,
    OpenRoomRequest,
    RoomSummary,
    SendMessageRequest,
)

router = APIRouter(prefix="/rooms", tags=["Rooms"])

# ============================================================================
# ROOM ENDPOINTS
# ============================================================================

@router.get("", response_model=List[RoomSummary])
async def list_rooms():
    """
    List the rooms of the session user.

    Returns:
        List[RoomSummary]: name, type, badge, typing summary and last message
    """
    return [room.summary() for room in get_manager().list_rooms()]


@router.post("", response_model=RoomSummary)
async def create_room(request: CreateRoomRequest):
    """
    Create a room owned by the session user.

    Args:
        request: CreateRoomRequest with name, type and member ids

    Raises:
        HTTPException: 502 if the backend write fails
    """
    manager = get_manager()
    users = [manager.session.users.get_or_create_user(uid) for uid in request.user_ids]
    try:
        room = await manager.create_room(request.name, request.type, users)
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return room.summary()


@router.get("/{room_id}", response_model=RoomSummary)
async def get_room(room_id: str):
    return get_room_or_404(room_id).summary()


@router.get("/{room_id}/messages", response_model=List[MessageOut])
async def list_messages(room_id: str):
    """Messages currently held in the room's in-memory window, oldest first."""
    return [m.to_out() for m in get_room_or_404(room_id).messages]


@router.post("/{room_id}/messages")
async def send_message(room_id: str, request: SendMessageRequest):
    """
    Send a text message as the session user.

    Raises:
        HTTPException: 400 for empty text, 502 if the send fails after its retry
    """
    room = get_room_or_404(room_id)
    if not request.text.strip():
        raise HTTPException(status_code=400, detail="Message text required")
    try:
        mid = await room.send_text_message(room.session.user, request.text)
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "sent", "mid": mid}


@router.post("/{room_id}/messages/more", response_model=List[MessageOut])
async def load_more_messages(room_id: str, count: Optional[int] = None):
    """Load older history; an empty list means nothing more could be loaded."""
    messages = await get_room_or_404(room_id).load_more_messages(count)
    return [m.to_out() for m in messages]


@router.get("/{room_id}/transcript")
async def transcript(room_id: str):
    return {"room_id": room_id, "transcript": get_room_or_404(room_id).transcript()}


@router.post("/{room_id}/open", response_model=RoomSummary)
async def open_room(room_id: str, request: Optional[OpenRoomRequest] = None):
    room = get_room_or_404(room_id)
    request = request or OpenRoomRequest()
    await room.on()
    await room.open(request.slot, request.duration)
    return room.summary()


@router.post("/{room_id}/close", response_model=RoomSummary)
async def close_room(room_id: str):
    room = get_room_or_404(room_id)
    await room.close()
    return room.summary()


@router.post("/{room_id}/leave")
async def leave_room(room_id: str):
    """
    Leave a room for good.

    Side Effects:
        - membership removed in the backend (1:1 rooms keep a "closed" record)
        - room dropped from the session's registry
    """
    manager = get_manager()
    room = get_room_or_404(room_id)
    try:
        await room.leave()
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        # The room is torn down locally even when the backend write failed
        manager.remove_room(room_id)
    return {"status": "left", "room_id": room_id}


@router.post("/{room_id}/read", response_model=RoomSummary)
async def mark_read(room_id: str):
    room = get_room_or_404(room_id)
    await room.set_active(True)
    return room.summary()


@router.post("/{room_id}/typing")
async def set_typing(room_id: str, typing: bool = True):
    room = get_room_or_404(room_id)
    try:
        if typing:
            await room.start_typing(room.session.user)
        else:
            await room.finish_typing(room.session.user)
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "typing" if typing else "idle", "room_id": room_id}
