# roomsync/api/websocket.py

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from roomsync.core import state
from roomsync.core.exceptions import RoomSyncError

logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, user_id: str = "anonymous"):
    """
    WebSocket endpoint streaming room notifications.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Watch Room (only receive events of watched rooms; none watched = all):
        {"action": "watch", "room_id": "r1"}
        {"action": "unwatch", "room_id": "r1"}

    List Rooms:
        {"action": "list_rooms"}
        Response: {"type": "rooms_list", "rooms": [...]}

    Typing:
        {"action": "typing_start", "room_id": "r1"}
        {"action": "typing_stop", "room_id": "r1"}

    Mark Read:
        {"action": "mark_read", "room_id": "r1"}

    Send Message:
        {"action": "send_message", "room_id": "r1", "text": "Hello!"}
        Response: {"type": "message_sent", "room_id": "r1", "mid": "..."}

    Server -> Client Messages:
    -------------------------
    Notification:
        {"type": "room.badge_changed", "room_id": "r1", "badge": 3}
        {"type": "chat.updated", "room_id": "r1", "typing": "Alice..."}
        {"type": "sound.message_received", "room_id": "r1", "message": {...}}

    Error:
        {"type": "error", "message": "..."}
    """
    manager = state.connection_manager
    queue = await manager.connect(websocket, user_id)
    sender = asyncio.create_task(manager.pump(websocket, queue))

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                action = message.get("action")
                logger.info(f"Websocket input: Action: {action}, Message: {message}")
                await _handle_action(websocket, action, message)

            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
            except RoomSyncError as e:
                await websocket.send_json({"type": "error", "message": str(e)})

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        manager.disconnect(websocket)
    finally:
        sender.cancel()


async def _handle_action(websocket: WebSocket, action: str, message: dict) -> None:
    manager = state.connection_manager
    rooms = state.room_manager

    if action == "list_rooms":
        summaries = [r.summary().model_dump(mode="json") for r in rooms.list_rooms()] if rooms else []
        await websocket.send_json({"type": "rooms_list", "rooms": summaries})
        return

    room_id = message.get("room_id")
    if action == "watch" and room_id:
        manager.watch(websocket, room_id)
        return
    if action == "unwatch" and room_id:
        manager.unwatch(websocket, room_id)
        return

    room = rooms.get_room(room_id) if rooms and room_id else None
    if action in ("typing_start", "typing_stop", "mark_read", "send_message") and room is None:
        await websocket.send_json({"type": "error", "message": "Room not found"})
        return

    if action == "typing_start":
        await room.start_typing(room.session.user)
    elif action == "typing_stop":
        await room.finish_typing(room.session.user)
    elif action == "mark_read":
        await room.mark_read()
    elif action == "send_message":
        mid = await room.send_text_message(room.session.user, message.get("text", ""))
        await websocket.send_json({"type": "message_sent", "room_id": room.rid, "mid": mid})
    else:
        await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})
