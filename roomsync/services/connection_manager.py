# roomsync/services/connection_manager.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from roomsync.services.notifications import Notification, NotificationBus

logger = logging.getLogger(__name__)


def notification_to_event(event: Notification, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a bus notification to a JSON-ready event.

    Example:
        {"type": "room.badge_changed", "room_id": "r1", "badge": 3}
    """
    data: Dict[str, Any] = {"type": event.value}
    room = payload.get("room")
    if room is not None:
        data["room_id"] = room.rid
    for key in ("badge", "count", "typing"):
        if key in payload:
            data[key] = payload[key]
    message = payload.get("message")
    if message is not None:
        data["message"] = message.to_out().model_dump(mode="json")
    user = payload.get("user")
    if user is not None:
        data["user_id"] = user.uid
        data["online"] = user.online
    return data


# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Fans engine notifications out to WebSocket clients.

    Bus handlers run synchronously on the publishing task, so each
    connection gets a queue and a sender task draining it; a slow client
    never blocks a room.

    Data Structures:
        queues: Maps WebSocket -> asyncio.Queue of pending events
        watched: Maps WebSocket -> Set of room_ids it filters on
                 (empty set means every room)
        connection_users: Maps WebSocket -> client label (for logging)
    """

    def __init__(self, bus: NotificationBus) -> None:
        self.queues: Dict[WebSocket, asyncio.Queue] = {}
        self.watched: Dict[WebSocket, Set[str]] = {}
        self.connection_users: Dict[WebSocket, str] = {}
        self.bus = bus
        self._unsubscribe = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self.on_notification)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def connect(self, websocket: WebSocket, user_id: str = "anonymous") -> asyncio.Queue:
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue()
        self.queues[websocket] = queue
        self.watched[websocket] = set()
        self.connection_users[websocket] = user_id
        self.attach()
        logger.info("✓ Client %s connected. Total: %d", user_id, len(self.queues))
        return queue

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket not in self.queues:
            return
        user_id = self.connection_users.pop(websocket, "unknown")
        del self.queues[websocket]
        self.watched.pop(websocket, None)
        logger.info("✗ Client %s disconnected. Total: %d", user_id, len(self.queues))

    def watch(self, websocket: WebSocket, room_id: str) -> None:
        if websocket in self.watched:
            self.watched[websocket].add(room_id)

    def unwatch(self, websocket: WebSocket, room_id: str) -> None:
        if websocket in self.watched:
            self.watched[websocket].discard(room_id)

    def on_notification(self, event: Notification, payload: Dict[str, Any]) -> None:
        data = notification_to_event(event, payload)
        room_id: Optional[str] = data.get("room_id")
        for websocket, queue in list(self.queues.items()):
            rooms = self.watched.get(websocket)
            if rooms and room_id is not None and room_id not in rooms:
                continue
            queue.put_nowait(data)

    async def pump(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Send queued events until the client goes away."""
        while True:
            data = await queue.get()
            try:
                await websocket.send_json(data)
            except Exception as e:
                logger.error(f"Send error: {e}")
                self.disconnect(websocket)
                return
