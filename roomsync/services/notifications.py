# roomsync/services/notifications.py

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class Notification(str, Enum):
    """Events published by rooms for presentation layers."""

    ROOM_UPDATED = "room.updated"
    ROOM_ADDED = "room.added"
    ROOM_REMOVED = "room.removed"
    ROOM_BADGE_CHANGED = "room.badge_changed"
    ROOM_FLASH_HEADER = "room.flash_header"
    CHAT_UPDATED = "chat.updated"
    LAZY_LOADED_MESSAGES = "messages.lazy_loaded"
    PLAY_RECEIVED_SOUND = "sound.message_received"
    USER_ONLINE_STATE_CHANGED = "user.online_state_changed"


Handler = Callable[[Notification, Dict[str, Any]], None]


class NotificationBus:
    """
    Observer registry decoupling the engine from any UI framework.

    Handlers are plain callables invoked synchronously, in registration
    order, on the publishing task. A handler subscribed without events
    receives everything.

    Usage:
        bus = NotificationBus()
        off = bus.subscribe(on_badge, Notification.ROOM_BADGE_CHANGED)
        ...
        off()
    """

    def __init__(self) -> None:
        self._handlers: List[Tuple[Handler, Optional[Set[Notification]]]] = []

    def subscribe(self, handler: Handler, *events: Notification) -> Callable[[], None]:
        entry = (handler, set(events) if events else None)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def publish(self, event: Notification, **payload: Any) -> None:
        for handler, events in list(self._handlers):
            if events is not None and event not in events:
                continue
            try:
                handler(event, payload)
            except Exception as e:
                # One failing consumer must not break the room or other consumers
                logger.error(f"Notification handler failed for {event.value}: {e}")

    def __len__(self) -> int:
        return len(self._handlers)
