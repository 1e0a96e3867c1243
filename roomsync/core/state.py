# roomsync/core/state.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from roomsync.core.config import Settings, settings as default_settings
from roomsync.core.exceptions import ClockSyncError
from roomsync.core.session import Session, User
from roomsync.services.backend import LogBackend
from roomsync.services.connection_manager import ConnectionManager
from roomsync.services.memory_log import MemoryBackend
from roomsync.services.notifications import NotificationBus
from roomsync.services.redis_log import RedisBackend
from roomsync.services.retry import retry_async
from roomsync.services.room_manager import RoomManager

# App state, filled in by the startup hook
bus = NotificationBus()
connection_manager = ConnectionManager(bus)
backend: Optional[LogBackend] = None
session: Optional[Session] = None
room_manager: Optional[RoomManager] = None

app_start_time: datetime = datetime.now(timezone.utc)


def build_backend(settings: Settings = default_settings) -> LogBackend:
    if settings.BACKEND == "redis":
        return RedisBackend(host=settings.REDIS_HOST, port=settings.REDIS_PORT, prefix=settings.REDIS_KEY_PREFIX)
    return MemoryBackend()


async def start(settings: Settings = default_settings) -> RoomManager:
    """Compose backend, session and room manager for the service user."""
    global backend, session, room_manager

    backend = build_backend(settings)
    await backend.connect()
    session = Session(User(settings.USER_ID, settings.USER_NAME), backend, bus=bus, settings=settings)
    await retry_async(session.start, exceptions=(ClockSyncError,), name="session start")
    room_manager = RoomManager(session)
    await room_manager.rooms_on()
    return room_manager


async def stop() -> None:
    global backend, session, room_manager

    if room_manager is not None:
        await room_manager.shutdown()
    if backend is not None:
        await backend.close()
    backend = session = room_manager = None
