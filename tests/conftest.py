"""Test fixtures and configuration."""

from typing import Dict, Iterable, Optional

import pytest

from roomsync.core.config import Settings
from roomsync.core.session import Session, User
from roomsync.models.models import RoomType
from roomsync.services.clock import ClockSynchronizer
from roomsync.services.memory_log import MemoryBackend
from roomsync.services.notifications import NotificationBus
from roomsync.services.paths import Paths
from roomsync.services.positions import RoomPositionManager
from roomsync.services.room import Room

BASE_TIME = 1_700_000_000_000


class FakeClock:
    """Millisecond clock under test control."""

    def __init__(self, now: int = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class Recorder:
    """Collects bus notifications."""

    def __init__(self, bus: NotificationBus) -> None:
        self.events = []
        bus.subscribe(lambda event, payload: self.events.append((event, payload)))

    def of(self, event):
        return [payload for e, payload in self.events if e == event]


@pytest.fixture
def server_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_clock() -> FakeClock:
    # Device clock two minutes behind the server
    return FakeClock(BASE_TIME - 120_000)


@pytest.fixture
def backend(server_clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=server_clock)


@pytest.fixture
def test_settings() -> Settings:
    """Create settings with small, test friendly limits."""
    settings = Settings()
    settings.MAX_HISTORIC_MESSAGES = 50
    settings.MESSAGE_RETENTION_CAP = 100
    settings.BADGE_CEILING = 99
    settings.SOUND_FRESHNESS_SECONDS = 30
    settings.LOAD_MORE_MESSAGES = 10
    settings.ROOM_NAME_MAX_LENGTH = 60
    settings.TIME_FORMAT = "24hour"
    return settings


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def recorder(bus: NotificationBus) -> Recorder:
    return Recorder(bus)


@pytest.fixture
def me() -> User:
    return User("me", "Me")


@pytest.fixture
def session(me, backend, bus, test_settings, local_clock) -> Session:
    clock = ClockSynchronizer(Paths(backend), local_clock=local_clock)
    return Session(me, backend, bus=bus, clock=clock, settings=test_settings)


@pytest.fixture
def positions() -> RoomPositionManager:
    return RoomPositionManager()


@pytest.fixture
def seed_room(backend, server_clock, session, positions):
    """
    Write a room into the backend and return an (off) Room for it.

    Usage:
        room = await seed_room("r1", RoomType.GROUP, {"alice": "Alice"})
    """

    async def _seed(
        rid: str = "r1",
        room_type: RoomType = RoomType.GROUP,
        members: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
        include_me: bool = True,
    ) -> Room:
        meta = {"type": int(room_type), "created": server_clock()}
        if name:
            meta["name"] = name
        await backend.write(f"rooms/{rid}/meta", meta)

        users = dict(members or {})
        if include_me:
            users[session.user.uid] = session.user.name
        for uid, user_name in users.items():
            status = "owner" if uid == session.user.uid else "member"
            await backend.write(
                f"rooms/{rid}/users/{uid}",
                {"status": status, "time": server_clock(), "name": user_name},
            )
        return Room(rid, session, positions)

    return _seed


def message_value(sender: str, text: str, time: int, to: Iterable[str] = ()) -> dict:
    return {"from": sender, "type": 0, "meta": {"text": text}, "to": list(to), "time": time}


async def write_message(backend: MemoryBackend, rid: str, mid: str, sender: str, text: str, time: int) -> None:
    await backend.write(f"rooms/{rid}/messages/{mid}", message_value(sender, text, time))
