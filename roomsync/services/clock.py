# roomsync/services/clock.py

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from roomsync.core.exceptions import BackendError, ClockSyncError
from roomsync.services.backend import SERVER_TIMESTAMP, now_ms
from roomsync.services.paths import Paths

logger = logging.getLogger(__name__)


class ClockSynchronizer:
    """
    Estimates the backend clock from one write/read round trip.

    The server timestamp sentinel is written to ``time/{uid}``; the local
    time is sampled when the write completes and the stored value is read
    back. From then on:

        now() = local_now - local_time + remote_time

    Message ages are measured against this estimate so a skewed device
    clock cannot make fresh messages look stale (or the reverse).

    Attributes:
        local_time: local clock (ms) when the write was acknowledged
        remote_time: backend clock (ms) stored by that write
        uid: user the offset was captured for
        working: True while a round trip is in flight
    """

    def __init__(self, paths: Paths, local_clock: Optional[Callable[[], int]] = None) -> None:
        self.paths = paths
        self.local_clock = local_clock or now_ms
        self.local_time: Optional[int] = None
        self.remote_time: Optional[int] = None
        self.uid: Optional[str] = None
        self.working = False

    @property
    def synchronized(self) -> bool:
        return self.remote_time is not None

    @property
    def offset(self) -> Optional[int]:
        if not self.synchronized:
            return None
        return self.remote_time - self.local_time

    async def start(self, uid: str) -> int:
        """
        Capture a fresh backend timestamp for ``uid``.

        Returns immediately when an offset is already cached for the same
        user.

        Returns:
            The captured backend time in milliseconds

        Raises:
            ClockSyncError: the write failed or the read-back was empty; the
                offset stays unset and the caller may retry
        """
        if self.synchronized and uid == self.uid:
            return self.remote_time

        self._reset()
        self.working = True
        ref = self.paths.time_ref(uid)
        try:
            await ref.set(SERVER_TIMESTAMP)
            local_time = self.local_clock()
            snapshot = await ref.get()
        except BackendError as e:
            raise ClockSyncError(f"Clock round trip failed for {uid}: {e}") from e
        finally:
            self.working = False

        if not snapshot.value:
            raise ClockSyncError(f"No server timestamp stored for {uid}")

        self.local_time = local_time
        self.remote_time = int(snapshot.value)
        self.uid = uid
        logger.info("✓ Clock synchronized for %s (offset %d ms)", uid, self.offset)
        return self.remote_time

    def _reset(self) -> None:
        self.local_time = None
        self.remote_time = None
        self.uid = None

    def now(self) -> Optional[int]:
        """Estimated backend time in ms, ``None`` until synchronized."""
        if not self.synchronized:
            return None
        return self.local_clock() - self.local_time + self.remote_time

    def seconds_since(self, timestamp: float) -> float:
        now = self.now()
        if now is None:
            # Never synchronized, the local clock is the best estimate left
            now = self.local_clock()
        return abs(now - timestamp) / 1000

    @staticmethod
    def format_timestamp(timestamp: float, fmt: str = "24hour") -> str:
        moment = datetime.fromtimestamp(timestamp / 1000)
        if fmt == "24hour":
            return moment.strftime("%H:%M")
        return moment.strftime("%I:%M %p").lstrip("0").lower()
