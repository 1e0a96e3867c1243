# roomsync/core/exceptions.py
"""Error taxonomy for the synchronization engine."""


class RoomSyncError(Exception):
    """Base class for every error raised by roomsync."""


class BackendError(RoomSyncError):
    """A read or write against the append-log backend failed.

    Backend implementations translate their client library errors
    (connection drops, timeouts, protocol errors) into this type so the
    engine only has to handle one exception family.
    """


class ClockSyncError(RoomSyncError):
    """The server clock round trip failed or returned no timestamp."""
