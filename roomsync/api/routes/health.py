# roomsync/api/routes/health.py
from datetime import datetime, timezone

from fastapi import APIRouter

from roomsync.core import state

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Returns:
        dict: Status, backend, clock synchronization, room counts
    """
    manager = state.room_manager
    session = state.session
    rooms = manager.list_rooms() if manager else []
    return {
        "status": "healthy" if manager is not None else "starting",
        "backend": state.backend.name if state.backend else None,
        "clock_synchronized": bool(session and session.clock.synchronized),
        "clock_offset_ms": session.clock.offset if session else None,
        "rooms": len(rooms),
        "rooms_on": sum(1 for r in rooms if r.is_on),
        "rooms_open": sum(1 for r in rooms if r.is_open),
        "subscribers": len(state.bus),
        "uptime_seconds": round((datetime.now(timezone.utc) - state.app_start_time).total_seconds(), 1),
    }
