# roomsync/api/routes/root.py

from fastapi import APIRouter

from roomsync import __version__

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the service and its endpoints.
    """
    return {
        "message": "roomsync - real-time room synchronization",
        "version": __version__,
        "endpoints": {
            "websocket": "/ws",
            "rooms": "/rooms",
            "health": "/health",
        },
    }
