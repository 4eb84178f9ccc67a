# backend/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.
    """
    return {
        "message": "Study Rooms - realtime presence and chat",
        "version": "1.0",
        "features": ["join_codes", "presence", "ready_state", "chat", "async_persistence"],
        "endpoints": {
            "websocket": "/ws?token=<jwt>",
            "rooms": "/rooms",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
