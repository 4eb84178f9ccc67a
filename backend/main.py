# backend/main.py

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings, settings as default_settings
from core.errors import RoomServiceError
from core.logging import setup_logging, get_logger
from core.state import build_services, shutdown_services
from api.routes import root, health, metrics, rooms
from api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(title="Study Rooms - Realtime Presence & Chat")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # REST routes
    app.include_router(root.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(rooms.router)

    # WebSocket routes
    app.include_router(websocket_module.router)

    @app.exception_handler(RoomServiceError)
    async def room_service_error_handler(request: Request, exc: RoomServiceError):
        if exc.status_code >= 500:
            logger.error("Request error on %s %s: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {"message": exc.message},
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "path": request.url.path,
                "method": request.method,
            },
        )

    @app.on_event("startup")
    async def startup_event():
        logger.info("🚀 Application starting - study rooms enabled")
        app.state.services = await build_services(settings)

    @app.on_event("shutdown")
    async def on_shutdown():
        await shutdown_services(app.state.services)
        logger.info("Application stopped")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
