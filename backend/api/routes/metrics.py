# backend/api/routes/metrics.py
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from api.routes.utils import get_services
from core.state import AppServices

router = APIRouter()

# Most recent dead-lettered jobs shown in /metrics.
DEAD_LETTER_SAMPLE = 10

@router.get("/metrics")
async def get_metrics(services: AppServices = Depends(get_services)):
    """
    Throughput and backlog of the chat pipeline.

    Example Response:
        {
            "uptime_hours": 1.5,
            "messages_broadcast": 1200,
            "jobs_enqueued": 1250,
            "jobs_dropped": 0,
            "queue": {"waiting": 0, "active": 1, "delayed": 0, "completed": 100, "failed": 2},
            "dead_letters": [{"id": "17", "data": {...}, "attempts_made": 3, "failed_reason": "...", "finished_at": "..."}],
            "worker": {"processed": 1247, "failed_attempts": 5, "dead_lettered": 2},
            "concurrent_connections": 42,
            "rooms": {"<room_id>": {"connections": 3}}
        }
    """
    uptime_seconds = (datetime.now(timezone.utc) - services.started_at).total_seconds()
    gateway = services.gateway

    queue_counts = None
    dead_letters = None
    if services.job_queue is not None:
        try:
            queue_counts = await services.job_queue.counts()
            dead_letters = (await services.job_queue.failed_jobs())[:DEAD_LETTER_SAMPLE]
        except Exception as e:
            queue_counts = {"error": str(e)}

    worker = services.worker
    return {
        "uptime_hours": round(uptime_seconds / 3600, 2),
        "messages_broadcast": gateway.messages_broadcast,
        "messages_per_second": round(gateway.messages_broadcast / uptime_seconds, 2) if uptime_seconds > 0 else 0,
        "jobs_enqueued": gateway.jobs_enqueued,
        "jobs_dropped": gateway.jobs_dropped,
        "queue": queue_counts,
        "dead_letters": dead_letters,
        "worker": {
            "processed": worker.processed_count,
            "failed_attempts": worker.failed_count,
            "dead_lettered": worker.dead_lettered_count,
        } if worker else None,
        "concurrent_connections": len(services.connections.connections),
        "total_rooms": len(services.rooms.rooms),
        "rooms": services.connections.get_rooms_info(),
    }
