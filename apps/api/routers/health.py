"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports the store, Redis, and background billing tasks.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": "unknown",
        "call_watcher": "disabled",
        "event_backend": settings.CALL_EVENT_BACKEND,
    }
    if health_status["database"] != "up":
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.CALL_EVENT_BACKEND == "redis" or settings.NOTIFICATION_BACKEND == "redis":
            health_status["status"] = "degraded"

    watcher = getattr(request.app.state, "call_watcher", None)
    if watcher is not None:
        health_status["call_watcher"] = "running" if watcher.running else "stopped"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    database = await _database_status()
    if database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
