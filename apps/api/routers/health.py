"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns broker reachability and the current queue depth.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "redis": "unknown",
        "queue": settings.JOB_QUEUE_NAME,
        "queue_depth": None,
        "telegram": "configured" if settings.TELEGRAM_BOT_TOKEN else "missing",
    }

    queue = request.app.state.queue
    try:
        await queue.client.ping()
        health_status["redis"] = "up"
        health_status["queue_depth"] = await queue.depth()
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe; chat replies are optional."""
    missing = []
    if not settings.REDIS_URL:
        missing.append("REDIS_URL")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
