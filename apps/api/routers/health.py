"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import async_session_maker, engine
from services.pricing import OperationCostCatalog

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "stripe": "configured" if settings.STRIPE_SECRET_KEY else "missing",
    }

    # Check database connection
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception:
        health_status["database"] = "down"
        health_status["status"] = "degraded"

    # Check Redis connection
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception:
        health_status["redis"] = "down"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once the database answers and every required operation is priced."""
    try:
        async with async_session_maker() as db:
            catalog = await OperationCostCatalog(db).validate()
    except Exception:
        return JSONResponse(status_code=503, content={"ready": False, "database": "down"})

    if not catalog["valid"]:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing_operations": catalog["missing_operations"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
