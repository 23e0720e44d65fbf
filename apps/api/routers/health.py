"""
Health check endpoints.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings, stripe_configured
from database import engine

router = APIRouter()


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


async def _probe_redis() -> str:
    # Rate limits and the report queue live here; the API degrades without it.
    try:
        client = redis.from_url(settings.REDIS_URL)
        await client.ping()
        await client.aclose()
    except Exception as e:
        return f"down: {str(e)}"
    return "up"


def _missing_payment_settings() -> List[str]:
    missing = []
    if not stripe_configured():
        missing.append("STRIPE_SECRET_KEY")
    if not (settings.STRIPE_WEBHOOK_SECRET or "").strip():
        missing.append("STRIPE_WEBHOOK_SECRET")
    return missing


@router.get("/health")
async def health_check():
    """Reports database, Redis and payment provider status."""
    database = await _probe_database()
    cache = await _probe_redis()
    degraded = database != "up" or cache != "up"
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": database,
        "redis": cache,
        "payment_provider": "configured" if stripe_configured() else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Webhooks cannot be verified until both Stripe settings are present."""
    missing = _missing_payment_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
