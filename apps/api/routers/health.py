"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.payments import stripe_configured

router = APIRouter()


def _configured(value: str) -> str:
    return "configured" if (value or "").strip() else "missing"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status and which providers are configured.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "providers": {
            "openai": _configured(settings.OPENAI_API_KEY),
            "anthropic": _configured(settings.ANTHROPIC_API_KEY),
            "twilio": _configured(settings.TWILIO_ACCOUNT_SID),
            "smtp": _configured(settings.SMTP_USER),
            "stripe": "configured" if stripe_configured() else "missing",
        },
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not (settings.OPENAI_API_KEY or settings.ANTHROPIC_API_KEY):
        missing.append("OPENAI_API_KEY|ANTHROPIC_API_KEY")
    if settings.BILLING_ENABLED and not stripe_configured():
        missing.append("STRIPE_SECRET_KEY")

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
