"""
Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    ai,
    campaigns,
    admin,
)
from services.ledger_errors import LedgerError
from services.reconciliation import expire_pending_payments

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _periodic_pending_expiry() -> None:
    interval_minutes = max(int(settings.PENDING_EXPIRY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                expired = await expire_pending_payments(db)
            if expired:
                logger.info("Pending payment expiry: cancelled=%s", expired)
        except Exception as exc:
            logger.warning("Pending payment expiry tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    expiry_task = None
    if int(settings.PENDING_EXPIRY_INTERVAL_MINUTES) > 0:
        expiry_task = asyncio.create_task(_periodic_pending_expiry())
        logger.info(
            "Pending payment expiry loop enabled (every %s min, ttl %sh).",
            int(settings.PENDING_EXPIRY_INTERVAL_MINUTES),
            int(settings.PENDING_PAYMENT_TTL_HOURS),
        )
    yield
    # Shutdown
    if expiry_task is not None:
        expiry_task.cancel()
        try:
            await expiry_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Credit-metered AI generation and messaging with Stripe-backed credit purchases",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(ai.router, prefix="/ai", tags=["AI"])
app.include_router(campaigns.router, prefix="/campaigns", tags=["Campaigns"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
