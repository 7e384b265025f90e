"""
Image Studio Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    webhooks,
    admin,
    operations,
)
from services.catalog import seed_default_catalog
from services.errors import LedgerError
from services.operation_queue import recover_stalled_operations

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Image Studio Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as db:
            seeded = await seed_default_catalog(db)
        if seeded:
            print(f"🧾 Seeded {seeded} operation catalog entries.")
    except Exception as exc:
        print(f"⚠️ Operation catalog seeding skipped: {exc}")
    try:
        recovered = await recover_stalled_operations(settings.OPERATION_STALL_TIMEOUT_MINUTES)
        if recovered:
            print(f"♻️ Failed {recovered} stalled operations after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled operation recovery skipped: {exc}")
    print(f"💳 Credit settlement mode: {settings.CREDIT_SETTLEMENT_MODE}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Image Studio Credit Ledger API",
    description="Credit ledger, entitlements and billing reconciliation for AI image operations",
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
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    elif exc.status_code == 403:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(operations.router, prefix="/operations", tags=["Operations"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Image Studio Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
