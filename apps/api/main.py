"""
FamHub Module Entitlements - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_ledger_settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    tokens,
    vouchers,
    modules,
    admin,
)
from services.errors import TokenLedgerError
from services.module_activation import run_expiration_sweep
from services.module_registry import seed_module_registry

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def _periodic_expiration_sweep() -> None:
    interval_minutes = max(int(settings.EXPIRATION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await run_expiration_sweep()
            if expired:
                print(f"⏳ Expiration sweep tick: expired={expired}")
        except Exception as exc:
            print(f"⚠️ Expiration sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting FamHub Module Entitlements API...")
    validate_security_settings()
    validate_ledger_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.SEED_MODULE_REGISTRY:
        try:
            async with async_session_maker() as db:
                created = await seed_module_registry(db)
            if created:
                print(f"🧩 Seeded {created} modules into the registry.")
        except Exception as exc:
            print(f"⚠️ Module registry seed skipped: {exc}")
    try:
        expired = await run_expiration_sweep()
        if expired:
            print(f"♻️ Expired {expired} lapsed module activations after startup.")
    except Exception as exc:
        print(f"⚠️ Startup expiration sweep skipped: {exc}")
    sweep_task = None
    if int(settings.EXPIRATION_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_expiration_sweep())
        print(
            "📅 Expiration sweep loop enabled "
            f"(every {int(settings.EXPIRATION_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="FamHub Module Entitlements API",
    description="Token accounts, vouchers and paid module activations for household finance",
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


@app.exception_handler(TokenLedgerError)
async def ledger_error_handler(request: Request, exc: TokenLedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Unhandled database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
app.include_router(vouchers.router, prefix="/vouchers", tags=["Vouchers"])
app.include_router(modules.router, prefix="/modules", tags=["Modules"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "FamHub Module Entitlements API",
        "version": "0.1.0",
        "status": "running"
    }
