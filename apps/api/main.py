"""
ValutAI Credits - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    accounts,
    credits,
    payments,
    admin,
)
from routers.errors import register_exception_handlers
from services.pricing import CreditPackageCatalog, OperationCostCatalog

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


async def _seed_credit_catalog() -> None:
    async with async_session_maker() as db:
        operations_added = await OperationCostCatalog(db).initialize_defaults()
        packages_added = await CreditPackageCatalog(db).initialize_defaults()
        validation = await OperationCostCatalog(db).validate()
    if operations_added or packages_added:
        print(f"💳 Credit catalog seeded: operations={operations_added} packages={packages_added}")
    if not validation["valid"]:
        print(f"⚠️ Operation catalog incomplete: missing {', '.join(validation['missing_operations'])}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting ValutAI Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.AUTO_SEED_CREDIT_CATALOG:
        try:
            await _seed_credit_catalog()
        except Exception as exc:
            print(f"⚠️ Credit catalog seeding skipped: {exc}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="ValutAI Credits API",
    description="Prepaid credits ledger, welcome bonus and Stripe top-ups for ValutAI",
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

register_exception_handlers(app)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "ValutAI Credits API",
        "version": "0.1.0",
        "status": "running"
    }
