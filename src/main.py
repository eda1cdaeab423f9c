"""Oura Sync: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.middleware.rate_limit import RateLimitMiddleware
from src.oura.engine import build_engine
from src.oura.repository import PostgresRepository
from src.oura.scheduler import DailySyncScheduler
from src.routers import health, oauth, query, sync
from src.services.database import apply_schema, close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("oura_sync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info("Starting Oura Sync v%s [%s]", settings.app_version, settings.environment)

    pool = await init_pool(settings)
    await apply_schema(pool)
    http_client = httpx.AsyncClient(timeout=30.0)

    app.state.pool = pool
    app.state.engine = build_engine(
        settings,
        PostgresRepository(pool, reader_role=settings.sql_reader_role or None),
        http_client=http_client,
    )

    scheduler: DailySyncScheduler | None = None
    if settings.scheduled_sync_enabled:
        scheduler = DailySyncScheduler(
            app.state.engine.orchestrator,
            trailing_days=settings.scheduled_sync_days,
            interval=timedelta(hours=settings.scheduled_sync_interval_hours),
        )
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await http_client.aclose()
    await close_pool()
    logger.info("Oura Sync shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Oura Sync",
        description="Syncs Oura ring data into Postgres and exposes a read-only query surface.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (outermost first) ----------

    app.add_middleware(RateLimitMiddleware, settings=settings)

    # CORS must be innermost so it can answer preflight requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # ---------- Routes ----------
    app.include_router(health.router)
    app.include_router(oauth.router)
    app.include_router(sync.router)
    app.include_router(query.router)

    return app


app = create_app()
