"""LifeDash API — FastAPI application entry point.

Run locally:
    uvicorn lifedash.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lifedash.config import get_settings
from lifedash.middleware.supabase_auth import SupabaseAuthMiddleware
from lifedash.routers import health, terra, webhooks
from lifedash.services.supabase import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("lifedash")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting LifeDash API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    if not settings.terra_api_key:
        logger.warning("TERRA_API_KEY not set; Terra connect and sync will fail")
    await init_pool(settings)
    yield
    await close_pool()
    logger.info("LifeDash API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="LifeDash API",
        description="Personal dashboard backend — Garmin activity ingestion via Terra.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (last added is outermost) ----------

    # Supabase JWT authentication
    app.add_middleware(SupabaseAuthMiddleware, settings=settings)

    # CORS outermost: preflight is answered before auth runs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (at /health, outside the v1 prefix) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(terra.router, prefix=v1_prefix)

    return app


app = create_app()
