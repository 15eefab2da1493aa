"""Focusbeat API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.middleware.session_auth import SessionAuthMiddleware
from src.routers import health, oura
from src.services.database import close_pool, init_pool
from src.wearables.adapters.oura import OuraClient
from src.wearables.collection_fetcher import CollectionFetcher
from src.wearables.config_loader import get_focus_config
from src.wearables.profile_learner import ProfileLearner
from src.wearables.service import BiofeedbackService
from src.wearables.stores import (
    PostgresCredentialStore,
    PostgresProfileStore,
    PostgresTelemetryLog,
)
from src.wearables.token_manager import TokenManager

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("focusbeat")


def build_components(app: FastAPI, settings: Settings, http_client: httpx.AsyncClient) -> None:
    """Wire the Oura integration and park it on ``app.state`` for the dependencies."""
    config = get_focus_config()
    client = OuraClient(
        client_id=settings.oura_client_id,
        client_secret=settings.oura_client_secret,
        redirect_uri=settings.oura_redirect_uri,
        http_client=http_client,
        timeout=config.collection.request_timeout_seconds,
    )
    tokens = TokenManager(client, PostgresCredentialStore(), config.token)
    fetcher = CollectionFetcher(client, tokens, config.collection)
    learner = ProfileLearner(PostgresProfileStore(), PostgresTelemetryLog(), config.profile)

    app.state.oura_client = client
    app.state.token_manager = tokens
    app.state.biofeedback = BiofeedbackService(tokens, fetcher, learner, config)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Focusbeat API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    missing = settings.missing_oura_settings()
    if missing:
        logger.warning("Oura integration not configured; missing %s", ", ".join(missing))

    await init_pool(settings)
    async with httpx.AsyncClient() as http_client:
        build_components(app, settings, http_client)
        yield
    await close_pool()
    logger.info("Focusbeat API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Focusbeat API",
        description="Pomodoro focus timer with Oura heart-rate biofeedback.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (order matters — outermost first) ----------

    # Session JWT authentication
    app.add_middleware(SessionAuthMiddleware, settings=settings)

    # CORS — must be the innermost middleware so it can handle preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(oura.router, prefix="/api/v1")

    return app


app = create_app()
