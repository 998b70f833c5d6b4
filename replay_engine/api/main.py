"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from replay_engine.api.errors import register_error_handlers
from replay_engine.api.middleware.request import RequestIDMiddleware, RequestSizeLimitMiddleware
from replay_engine.api.routes import health, replay
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.logging import setup_logging
from replay_engine.pipeline.orchestrator import ReplayService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup and shutdown events."""
    settings: Settings = app.state.settings
    setup_logging(
        env=settings.app_env,
        log_level="DEBUG" if settings.debug else settings.log_level,
        fmt=settings.log_format,
    )

    owns_service = getattr(app.state, "replay_service", None) is None
    if owns_service:
        app.state.replay_service = ReplayService.from_settings(settings)

    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)
    yield
    logger.info("Shutting down %s", settings.app_name)
    if owns_service:
        await app.state.replay_service.close()
        app.state.replay_service = None


def create_app(settings: Settings | None = None, service: ReplayService | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Replay Analysis API",
        description=(
            "Transaction and block replay analysis: call hierarchies, state diffs, "
            "opcode gas profiles, security flags and cost-aware fallback analysis."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/api/docs",
        redoc_url=None if settings.app_env == "production" else "/api/redoc",
        openapi_url=None if settings.app_env == "production" else "/api/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Liveness probe"},
            {"name": "replay", "description": "Replay analysis and fallback method selection"},
        ],
    )
    app.state.settings = settings
    app.state.replay_service = service

    # ── CORS (configurable origins) ──────────────────────────────────
    allowed_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "Accept"],
        expose_headers=["X-Request-ID"],
    )

    # ── Middleware (the last one added runs outermost) ───────────────
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Access logging middleware ────────────────────────────────────
    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            extra={"method": request.method, "path": request.url.path,
                   "status_code": response.status_code, "duration_ms": round(elapsed, 1),
                   "request_id": getattr(request.state, "request_id", None)},
        )
        return response

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(health.router, tags=["health"])
    app.include_router(replay.router, prefix="/api/v1/replay", tags=["replay"])

    # ── Structured error handlers ──────────────────────────────────
    register_error_handlers(app)

    return app


app = create_app()
