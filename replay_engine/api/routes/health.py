"""Health check endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from replay_engine.core.config import get_settings
from replay_engine.core.networks import NETWORKS

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe with cache statistics."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    service = getattr(request.app.state, "replay_service", None)
    cache_stats = None
    if service is not None and service.cache is not None:
        cache_stats = await service.cache.stats()

    return {
        "status": "healthy",
        "service": "replay-engine",
        "default_network": settings.default_network,
        "networks": list(NETWORKS),
        "cache": cache_stats,
    }
