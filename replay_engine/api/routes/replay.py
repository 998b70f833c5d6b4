"""Replay endpoints: transaction and block replay, fallback analysis and cost advice."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from replay_engine.core.types import (
    CostBenefitEntry,
    CostEstimate,
    FallbackResult,
    ProcessedBlockReplayData,
    ProcessedReplayData,
)
from replay_engine.ingestion.replay_client import DEFAULT_TRACERS, ReplayClient
from replay_engine.pipeline.fallback import (
    FallbackAnalysisEngine,
    get_all_methods,
    get_fallback_methods,
    get_method,
)
from replay_engine.pipeline.orchestrator import ReplayService

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────────────


class TransactionReplayRequest(BaseModel):
    """Replay one transaction with the given tracers."""

    tx_hash: str = Field(..., description="Transaction hash (0x + 64 hex)")
    tracers: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACERS))
    network: str | None = None


class BlockReplayRequest(BaseModel):
    """Replay every transaction in a block."""

    block: int | str = Field(..., description="Block number, 0x hex number or block hash")
    tracers: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACERS))
    network: str | None = None


class FallbackRequest(BaseModel):
    """Cost-constrained analysis that degrades to cheaper methods."""

    target: str = Field(..., description="Transaction hash or block identifier")
    preferred_method: str | None = None
    max_cost: str | None = Field(None, description="low, medium, high or very-high")
    tracers: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACERS))
    network: str | None = None
    use_cache: bool = True


class CostBenefitRequest(BaseModel):
    """Weights for ranking analysis methods."""

    methods: list[str] | None = None
    accuracy: float = Field(1.0, ge=0)
    speed: float = Field(1.0, ge=0)
    cost: float = Field(1.0, ge=0)


# ── Dependencies ─────────────────────────────────────────────────────────────


def get_replay_service(request: Request) -> ReplayService:
    """The process-wide service created in the app lifespan."""
    service = getattr(request.app.state, "replay_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Replay service is not initialised")
    return service


# ── Routes ───────────────────────────────────────────────────────────────────


@router.post("/transaction", response_model=ProcessedReplayData)
async def replay_transaction(
    body: TransactionReplayRequest,
    service: ReplayService = Depends(get_replay_service),
) -> ProcessedReplayData:
    """Replay a transaction and return the processed analysis."""
    return await service.analyze_transaction(body.tx_hash, body.tracers, network=body.network)


@router.post("/block", response_model=ProcessedBlockReplayData)
async def replay_block(
    body: BlockReplayRequest,
    service: ReplayService = Depends(get_replay_service),
) -> ProcessedBlockReplayData:
    """Replay every transaction of a block and summarise them."""
    return await service.analyze_block(body.block, body.tracers, network=body.network)


@router.post("/fallback", response_model=FallbackResult)
async def fallback_analysis(
    body: FallbackRequest,
    service: ReplayService = Depends(get_replay_service),
) -> FallbackResult:
    return await service.analyze_with_fallback(
        body.target,
        preferred_method=body.preferred_method,
        max_cost=body.max_cost,
        tracers=body.tracers,
        network=body.network,
        use_cache=body.use_cache,
    )


@router.get("/methods")
async def list_methods(
    primary: str | None = Query(None, description="Show the fallback chain for this method"),
    max_cost: str | None = Query(None),
    service: ReplayService = Depends(get_replay_service),
) -> dict[str, Any]:
    """The analysis method registry, or one method's fallback chain."""
    if primary is None:
        return {"methods": [m.to_dict() for m in get_all_methods()]}

    method = get_method(primary)
    return {
        "primary": method.to_dict(),
        "fallbacks": [m.to_dict() for m in get_fallback_methods(method.id)],
        "recommended": service.fallback.select_optimal_method(method.id, max_cost=max_cost).value,
    }


@router.post("/cost-benefit", response_model=list[CostBenefitEntry])
async def cost_benefit(body: CostBenefitRequest) -> list[CostBenefitEntry]:
    method_ids = body.methods or [m.id.value for m in get_all_methods()]
    return FallbackAnalysisEngine.analyze_cost_benefit(
        method_ids,
        {"accuracy": body.accuracy, "speed": body.speed, "cost": body.cost},
    )


@router.get("/estimate", response_model=CostEstimate)
async def estimate_cost(
    operation: str = Query("transaction", description="transaction or block"),
    transaction_count: int = Query(1, ge=1),
) -> CostEstimate:
    """Relative RPC cost of a replay, for confirmation prompts."""
    try:
        return ReplayClient.get_estimated_cost(operation, transaction_count)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
