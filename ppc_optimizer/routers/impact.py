"""
Impact Router: Single-recommendation estimates and combined simulations.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ppc_optimizer.dependencies import (
    get_impact_simulator,
    get_recommendation_repository,
    get_statistics_engine,
)
from ppc_optimizer.errors import NotFoundError, ValidationError
from ppc_optimizer.repositories import RecommendationRepository
from ppc_optimizer.schemas import ImpactProjection, SimulationResult, SimulationScenario
from ppc_optimizer.services.impact_simulator import ImpactSimulator
from ppc_optimizer.services.statistics_engine import StatisticsEngine

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class SimulateRequest(BaseModel):
    campaign_id: str
    recommendation_ids: list[str] = Field(min_length=1)
    scenario: Optional[SimulationScenario] = None


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/estimate/{recommendation_id}", response_model=ImpactProjection)
async def estimate_impact(
    recommendation_id: str,
    window_days: int = Query(30),
    horizon_days: int = Query(30),
    recommendations: RecommendationRepository = Depends(get_recommendation_repository),
    engine: StatisticsEngine = Depends(get_statistics_engine),
    simulator: ImpactSimulator = Depends(get_impact_simulator),
):
    if horizon_days < 1:
        raise ValidationError("horizon_days must be at least 1")
    rec = await recommendations.get(recommendation_id)
    if rec is None:
        raise NotFoundError(f"Recommendation {recommendation_id} not found")
    analysis = await engine.analyze_performance(rec.campaign_id, window_days)
    return simulator.estimate_impact(rec, analysis, horizon_days)


@router.post("/simulate", response_model=SimulationResult)
async def simulate_impact(
    req: SimulateRequest,
    recommendations: RecommendationRepository = Depends(get_recommendation_repository),
    simulator: ImpactSimulator = Depends(get_impact_simulator),
):
    """Combined effect of several recommendations, applied in impact order."""
    recs = []
    for rec_id in req.recommendation_ids:
        rec = await recommendations.get(rec_id)
        if rec is None:
            raise NotFoundError(f"Recommendation {rec_id} not found")
        recs.append(rec)
    return await simulator.simulate_impact(req.campaign_id, recs, req.scenario)
