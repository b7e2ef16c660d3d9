"""
Analysis Router: Campaign performance analysis and CPA forecasting.
"""

from fastapi import APIRouter, Depends, Query

from ppc_optimizer.dependencies import get_forecast_model, get_statistics_engine
from ppc_optimizer.schemas import AnalysisResult, Prediction
from ppc_optimizer.services.forecast_model import ForecastModel
from ppc_optimizer.services.statistics_engine import StatisticsEngine

router = APIRouter()


@router.get("/campaigns/{campaign_id}", response_model=AnalysisResult)
async def analyze_campaign(
    campaign_id: str,
    window_days: int = Query(30),
    engine: StatisticsEngine = Depends(get_statistics_engine),
):
    """Trends, anomalies and confidence over the trailing window."""
    return await engine.analyze_performance(campaign_id, window_days)


@router.get("/campaigns/{campaign_id}/forecast", response_model=Prediction)
async def forecast_cpa(
    campaign_id: str,
    days: int = Query(14),
    model: ForecastModel = Depends(get_forecast_model),
):
    """Predicted CPA ``days`` days ahead, with its 95% interval."""
    return await model.predict_cpa(campaign_id, days)
