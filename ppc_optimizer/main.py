"""
PPC Optimizer: FastAPI Backend
Statistical analysis, CPA forecasting, impact simulation, duplicate keyword
detection and a guarded implementation queue for ad campaign recommendations.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ppc_optimizer.auth import get_current_user_id
from ppc_optimizer.config import get_settings
from ppc_optimizer.database import async_session, check_db_connection, init_db
from ppc_optimizer.errors import OptimizerError
from ppc_optimizer.platform_client import create_platform
from ppc_optimizer.repositories import (
    SqlKeywordRepository,
    SqlMetricsRepository,
    SqlRecommendationRepository,
)
from ppc_optimizer.routers import analysis, impact, keywords, recommendations
from ppc_optimizer.services.duplicate_detector import DuplicateDetector
from ppc_optimizer.services.forecast_model import ForecastModel
from ppc_optimizer.services.impact_simulator import ImpactSimulator
from ppc_optimizer.services.implementation_queue import ImplementationQueue
from ppc_optimizer.services.statistics_engine import StatisticsEngine
from ppc_optimizer.utils import safe_error_detail

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


def build_services(app: FastAPI, metrics, keyword_repo, recommendation_repo, platform):
    """Wire the services onto app.state. Tests call this with in-memory repositories."""
    engine = StatisticsEngine(metrics, settings)
    forecast = ForecastModel(engine, settings)
    app.state.statistics_engine = engine
    app.state.forecast_model = forecast
    app.state.impact_simulator = ImpactSimulator(engine, forecast, settings)
    app.state.duplicate_detector = DuplicateDetector(keyword_repo)
    app.state.recommendations = recommendation_repo
    app.state.implementation_queue = ImplementationQueue(
        recommendation_repo, platform, settings, campaigns=metrics
    )
    return app.state.implementation_queue


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting PPC Optimizer...")
    try:
        await init_db()
        logger.info("Database initialized; all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still serve /api/health (degraded)

    queue = build_services(
        app,
        SqlMetricsRepository(async_session),
        SqlKeywordRepository(async_session),
        SqlRecommendationRepository(async_session),
        create_platform(settings),
    )
    await queue.start()
    yield
    logger.info("Shutting down...")
    await queue.stop()


app = FastAPI(
    title="PPC Optimizer",
    description="Statistical optimization of pay-per-click campaigns",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OptimizerError)
async def optimizer_error_handler(request: Request, exc: OptimizerError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": safe_error_detail(exc), "details": {}},
    )


# ── Register Routers ──────────────────────────────────────────────────
_auth = [Depends(get_current_user_id)]
app.include_router(analysis.router, prefix="/api/analysis", tags=["Analysis"], dependencies=_auth)
app.include_router(impact.router, prefix="/api/impact", tags=["Impact Simulation"], dependencies=_auth)
app.include_router(keywords.router, prefix="/api/accounts", tags=["Duplicate Keywords"], dependencies=_auth)
app.include_router(
    recommendations.router, prefix="/api/recommendations", tags=["Recommendations"], dependencies=_auth
)


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "PPC Optimizer",
        "database": "connected" if db_ok else "disconnected",
    }
