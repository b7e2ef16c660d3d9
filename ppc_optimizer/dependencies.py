"""
FastAPI dependencies that hand the routers the services built in the app lifespan.
"""

from fastapi import Request

from ppc_optimizer.repositories import RecommendationRepository
from ppc_optimizer.services.duplicate_detector import DuplicateDetector
from ppc_optimizer.services.forecast_model import ForecastModel
from ppc_optimizer.services.impact_simulator import ImpactSimulator
from ppc_optimizer.services.implementation_queue import ImplementationQueue
from ppc_optimizer.services.statistics_engine import StatisticsEngine


def get_statistics_engine(request: Request) -> StatisticsEngine:
    return request.app.state.statistics_engine


def get_forecast_model(request: Request) -> ForecastModel:
    return request.app.state.forecast_model


def get_impact_simulator(request: Request) -> ImpactSimulator:
    return request.app.state.impact_simulator


def get_duplicate_detector(request: Request) -> DuplicateDetector:
    return request.app.state.duplicate_detector


def get_implementation_queue(request: Request) -> ImplementationQueue:
    return request.app.state.implementation_queue


def get_recommendation_repository(request: Request) -> RecommendationRepository:
    return request.app.state.recommendations
