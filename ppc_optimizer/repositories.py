"""
Persistence capabilities used by the services, and their SQLAlchemy implementations.
Each repository call opens its own session from the session factory.
"""

import logging
from datetime import date
from typing import Iterable, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ppc_optimizer.database import transaction
from ppc_optimizer.errors import NotFoundError
from ppc_optimizer.schemas import (
    CampaignInfo,
    ImplementationOutcome,
    KeywordRecord,
    MatchType,
    MetricSample,
    PlatformSnapshot,
    Priority,
    Recommendation,
    RecommendationStatus,
    RecommendationType,
    RecommendationUpdate,
    SearchTermStat,
    apply_implementation_outcome,
    apply_recommendation_update,
)

logger = logging.getLogger(__name__)


# ── Capabilities ─────────────────────────────────────────────────────

class MetricsRepository(Protocol):
    async def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]: ...

    async def get_metrics(self, campaign_id: str, start: date, end: date) -> list[MetricSample]: ...

    async def get_search_terms(self, campaign_id: str, start: date, end: date) -> list[SearchTermStat]: ...


class KeywordRepository(Protocol):
    async def account_exists(self, account_id: str) -> bool: ...

    async def list_keywords(self, account_id: str) -> list[KeywordRecord]: ...


class RecommendationRepository(Protocol):
    async def get(self, recommendation_id: str) -> Optional[Recommendation]: ...

    async def list_recommendations(
        self,
        campaign_id: Optional[str] = None,
        statuses: Optional[Iterable[RecommendationStatus]] = None,
    ) -> list[Recommendation]: ...

    async def update(self, recommendation_id: str, update: RecommendationUpdate) -> Recommendation:
        """Apply the update; NotFoundError if missing, ValidationError on a disallowed transition."""
        ...

    async def record_outcome(self, recommendation_id: str, outcome: ImplementationOutcome) -> Recommendation:
        """Persist an apply or rollback outcome (who, when, snapshot, attempts, last error)."""
        ...


# ── SQLAlchemy Implementations ───────────────────────────────────────

def _to_recommendation(row) -> Recommendation:
    return Recommendation(
        id=row.id,
        type=RecommendationType(row.type),
        campaign_id=row.campaign_id,
        proposed_change=row.proposed_change or {},
        status=RecommendationStatus(row.status),
        priority=Priority(row.priority),
        estimated_impact=row.estimated_impact,
        confidence=row.confidence,
        created_at=row.created_at,
        valid_until=row.valid_until,
        implemented_at=row.implemented_at,
        implemented_by=row.implemented_by,
        rollback_snapshot=PlatformSnapshot.model_validate(row.rollback_snapshot) if row.rollback_snapshot else None,
        apply_attempts=row.apply_attempts or 0,
        last_error=row.last_error,
        last_error_code=row.last_error_code,
    )


def _to_keyword(row, campaign_name: Optional[str] = None) -> KeywordRecord:
    match_type = None
    if row.match_type:
        try:
            match_type = MatchType(row.match_type.upper())
        except ValueError:
            logger.warning(f"Keyword {row.id} has unknown match type {row.match_type!r}")
    return KeywordRecord(
        id=row.id,
        campaign_id=row.campaign_id,
        text=row.text,
        match_type=match_type,
        status=row.status or "ENABLED",
        campaign_name=campaign_name,
        cost=row.cost or 0.0,
        clicks=row.clicks or 0,
        conversions=row.conversions or 0.0,
    )


class SqlMetricsRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignInfo]:
        from ppc_optimizer.models import Campaign

        async with self.session_factory() as session:
            row = await session.get(Campaign, campaign_id)
            if row is None:
                return None
            return CampaignInfo(
                id=row.id,
                account_id=row.account_id,
                name=row.name,
                status=row.status,
                daily_budget=row.daily_budget,
            )

    async def get_metrics(self, campaign_id: str, start: date, end: date) -> list[MetricSample]:
        from ppc_optimizer.models import CampaignMetric

        async with self.session_factory() as session:
            result = await session.execute(
                select(CampaignMetric)
                .where(
                    CampaignMetric.campaign_id == campaign_id,
                    CampaignMetric.date >= start,
                    CampaignMetric.date <= end,
                )
                .order_by(CampaignMetric.date)
            )
            return [
                MetricSample(
                    date=row.date,
                    impressions=row.impressions or 0,
                    clicks=row.clicks or 0,
                    cost=row.cost or 0.0,
                    conversions=row.conversions or 0.0,
                    conversion_value=row.conversion_value or 0.0,
                )
                for row in result.scalars().all()
            ]

    async def get_search_terms(self, campaign_id: str, start: date, end: date) -> list[SearchTermStat]:
        from ppc_optimizer.models import SearchTermPerformance as STP

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    STP.search_term,
                    func.coalesce(func.sum(STP.clicks), 0),
                    func.coalesce(func.sum(STP.cost), 0.0),
                    func.coalesce(func.sum(STP.conversions), 0.0),
                    func.coalesce(func.sum(STP.conversion_value), 0.0),
                )
                .where(STP.campaign_id == campaign_id, STP.date >= start, STP.date <= end)
                .group_by(STP.search_term)
                .order_by(STP.search_term)
            )
            return [
                SearchTermStat(
                    term=term,
                    clicks=int(clicks),
                    cost=float(cost),
                    conversions=float(conversions),
                    conversion_value=float(value),
                )
                for term, clicks, cost, conversions, value in result.all()
            ]


class SqlKeywordRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def account_exists(self, account_id: str) -> bool:
        from ppc_optimizer.models import Campaign

        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Campaign).where(Campaign.account_id == account_id)
            )
            return (result.scalar() or 0) > 0

    async def list_keywords(self, account_id: str) -> list[KeywordRecord]:
        from ppc_optimizer.models import Campaign, Keyword

        async with self.session_factory() as session:
            result = await session.execute(
                select(Keyword, Campaign.name)
                .join(Campaign, Keyword.campaign_id == Campaign.id)
                .where(Campaign.account_id == account_id)
                .order_by(Keyword.campaign_id, Keyword.id)
            )
            return [_to_keyword(row, campaign_name) for row, campaign_name in result.all()]


class SqlRecommendationRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, recommendation_id: str) -> Optional[Recommendation]:
        from ppc_optimizer.models import Recommendation as RecommendationRow

        async with self.session_factory() as session:
            row = await session.get(RecommendationRow, recommendation_id)
            return _to_recommendation(row) if row else None

    async def list_recommendations(
        self,
        campaign_id: Optional[str] = None,
        statuses: Optional[Iterable[RecommendationStatus]] = None,
    ) -> list[Recommendation]:
        from ppc_optimizer.models import Recommendation as RecommendationRow

        query = select(RecommendationRow).order_by(RecommendationRow.created_at, RecommendationRow.id)
        if campaign_id:
            query = query.where(RecommendationRow.campaign_id == campaign_id)
        if statuses is not None:
            query = query.where(RecommendationRow.status.in_([s.value for s in statuses]))

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_recommendation(row) for row in result.scalars().all()]

    async def update(self, recommendation_id: str, update: RecommendationUpdate) -> Recommendation:
        from ppc_optimizer.models import Recommendation as RecommendationRow

        async with transaction(self.session_factory) as session:
            row = await session.get(RecommendationRow, recommendation_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Recommendation {recommendation_id} not found")
            updated = apply_recommendation_update(_to_recommendation(row), update)
            row.status = updated.status.value
            row.priority = updated.priority.value
            row.estimated_impact = updated.estimated_impact
        logger.info(f"Recommendation {recommendation_id} updated: {update.model_dump(exclude_none=True)}")
        return updated

    async def record_outcome(self, recommendation_id: str, outcome: ImplementationOutcome) -> Recommendation:
        from ppc_optimizer.models import Recommendation as RecommendationRow

        async with transaction(self.session_factory) as session:
            row = await session.get(RecommendationRow, recommendation_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Recommendation {recommendation_id} not found")
            updated = apply_implementation_outcome(_to_recommendation(row), outcome)
            row.status = updated.status.value
            row.implemented_at = updated.implemented_at
            row.implemented_by = updated.implemented_by
            row.rollback_snapshot = (
                updated.rollback_snapshot.model_dump(mode="json") if updated.rollback_snapshot else None
            )
            row.apply_attempts = updated.apply_attempts
            row.last_error = updated.last_error
            row.last_error_code = updated.last_error_code
        logger.info(f"Recommendation {recommendation_id} outcome recorded: {outcome.state.value}")
        return updated
