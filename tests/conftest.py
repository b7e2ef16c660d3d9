"""
Shared fixtures: in-memory repositories, a scriptable ads platform and
sample builders.
"""

import asyncio
from datetime import date, timedelta
from typing import Optional

import pytest

from ppc_optimizer.config import Settings
from ppc_optimizer.errors import ExternalApplyError, NotFoundError
from ppc_optimizer.schemas import (
    CampaignInfo,
    ImplementationOutcome,
    KeywordRecord,
    MetricSample,
    PlatformChange,
    PlatformSnapshot,
    Recommendation,
    RecommendationStatus,
    RecommendationType,
    RecommendationUpdate,
    SearchTermStat,
    apply_implementation_outcome,
    apply_recommendation_update,
)

TODAY = date(2024, 6, 30)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        environment="development",
        database_url="postgresql+asyncpg://localhost/test",
        apply_backoff_seconds=0.5,
        apply_max_attempts=3,
        queue_max_concurrent=3,
    )


# ── Builders ──────────────────────────────────────────────────────────

def _value(source, i):
    return source(i) if callable(source) else source


def build_samples(
    days: int,
    end: date = TODAY,
    impressions=1000,
    clicks=100,
    cost=200.0,
    conversions=10.0,
    conversion_value=500.0,
    skip: tuple = (),
) -> list[MetricSample]:
    """
    ``days`` consecutive daily samples ending on ``end``. Each metric is a
    constant or a function of the day index (0 = oldest).
    """
    start = end - timedelta(days=days - 1)
    samples = []
    for i in range(days):
        if i in skip:
            continue
        samples.append(MetricSample(
            date=start + timedelta(days=i),
            impressions=_value(impressions, i),
            clicks=_value(clicks, i),
            cost=_value(cost, i),
            conversions=_value(conversions, i),
            conversion_value=_value(conversion_value, i),
        ))
    return samples


def make_recommendation(
    rec_id: str,
    rec_type: RecommendationType = RecommendationType.BUDGET_INCREASE,
    campaign_id: str = "c1",
    proposed_change: Optional[dict] = None,
    status: RecommendationStatus = RecommendationStatus.APPROVED,
    **kwargs,
) -> Recommendation:
    if proposed_change is None:
        proposed_change = {"current_budget": 200.0, "proposed_budget": 300.0}
    return Recommendation(
        id=rec_id,
        type=rec_type,
        campaign_id=campaign_id,
        proposed_change=proposed_change,
        status=status,
        **kwargs,
    )


# ── Fakes ─────────────────────────────────────────────────────────────

class FakeMetricsRepository:
    def __init__(self):
        self.campaigns: dict[str, CampaignInfo] = {}
        self.metrics: dict[str, list[MetricSample]] = {}
        self.search_terms: dict[str, list[SearchTermStat]] = {}

    def add_campaign(
        self, campaign_id, samples=(), search_terms=None, account_id="acct-1", daily_budget=200.0, status="ENABLED",
    ):
        self.campaigns[campaign_id] = CampaignInfo(
            id=campaign_id, account_id=account_id, name=f"Campaign {campaign_id}",
            status=status, daily_budget=daily_budget,
        )
        self.metrics[campaign_id] = list(samples)
        self.search_terms[campaign_id] = list(search_terms or [])

    async def get_campaign(self, campaign_id):
        return self.campaigns.get(campaign_id)

    async def get_metrics(self, campaign_id, start, end):
        return [s for s in self.metrics.get(campaign_id, []) if start <= s.date <= end]

    async def get_search_terms(self, campaign_id, start, end):
        return list(self.search_terms.get(campaign_id, []))


class FakeKeywordRepository:
    def __init__(self, accounts: Optional[dict[str, list[KeywordRecord]]] = None):
        self.accounts = accounts or {}

    async def account_exists(self, account_id):
        return account_id in self.accounts

    async def list_keywords(self, account_id):
        return list(self.accounts.get(account_id, []))


class FakeRecommendationRepository:
    def __init__(self, recommendations=()):
        self.items: dict[str, Recommendation] = {r.id: r for r in recommendations}

    def add(self, *recommendations):
        for rec in recommendations:
            self.items[rec.id] = rec

    async def get(self, recommendation_id):
        return self.items.get(recommendation_id)

    async def list_recommendations(self, campaign_id=None, statuses=None):
        return [
            r for r in self.items.values()
            if (campaign_id is None or r.campaign_id == campaign_id)
            and (not statuses or r.status in statuses)
        ]

    async def update(self, recommendation_id, update: RecommendationUpdate):
        current = self.items.get(recommendation_id)
        if current is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")
        updated = apply_recommendation_update(current, update)
        self.items[recommendation_id] = updated
        return updated

    async def record_outcome(self, recommendation_id, outcome: ImplementationOutcome):
        current = self.items.get(recommendation_id)
        if current is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")
        updated = apply_implementation_outcome(current, outcome)
        self.items[recommendation_id] = updated
        return updated


class FakePlatform:
    """
    Records every apply. ``failures`` maps an entity id to the exceptions
    raised by its next applies, in order.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.applied: list[PlatformChange] = []
        self.rolled_back: list[PlatformSnapshot] = []
        self.failures: dict[str, list[Exception]] = {}
        self.rollback_result = True
        self.rollback_error: Optional[Exception] = None
        self.in_flight = 0
        self.peak = 0

    async def apply(self, change: PlatformChange) -> PlatformSnapshot:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self.failures.get(change.entity_id)
            if pending:
                raise pending.pop(0)
            self.applied.append(change)
            return PlatformSnapshot(
                operation=change.operation,
                entity_type=change.entity_type,
                entity_id=change.entity_id,
                campaign_id=change.campaign_id,
                previous={"daily_budget": 200.0},
            )
        finally:
            self.in_flight -= 1

    async def rollback(self, snapshot: PlatformSnapshot) -> bool:
        if self.rollback_error is not None:
            raise self.rollback_error
        if self.rollback_result:
            self.rolled_back.append(snapshot)
        return self.rollback_result


def transient(message="throttled"):
    return ExternalApplyError(message, transient=True)


def permanent(message="invalid campaign"):
    return ExternalApplyError(message, transient=False)


@pytest.fixture
def metrics_repo():
    return FakeMetricsRepository()


@pytest.fixture
def recommendation_repo():
    return FakeRecommendationRepository()


@pytest.fixture
def platform():
    return FakePlatform()
