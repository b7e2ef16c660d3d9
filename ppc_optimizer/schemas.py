"""
PPC Optimizer: domain models.
Immutable value objects passed between the analytics services, plus the
mutable queue bookkeeping owned by the implementation queue.
"""

import enum
import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ppc_optimizer.errors import ValidationError
from ppc_optimizer.utils import utcnow


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class RecommendationType(str, enum.Enum):
    BUDGET_INCREASE = "BUDGET_INCREASE"
    BUDGET_DECREASE = "BUDGET_DECREASE"
    BID_ADJUSTMENT = "BID_ADJUSTMENT"
    NEGATIVE_KEYWORD = "NEGATIVE_KEYWORD"
    PAUSE_KEYWORD = "PAUSE_KEYWORD"
    MATCH_TYPE_CHANGE = "MATCH_TYPE_CHANGE"
    PAUSE_CAMPAIGN = "PAUSE_CAMPAIGN"
    BIDDING_STRATEGY_CHANGE = "BIDDING_STRATEGY_CHANGE"


class RecommendationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    IMPLEMENTED = "IMPLEMENTED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class Priority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class QueueState(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


TERMINAL_QUEUE_STATES = frozenset({
    QueueState.SUCCEEDED,
    QueueState.FAILED,
    QueueState.ROLLED_BACK,
    QueueState.ROLLBACK_FAILED,
})


class MatchType(str, enum.Enum):
    BROAD = "BROAD"
    PHRASE = "PHRASE"
    EXACT = "EXACT"


class TrendClassification(str, enum.Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class ModelUsed(str, enum.Enum):
    REGRESSION = "regression"
    FALLBACK = "fallback"


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATION STATUS TRANSITIONS
# ══════════════════════════════════════════════════════════════════════

ALLOWED_STATUS_TRANSITIONS: dict[RecommendationStatus, frozenset] = {
    RecommendationStatus.PENDING: frozenset({
        RecommendationStatus.APPROVED,
        RecommendationStatus.REJECTED,
        RecommendationStatus.EXPIRED,
    }),
    RecommendationStatus.APPROVED: frozenset({
        RecommendationStatus.IMPLEMENTED,
        RecommendationStatus.FAILED,
        RecommendationStatus.REJECTED,
    }),
    RecommendationStatus.FAILED: frozenset({RecommendationStatus.APPROVED}),
    RecommendationStatus.IMPLEMENTED: frozenset({RecommendationStatus.ROLLED_BACK}),
    RecommendationStatus.ROLLED_BACK: frozenset({RecommendationStatus.APPROVED}),
    RecommendationStatus.REJECTED: frozenset(),
    RecommendationStatus.EXPIRED: frozenset(),
}

ACTIONABLE_STATUSES = frozenset({RecommendationStatus.APPROVED})


def check_status_transition(current: RecommendationStatus, new: RecommendationStatus) -> None:
    """Raise ValidationError unless current -> new is an allowed move."""
    if new not in ALLOWED_STATUS_TRANSITIONS[current]:
        raise ValidationError(
            f"Recommendation status cannot move from {current.value} to {new.value}",
            details={"from": current.value, "to": new.value},
        )


# ══════════════════════════════════════════════════════════════════════
#  INPUT RECORDS (read from the persistence capability)
# ══════════════════════════════════════════════════════════════════════

class MetricSample(BaseModel):
    """One day of delivery for one campaign."""
    model_config = ConfigDict(frozen=True)

    date: date
    impressions: int = Field(ge=0)
    clicks: int = Field(ge=0)
    cost: float = Field(ge=0)
    conversions: float = Field(ge=0)
    conversion_value: float = Field(ge=0)


class PerformanceWindow(BaseModel):
    """The samples of one campaign between two dates, ordered and unique by date."""
    model_config = ConfigDict(frozen=True)

    campaign_id: str
    start: date
    end: date
    samples: list[MetricSample]

    @property
    def sample_count(self) -> int:
        return len(self.samples)


class SearchTermStat(BaseModel):
    """Search-term totals over an analysis window."""
    model_config = ConfigDict(frozen=True)

    term: str
    clicks: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)
    conversions: float = Field(default=0.0, ge=0)
    conversion_value: float = Field(default=0.0, ge=0)


class KeywordRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    campaign_id: str
    text: str
    match_type: Optional[MatchType] = None
    status: str = "ENABLED"
    campaign_name: Optional[str] = None
    cost: float = Field(default=0.0, ge=0)
    clicks: int = Field(default=0, ge=0)
    conversions: float = Field(default=0.0, ge=0)

    @property
    def cpa(self) -> Optional[float]:
        return self.cost / self.conversions if self.conversions > 0 else None


class CampaignInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    name: str
    status: str = "ENABLED"
    daily_budget: Optional[float] = None


class PlatformChange(BaseModel):
    """One concrete call against the advertising platform."""
    model_config = ConfigDict(frozen=True)

    operation: str
    entity_type: str  # campaign, keyword
    entity_id: str
    campaign_id: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class PlatformSnapshot(BaseModel):
    """Entity state captured by the platform immediately before a change."""
    model_config = ConfigDict(frozen=True)

    operation: str
    entity_type: str
    entity_id: str
    campaign_id: str
    previous: dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=utcnow)


class Recommendation(BaseModel):
    """
    Recommendation record as stored by the persistence layer.
    Reviewers write status, priority and estimated_impact (RecommendationUpdate);
    the implementation queue writes the apply outcome (ImplementationOutcome).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: RecommendationType
    campaign_id: str
    proposed_change: dict[str, Any] = Field(default_factory=dict)
    status: RecommendationStatus = RecommendationStatus.PENDING
    priority: Priority = Priority.MEDIUM
    estimated_impact: Optional[float] = None
    confidence: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    valid_until: Optional[datetime] = None

    implemented_at: Optional[datetime] = None
    implemented_by: Optional[str] = None
    rollback_snapshot: Optional[PlatformSnapshot] = None
    apply_attempts: int = 0
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.valid_until is not None and (now or utcnow()) > self.valid_until


class RecommendationUpdate(BaseModel):
    """
    Tagged update for a recommendation. Only status, priority and
    estimated_impact may be written; anything else is rejected.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    status: Optional[RecommendationStatus] = None
    priority: Optional[Priority] = None
    estimated_impact: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _require_a_field(self) -> "RecommendationUpdate":
        if self.status is None and self.priority is None and self.estimated_impact is None:
            raise ValueError("Update must set at least one of: status, priority, estimated_impact")
        return self

    @classmethod
    def parse(cls, payload: Any) -> "RecommendationUpdate":
        """Build an update from untrusted input, raising the domain ValidationError."""
        if not isinstance(payload, dict):
            raise ValidationError("Recommendation update must be an object")
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid recommendation update",
                details={"errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ]},
            )


# ══════════════════════════════════════════════════════════════════════
#  ANALYSIS
# ══════════════════════════════════════════════════════════════════════

class DailyMetrics(BaseModel):
    """A sample with its derived rates. A rate with a zero denominator is None."""
    model_config = ConfigDict(frozen=True)

    date: date
    impressions: int
    clicks: int
    cost: float
    conversions: float
    conversion_value: float
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    cpa: Optional[float] = None
    roas: Optional[float] = None


class TrendStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric: str
    slope: float
    intercept: float
    r_squared: float
    p_value: float
    points: int
    direction: str  # up, down, flat
    classification: TrendClassification


class AnomalyFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    metric: str
    value: float
    z_score: float
    severity: str  # medium (|z| > 2), high (|z| > 3)


class MetricSummary(BaseModel):
    """Mean and 95% confidence interval of a daily metric."""
    model_config = ConfigDict(frozen=True)

    metric: str
    n: int
    mean: float
    std: float
    standard_error: float
    lower: float
    upper: float


class SignificanceTest(BaseModel):
    """Welch t-test of the recent half of the window against the earlier half."""
    model_config = ConfigDict(frozen=True)

    metric: str
    earlier_mean: float
    recent_mean: float
    change_pct: Optional[float]
    t_statistic: float
    p_value: float
    is_significant: bool


class DataQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    sample_count: int
    expected_days: int
    missing_days: int
    completeness: float


class MetricAggregates(BaseModel):
    model_config = ConfigDict(frozen=True)

    impressions: int
    clicks: int
    cost: float
    conversions: float
    conversion_value: float
    ctr: Optional[float]
    cpc: Optional[float]
    cpa: Optional[float]
    roas: Optional[float]
    avg_daily_cost: float
    avg_daily_conversions: float
    max_daily_cost: float


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    campaign_id: str
    window_start: date
    window_end: date
    aggregates: MetricAggregates
    daily: list[DailyMetrics]
    trends: dict[str, TrendStat]
    anomalies: list[AnomalyFlag]
    anomaly_dates: list[date]
    summaries: dict[str, MetricSummary]
    significance_tests: list[SignificanceTest]
    data_quality: DataQuality
    bid_elasticity: float
    bid_elasticity_fitted: bool
    search_terms: list[SearchTermStat] = Field(default_factory=list)
    confidence: float
    health: str  # excellent, good, fair, poor
    key_findings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def sample_count(self) -> int:
        return self.data_quality.sample_count


# ══════════════════════════════════════════════════════════════════════
#  FORECAST
# ══════════════════════════════════════════════════════════════════════

class ConfidenceInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    lower: float
    upper: float
    level: float = 0.95

    @property
    def width(self) -> float:
        return self.upper - self.lower


class Prediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    campaign_id: str
    horizon_days: int
    point_estimate: float
    confidence_interval: ConfidenceInterval
    model_used: ModelUsed
    interval_flagged: bool = False
    fallback_reason: Optional[str] = None
    sample_count: int
    r_squared: Optional[float] = None
    slope: Optional[float] = None
    last_observed: Optional[float] = None
    trend: TrendClassification = TrendClassification.STABLE


# ══════════════════════════════════════════════════════════════════════
#  IMPACT
# ══════════════════════════════════════════════════════════════════════

class CampaignBaseline(BaseModel):
    """Average daily delivery of one campaign; the state the effect models act on."""
    model_config = ConfigDict(frozen=True)

    impressions: float = 0.0
    clicks: float = 0.0
    cost: float = 0.0
    conversions: float = 0.0
    conversion_value: float = 0.0

    @computed_field
    @property
    def cpa(self) -> Optional[float]:
        return self.cost / self.conversions if self.conversions > 0 else None

    @computed_field
    @property
    def roas(self) -> Optional[float]:
        return self.conversion_value / self.cost if self.cost > 0 else None

    @computed_field
    @property
    def cpc(self) -> Optional[float]:
        return self.cost / self.clicks if self.clicks > 0 else None


class ImpactProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendation_id: str
    campaign_id: str
    type: RecommendationType
    baseline: CampaignBaseline
    projected: CampaignBaseline
    cost_delta: float
    conversions_delta: float
    cpa_delta: Optional[float]
    roas_delta: Optional[float]
    impact_score: float
    confidence: float
    horizon_days: int
    projected_period_cost_delta: float
    projected_period_conversions_delta: float
    notes: list[str] = Field(default_factory=list)


class SimulationScenario(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    window_days: int = Field(default=30, ge=1)
    horizon_days: int = Field(default=30, ge=1)
    override_conflicts: bool = False


class AggregateProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    baseline: CampaignBaseline
    projected: CampaignBaseline
    cost_delta: float
    conversions_delta: float
    cpa_delta: Optional[float]
    roas_delta: Optional[float]
    projected_period_cost_delta: float
    projected_period_conversions_delta: float


class SimulationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    campaign_id: str
    scenario: SimulationScenario
    applied_order: list[str]
    steps: list[ImpactProjection]
    aggregate: AggregateProjection
    confidence: float
    conflicts_overridden: list[tuple[str, str]] = Field(default_factory=list)
    cpa_forecasts: dict[str, Prediction] = Field(default_factory=dict)


# ══════════════════════════════════════════════════════════════════════
#  DUPLICATES
# ══════════════════════════════════════════════════════════════════════

class DuplicateGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    normalized_text: str
    match_types: list[MatchType]
    campaign_ids: list[str]
    instances: list[KeywordRecord]
    total_cost: float
    total_conversions: float
    severity: str  # high, medium, low
    recommendation: str

    @property
    def instance_count(self) -> int:
        return len(self.instances)

    @property
    def average_cost(self) -> float:
        return self.total_cost / len(self.instances) if self.instances else 0.0

    @property
    def is_cross_campaign(self) -> bool:
        return len(self.campaign_ids) > 1

    @property
    def has_match_type_conflict(self) -> bool:
        return len(self.match_types) > 1


# ══════════════════════════════════════════════════════════════════════
#  IMPLEMENTATION QUEUE
# ══════════════════════════════════════════════════════════════════════

class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: f"queue_{uuid.uuid4().hex[:12]}")
    recommendation_id: str
    priority: Priority
    sequence: int
    state: QueueState = QueueState.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    pre_change_snapshot: Optional[PlatformSnapshot] = None
    enqueued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_QUEUE_STATES


class ImplementationResult(BaseModel):
    queue_item_id: str
    recommendation_id: str
    success: bool
    state: QueueState
    message: str
    error_code: Optional[str] = None
    attempts: int = 0
    preview: Optional[PlatformChange] = None
    snapshot: Optional[PlatformSnapshot] = None


def apply_recommendation_update(current: Recommendation, update: RecommendationUpdate) -> Recommendation:
    """
    Return ``current`` with the update applied. Status changes must follow
    ALLOWED_STATUS_TRANSITIONS; re-writing the same status is a no-op.
    """
    changes = {}
    if update.status is not None and update.status != current.status:
        check_status_transition(current.status, update.status)
        changes["status"] = update.status
    if update.priority is not None:
        changes["priority"] = update.priority
    if update.estimated_impact is not None:
        changes["estimated_impact"] = update.estimated_impact
    return current.model_copy(update=changes)


class ImplementationOutcome(BaseModel):
    """
    What the implementation queue writes back after an apply or rollback.
    ``status`` is the recommendation's new status (None leaves it as is).
    A snapshot is stored on success; a rolled-back recommendation loses it.
    """
    model_config = ConfigDict(frozen=True)

    state: QueueState
    status: Optional[RecommendationStatus] = None
    user_id: Optional[str] = None
    attempts: int = 0
    snapshot: Optional[PlatformSnapshot] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


def apply_implementation_outcome(current: Recommendation, outcome: ImplementationOutcome) -> Recommendation:
    changes: dict[str, Any] = {
        "apply_attempts": outcome.attempts or current.apply_attempts,
        "last_error": outcome.error,
        "last_error_code": outcome.error_code,
    }
    if outcome.status is not None and outcome.status != current.status:
        check_status_transition(current.status, outcome.status)
        changes["status"] = outcome.status
    if outcome.state == QueueState.SUCCEEDED:
        changes["implemented_at"] = outcome.recorded_at
        changes["implemented_by"] = outcome.user_id
        changes["rollback_snapshot"] = outcome.snapshot
    elif outcome.state == QueueState.ROLLED_BACK:
        changes["rollback_snapshot"] = None
    return current.model_copy(update=changes)
