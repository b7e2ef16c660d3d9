"""
Proposed changes: per-type validation of a recommendation's ``proposed_change``,
translation into a concrete platform call, and lever bookkeeping for conflict
detection between recommendations.
"""

from itertools import combinations
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ppc_optimizer.errors import ValidationError
from ppc_optimizer.schemas import (
    MatchType,
    PlatformChange,
    Recommendation,
    RecommendationType,
)


# ── Change Models ────────────────────────────────────────────────────

class _Change(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class BudgetChange(_Change):
    current_budget: float = Field(ge=0)
    proposed_budget: float = Field(ge=0)

    @property
    def delta(self) -> float:
        return self.proposed_budget - self.current_budget


class BidAdjustmentChange(_Change):
    """Percentage is in whole percent: 20 raises bids by 20%, -15 lowers them by 15%."""
    percentage: float = Field(gt=-100, le=500)
    keyword_id: Optional[str] = None

    @model_validator(mode="after")
    def _non_zero(self) -> "BidAdjustmentChange":
        if self.percentage == 0:
            raise ValueError("percentage must be non-zero")
        return self

    @property
    def fraction(self) -> float:
        return self.percentage / 100.0


class NegativeKeywordChange(_Change):
    keywords: list[str] = Field(min_length=1)
    match_type: MatchType = MatchType.PHRASE


class KeywordTotals(_Change):
    """Keyword delivery totals over the analysis window."""
    keyword_id: str
    keyword_text: Optional[str] = None
    impressions: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)
    conversions: float = Field(default=0.0, ge=0)
    conversion_value: float = Field(default=0.0, ge=0)


class PauseKeywordChange(KeywordTotals):
    reason: Optional[str] = None


class MatchTypeChange(KeywordTotals):
    keyword_text: str
    current_match_type: MatchType
    new_match_type: MatchType

    @model_validator(mode="after")
    def _must_differ(self) -> "MatchTypeChange":
        if self.current_match_type == self.new_match_type:
            raise ValueError("new_match_type must differ from current_match_type")
        return self


class PauseCampaignChange(_Change):
    reason: Optional[str] = None


class BiddingStrategyChange(_Change):
    strategy: str = Field(min_length=1)
    target_cpa: Optional[float] = Field(default=None, gt=0)
    target_roas: Optional[float] = Field(default=None, gt=0)


ProposedChange = Union[
    BudgetChange,
    BidAdjustmentChange,
    NegativeKeywordChange,
    PauseKeywordChange,
    MatchTypeChange,
    PauseCampaignChange,
    BiddingStrategyChange,
]

_CHANGE_MODELS: dict[RecommendationType, type] = {
    RecommendationType.BUDGET_INCREASE: BudgetChange,
    RecommendationType.BUDGET_DECREASE: BudgetChange,
    RecommendationType.BID_ADJUSTMENT: BidAdjustmentChange,
    RecommendationType.NEGATIVE_KEYWORD: NegativeKeywordChange,
    RecommendationType.PAUSE_KEYWORD: PauseKeywordChange,
    RecommendationType.MATCH_TYPE_CHANGE: MatchTypeChange,
    RecommendationType.PAUSE_CAMPAIGN: PauseCampaignChange,
    RecommendationType.BIDDING_STRATEGY_CHANGE: BiddingStrategyChange,
}


def parse_change(recommendation: Recommendation) -> ProposedChange:
    """Validate ``proposed_change`` against the model for the recommendation's type."""
    model = _CHANGE_MODELS[recommendation.type]
    try:
        change = model.model_validate(recommendation.proposed_change or {})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid proposed_change for {recommendation.type.value} recommendation {recommendation.id}",
            details={"errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]},
        )

    if recommendation.type == RecommendationType.BUDGET_INCREASE and change.delta <= 0:
        raise ValidationError(
            f"BUDGET_INCREASE {recommendation.id} must propose a budget above the current one"
        )
    if recommendation.type == RecommendationType.BUDGET_DECREASE and change.delta >= 0:
        raise ValidationError(
            f"BUDGET_DECREASE {recommendation.id} must propose a budget below the current one"
        )
    return change


# ── Platform Translation ─────────────────────────────────────────────

def build_platform_change(recommendation: Recommendation) -> PlatformChange:
    """The single platform call that implements a recommendation."""
    change = parse_change(recommendation)
    rec_type = recommendation.type
    campaign_id = recommendation.campaign_id

    if rec_type in (RecommendationType.BUDGET_INCREASE, RecommendationType.BUDGET_DECREASE):
        return PlatformChange(
            operation="update_campaign_budget", entity_type="campaign",
            entity_id=campaign_id, campaign_id=campaign_id,
            arguments={"daily_budget": round(change.proposed_budget, 2)},
        )
    if rec_type == RecommendationType.BID_ADJUSTMENT:
        if change.keyword_id:
            return PlatformChange(
                operation="adjust_keyword_bid", entity_type="keyword",
                entity_id=change.keyword_id, campaign_id=campaign_id,
                arguments={"percentage": change.percentage},
            )
        return PlatformChange(
            operation="adjust_campaign_bids", entity_type="campaign",
            entity_id=campaign_id, campaign_id=campaign_id,
            arguments={"percentage": change.percentage},
        )
    if rec_type == RecommendationType.NEGATIVE_KEYWORD:
        return PlatformChange(
            operation="add_negative_keywords", entity_type="campaign",
            entity_id=campaign_id, campaign_id=campaign_id,
            arguments={"keywords": list(change.keywords), "match_type": change.match_type.value},
        )
    if rec_type == RecommendationType.PAUSE_KEYWORD:
        return PlatformChange(
            operation="update_keyword_state", entity_type="keyword",
            entity_id=change.keyword_id, campaign_id=campaign_id,
            arguments={"state": "PAUSED"},
        )
    if rec_type == RecommendationType.MATCH_TYPE_CHANGE:
        return PlatformChange(
            operation="update_keyword_match_type", entity_type="keyword",
            entity_id=change.keyword_id, campaign_id=campaign_id,
            arguments={"match_type": change.new_match_type.value},
        )
    if rec_type == RecommendationType.PAUSE_CAMPAIGN:
        return PlatformChange(
            operation="update_campaign_state", entity_type="campaign",
            entity_id=campaign_id, campaign_id=campaign_id,
            arguments={"state": "PAUSED"},
        )
    arguments = {"strategy": change.strategy}
    if change.target_cpa is not None:
        arguments["target_cpa"] = change.target_cpa
    if change.target_roas is not None:
        arguments["target_roas"] = change.target_roas
    return PlatformChange(
        operation="update_bidding_strategy", entity_type="campaign",
        entity_id=campaign_id, campaign_id=campaign_id, arguments=arguments,
    )


# ── Conflict Detection ───────────────────────────────────────────────

def change_levers(recommendation: Recommendation) -> list[tuple[str, str, int]]:
    """
    (scope, lever, direction) triples a recommendation pulls.
    Scope "*" on a bid lever means campaign-wide.
    """
    change = parse_change(recommendation)
    rec_type = recommendation.type
    campaign = recommendation.campaign_id

    if rec_type == RecommendationType.BUDGET_INCREASE:
        return [(campaign, "budget", 1)]
    if rec_type in (RecommendationType.BUDGET_DECREASE, RecommendationType.PAUSE_CAMPAIGN):
        return [(campaign, "budget", -1)]
    if rec_type == RecommendationType.BID_ADJUSTMENT:
        direction = 1 if change.percentage > 0 else -1
        return [(f"{campaign}:{change.keyword_id or '*'}", "bid", direction)]
    if rec_type == RecommendationType.PAUSE_KEYWORD:
        return [(f"{campaign}:{change.keyword_id}", "keyword_state", -1)]
    if rec_type == RecommendationType.MATCH_TYPE_CHANGE:
        return [(f"{campaign}:{change.keyword_id}", "keyword_state", 1)]
    return []


def _scopes_overlap(lever: str, a: str, b: str) -> bool:
    if a == b:
        return True
    if lever != "bid":
        return False
    campaign_a, _, kw_a = a.partition(":")
    campaign_b, _, kw_b = b.partition(":")
    return campaign_a == campaign_b and "*" in (kw_a, kw_b)


def conflicts_between(first: Recommendation, second: Recommendation) -> bool:
    for scope_a, lever_a, dir_a in change_levers(first):
        for scope_b, lever_b, dir_b in change_levers(second):
            if lever_a == lever_b and dir_a != dir_b and _scopes_overlap(lever_a, scope_a, scope_b):
                return True
    return False


def find_conflicts(recommendations: list[Recommendation]) -> list[tuple[str, str]]:
    """All contradicting pairs, each as (smaller id, larger id), sorted."""
    pairs = []
    for first, second in combinations(recommendations, 2):
        if first.id == second.id:
            continue
        if conflicts_between(first, second):
            pairs.append(tuple(sorted((first.id, second.id))))
    return sorted(set(pairs))
