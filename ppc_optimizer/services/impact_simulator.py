"""
Impact Simulator: Projected effect of recommendations.
Each recommendation type has a deterministic effect model applied to a
campaign's average daily delivery. Combined simulations apply the
recommendations one after another on a running per-campaign state.
"""

import logging
import math
from typing import Optional

import numpy as np

from ppc_optimizer.changes import (
    BidAdjustmentChange,
    BiddingStrategyChange,
    BudgetChange,
    MatchTypeChange,
    NegativeKeywordChange,
    PauseKeywordChange,
    find_conflicts,
    parse_change,
)
from ppc_optimizer.config import Settings
from ppc_optimizer.errors import ConflictError, ValidationError
from ppc_optimizer.keyword_matching import keyword_matches, match_type_breadth
from ppc_optimizer.schemas import (
    AggregateProjection,
    AnalysisResult,
    CampaignBaseline,
    ImpactProjection,
    Recommendation,
    RecommendationType,
    SimulationResult,
    SimulationScenario,
)
from ppc_optimizer.services.forecast_model import ForecastModel
from ppc_optimizer.services.statistics_engine import StatisticsEngine

logger = logging.getLogger(__name__)

# How far each effect model is trusted, before data quality is considered.
TYPE_CERTAINTY = {
    RecommendationType.PAUSE_CAMPAIGN: 0.95,
    RecommendationType.PAUSE_KEYWORD: 0.9,
    RecommendationType.NEGATIVE_KEYWORD: 0.85,
    RecommendationType.BUDGET_DECREASE: 0.85,
    RecommendationType.BUDGET_INCREASE: 0.75,
    RecommendationType.BID_ADJUSTMENT: 0.7,
    RecommendationType.MATCH_TYPE_CHANGE: 0.65,
    RecommendationType.BIDDING_STRATEGY_CHANGE: 0.6,
}

DEFAULT_ELASTICITY_PENALTY = 0.8
BROADENING_COST_LIFT = 0.15
BROADENING_CONVERSION_LIFT = 0.10
COMBINATION_PENALTY_PER_STEP = 0.05
MAX_COMBINATION_PENALTY = 0.2


def baseline_from_analysis(analysis: AnalysisResult) -> CampaignBaseline:
    """Average daily delivery over the analysed samples."""
    n = analysis.sample_count
    totals = analysis.aggregates
    return CampaignBaseline(
        impressions=totals.impressions / n,
        clicks=totals.clicks / n,
        cost=totals.cost / n,
        conversions=totals.conversions / n,
        conversion_value=totals.conversion_value / n,
    )


def sum_baselines(baselines: list[CampaignBaseline]) -> CampaignBaseline:
    return CampaignBaseline(
        impressions=sum(b.impressions for b in baselines),
        clicks=sum(b.clicks for b in baselines),
        cost=sum(b.cost for b in baselines),
        conversions=sum(b.conversions for b in baselines),
        conversion_value=sum(b.conversion_value for b in baselines),
    )


def _delta(new: Optional[float], old: Optional[float]) -> Optional[float]:
    if new is None or old is None:
        return None
    return new - old


def _with_volume(
    state: CampaignBaseline,
    *,
    cost: float,
    clicks: float,
    conversions: float,
) -> CampaignBaseline:
    """
    New state at the given volume. Impressions follow clicks and conversion
    value follows conversions at the current rates.
    """
    cost = max(cost, 0.0)
    clicks = max(clicks, 0.0)
    conversions = max(conversions, 0.0)
    impressions = state.impressions * clicks / state.clicks if state.clicks > 0 else state.impressions
    value_per_conversion = state.conversion_value / state.conversions if state.conversions > 0 else 0.0
    return CampaignBaseline(
        impressions=max(impressions, 0.0),
        clicks=clicks,
        cost=cost,
        conversions=conversions,
        conversion_value=conversions * value_per_conversion,
    )


class ImpactSimulator:
    def __init__(
        self,
        engine: StatisticsEngine,
        forecast: ForecastModel,
        settings: Optional[Settings] = None,
    ):
        self.engine = engine
        self.forecast = forecast
        self.settings = settings or engine.settings

    # ── Single recommendation ────────────────────────────────────────

    def estimate_impact(
        self,
        recommendation: Recommendation,
        analysis: AnalysisResult,
        horizon_days: int = 30,
    ) -> ImpactProjection:
        """Effect of one recommendation on a fresh baseline."""
        if recommendation.campaign_id != analysis.campaign_id:
            raise ValidationError(
                f"Recommendation {recommendation.id} targets campaign {recommendation.campaign_id}, "
                f"analysis is for {analysis.campaign_id}"
            )
        return self._project(
            recommendation, baseline_from_analysis(analysis), analysis, set(), horizon_days
        )

    def _project(
        self,
        recommendation: Recommendation,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
        horizon_days: int,
    ) -> ImpactProjection:
        change = parse_change(recommendation)
        projected, notes = self._apply(recommendation.type, change, state, analysis, excluded_terms)

        cost_delta = projected.cost - state.cost
        conversions_delta = projected.conversions - state.conversions
        baseline_cpa = state.cpa or 0.0
        impact_score = abs(cost_delta) + abs(conversions_delta) * baseline_cpa

        confidence = analysis.confidence * TYPE_CERTAINTY[recommendation.type]
        if recommendation.type == RecommendationType.BID_ADJUSTMENT and not analysis.bid_elasticity_fitted:
            confidence *= DEFAULT_ELASTICITY_PENALTY
            notes.append(f"Bid elasticity not fitted; default {analysis.bid_elasticity} used")

        return ImpactProjection(
            recommendation_id=recommendation.id,
            campaign_id=recommendation.campaign_id,
            type=recommendation.type,
            baseline=state,
            projected=projected,
            cost_delta=cost_delta,
            conversions_delta=conversions_delta,
            cpa_delta=_delta(projected.cpa, state.cpa),
            roas_delta=_delta(projected.roas, state.roas),
            impact_score=impact_score,
            confidence=max(0.0, min(1.0, confidence)),
            horizon_days=horizon_days,
            projected_period_cost_delta=cost_delta * horizon_days,
            projected_period_conversions_delta=conversions_delta * horizon_days,
            notes=notes,
        )

    def _apply(
        self,
        rec_type: RecommendationType,
        change,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
    ) -> tuple[CampaignBaseline, list[str]]:
        if rec_type == RecommendationType.BUDGET_INCREASE:
            return self._budget_increase(change, state, analysis)
        if rec_type == RecommendationType.BUDGET_DECREASE:
            return self._budget_decrease(change, state)
        if rec_type == RecommendationType.BID_ADJUSTMENT:
            return self._bid_adjustment(change, state, analysis)
        if rec_type == RecommendationType.NEGATIVE_KEYWORD:
            return self._negative_keywords(change, state, analysis, excluded_terms)
        if rec_type == RecommendationType.PAUSE_KEYWORD:
            return self._pause_keyword(change, state, analysis, excluded_terms)
        if rec_type == RecommendationType.MATCH_TYPE_CHANGE:
            return self._match_type_change(change, state, analysis, excluded_terms)
        if rec_type == RecommendationType.PAUSE_CAMPAIGN:
            return CampaignBaseline(), ["All campaign volume stops while paused"]
        return self._bidding_strategy(change, state)

    # ── Effect models ────────────────────────────────────────────────

    def _budget_increase(
        self, change: BudgetChange, state: CampaignBaseline, analysis: AnalysisResult
    ) -> tuple[CampaignBaseline, list[str]]:
        """
        Spend saturates toward a demand ceiling of the busiest observed day
        times budget_ceiling_factor; each added unit of spend converts worse
        the closer the campaign gets to that ceiling.
        """
        ceiling = analysis.aggregates.max_daily_cost * self.settings.budget_ceiling_factor
        headroom = ceiling - state.cost
        if headroom <= 0 or ceiling <= 0:
            return state, ["Campaign already spends at its demand ceiling; extra budget is not used"]

        incremental = headroom * (1 - math.exp(-change.delta / headroom))
        notes = [f"Incremental spend {incremental:.2f}/day of {change.delta:.2f} added budget"]
        added_conversions = 0.0
        if state.cpa:
            added_conversions = incremental / state.cpa * (headroom / ceiling)
        else:
            notes.append("No conversion history; added spend assumed not to convert")
        added_clicks = incremental / state.cpc if state.cpc else 0.0

        return _with_volume(
            state,
            cost=state.cost + incremental,
            clicks=state.clicks + added_clicks,
            conversions=state.conversions + added_conversions,
        ), notes

    def _budget_decrease(
        self, change: BudgetChange, state: CampaignBaseline
    ) -> tuple[CampaignBaseline, list[str]]:
        cut = min(abs(change.delta), state.cost)
        lost = 0.0
        if state.cpa:
            lost = cut / state.cpa * self.settings.budget_decrease_marginal_efficiency
        lost_clicks = cut / state.cpc if state.cpc else 0.0
        return _with_volume(
            state,
            cost=state.cost - cut,
            clicks=state.clicks - lost_clicks,
            conversions=state.conversions - lost,
        ), [f"Spend reduced by {cut:.2f}/day"]

    @staticmethod
    def _bid_adjustment(
        change: BidAdjustmentChange, state: CampaignBaseline, analysis: AnalysisResult
    ) -> tuple[CampaignBaseline, list[str]]:
        if state.clicks <= 0 or not state.cpc:
            return state, ["No click history; bid change has no modelled effect"]
        p = change.fraction
        elasticity = analysis.bid_elasticity
        new_cpc = state.cpc * (1 + p)
        new_clicks = state.clicks * (1 + p) ** elasticity
        ratio = new_clicks / state.clicks
        notes = [f"Bids {change.percentage:+.0f}% with elasticity {elasticity:.2f}"]
        if change.keyword_id:
            notes.append("Keyword bid modelled against the campaign baseline")
        return _with_volume(
            state,
            cost=new_clicks * new_cpc,
            clicks=new_clicks,
            conversions=state.conversions * ratio,
        ), notes

    @staticmethod
    def _remove_terms(
        matcher,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
    ) -> tuple[float, float, list[str]]:
        """Per-day spend and clicks of zero-conversion search terms picked by ``matcher``."""
        days = analysis.sample_count
        cost = clicks = 0.0
        removed = []
        for term in analysis.search_terms:
            if term.conversions > 0 or term.term in excluded_terms:
                continue
            if matcher(term.term):
                excluded_terms.add(term.term)
                cost += term.cost / days
                clicks += term.clicks / days
                removed.append(term.term)
        return min(cost, state.cost), min(clicks, state.clicks), removed

    def _negative_keywords(
        self,
        change: NegativeKeywordChange,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
    ) -> tuple[CampaignBaseline, list[str]]:
        cost, clicks, removed = self._remove_terms(
            lambda term: any(keyword_matches(kw, term, change.match_type) for kw in change.keywords),
            state, analysis, excluded_terms,
        )
        projected = _with_volume(
            state, cost=state.cost - cost, clicks=state.clicks - clicks, conversions=state.conversions
        )
        return projected, [f"Blocks {len(removed)} non-converting search terms"]

    @staticmethod
    def _pause_keyword(
        change: PauseKeywordChange,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
    ) -> tuple[CampaignBaseline, list[str]]:
        marker = f"keyword:{change.keyword_id}"
        if marker in excluded_terms:
            return state, [f"Keyword {change.keyword_id} already removed"]
        excluded_terms.add(marker)
        days = analysis.sample_count
        return CampaignBaseline(
            impressions=max(state.impressions - change.impressions / days, 0.0),
            clicks=max(state.clicks - change.clicks / days, 0.0),
            cost=max(state.cost - change.cost / days, 0.0),
            conversions=max(state.conversions - change.conversions / days, 0.0),
            conversion_value=max(state.conversion_value - change.conversion_value / days, 0.0),
        ), [f"Keyword {change.keyword_id} delivery removed"]

    def _match_type_change(
        self,
        change: MatchTypeChange,
        state: CampaignBaseline,
        analysis: AnalysisResult,
        excluded_terms: set,
    ) -> tuple[CampaignBaseline, list[str]]:
        old, new = change.current_match_type, change.new_match_type
        if match_type_breadth(new) < match_type_breadth(old):
            cost, clicks, removed = self._remove_terms(
                lambda term: (
                    keyword_matches(change.keyword_text, term, old)
                    and not keyword_matches(change.keyword_text, term, new)
                ),
                state, analysis, excluded_terms,
            )
            return _with_volume(
                state, cost=state.cost - cost, clicks=state.clicks - clicks, conversions=state.conversions
            ), [f"Narrowing {old.value} to {new.value} drops {len(removed)} non-converting search terms"]

        days = analysis.sample_count
        added_cost = change.cost / days * BROADENING_COST_LIFT
        added_clicks = change.clicks / days * BROADENING_COST_LIFT
        added_conversions = change.conversions / days * BROADENING_CONVERSION_LIFT
        return _with_volume(
            state,
            cost=state.cost + added_cost,
            clicks=state.clicks + added_clicks,
            conversions=state.conversions + added_conversions,
        ), [f"Broadening {old.value} to {new.value} lifts keyword reach"]

    @staticmethod
    def _bidding_strategy(
        change: BiddingStrategyChange, state: CampaignBaseline
    ) -> tuple[CampaignBaseline, list[str]]:
        if change.target_cpa is not None and state.cpa:
            new_cpa = state.cpa + (change.target_cpa - state.cpa) / 2
            return _with_volume(
                state, cost=state.cost, clicks=state.clicks, conversions=state.cost / new_cpa
            ), [f"CPA moves from {state.cpa:.2f} halfway toward target {change.target_cpa:.2f}"]
        if change.target_roas is not None and state.roas is not None:
            new_roas = state.roas + (change.target_roas - state.roas) / 2
            return state.model_copy(update={"conversion_value": state.cost * new_roas}), [
                f"ROAS moves from {state.roas:.2f} halfway toward target {change.target_roas:.2f}"
            ]
        return state, [f"Strategy {change.strategy} without an attainable target; no modelled effect"]

    # ── Combined simulation ──────────────────────────────────────────

    async def simulate_impact(
        self,
        campaign_id: str,
        recommendations: list[Recommendation],
        scenario: Optional[SimulationScenario] = None,
    ) -> SimulationResult:
        """
        Combined effect of several recommendations. Order: descending
        impact_score of the individual estimates, ties by ascending id; each
        step starts from the previous step's projected state for its campaign.
        """
        scenario = scenario or SimulationScenario()
        ids = [r.id for r in recommendations]
        if len(ids) != len(set(ids)):
            raise ValidationError("Each recommendation may appear only once in a simulation")

        for rec in recommendations:
            parse_change(rec)

        conflicts = find_conflicts(recommendations)
        if conflicts and not scenario.override_conflicts:
            raise ConflictError(
                f"{len(conflicts)} conflicting recommendation pair(s) in simulation",
                conflicts=conflicts,
            )

        # Only campaigns a recommendation touches are analyzed
        campaign_ids = sorted({r.campaign_id for r in recommendations} or {campaign_id})
        analyses = {}
        for cid in campaign_ids:
            analyses[cid] = await self.engine.analyze_performance(cid, scenario.window_days)

        individual = {
            rec.id: self.estimate_impact(rec, analyses[rec.campaign_id], scenario.horizon_days)
            for rec in recommendations
        }
        ordered = sorted(recommendations, key=lambda r: (-individual[r.id].impact_score, r.id))

        states = {cid: baseline_from_analysis(analyses[cid]) for cid in campaign_ids}
        excluded = {cid: set() for cid in campaign_ids}
        steps = []
        for rec in ordered:
            step = self._project(
                rec, states[rec.campaign_id], analyses[rec.campaign_id],
                excluded[rec.campaign_id], scenario.horizon_days,
            )
            states[rec.campaign_id] = step.projected
            steps.append(step)

        baseline_total = sum_baselines([baseline_from_analysis(analyses[cid]) for cid in campaign_ids])
        projected_total = sum_baselines([states[cid] for cid in campaign_ids])
        cost_delta = projected_total.cost - baseline_total.cost
        conversions_delta = projected_total.conversions - baseline_total.conversions

        if steps:
            penalty = min(COMBINATION_PENALTY_PER_STEP * len(steps), MAX_COMBINATION_PENALTY)
            confidence = float(np.mean([s.confidence for s in steps])) * (1 - penalty)
        else:
            confidence = float(np.mean([analyses[cid].confidence for cid in campaign_ids]))

        cpa_forecasts = {
            cid: self.forecast.predict_from_daily(cid, analyses[cid].daily, scenario.horizon_days)
            for cid in campaign_ids
        }

        logger.info(
            f"Simulated {len(steps)} recommendations for {campaign_id} ({scenario.name}): "
            f"cost {cost_delta:+.2f}/day, conversions {conversions_delta:+.2f}/day"
        )
        return SimulationResult(
            campaign_id=campaign_id,
            scenario=scenario,
            applied_order=[s.recommendation_id for s in steps],
            steps=steps,
            aggregate=AggregateProjection(
                baseline=baseline_total,
                projected=projected_total,
                cost_delta=cost_delta,
                conversions_delta=conversions_delta,
                cpa_delta=_delta(projected_total.cpa, baseline_total.cpa),
                roas_delta=_delta(projected_total.roas, baseline_total.roas),
                projected_period_cost_delta=cost_delta * scenario.horizon_days,
                projected_period_conversions_delta=conversions_delta * scenario.horizon_days,
            ),
            confidence=confidence,
            conflicts_overridden=conflicts,
            cpa_forecasts=cpa_forecasts,
        )
