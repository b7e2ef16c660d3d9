"""
Tests for recommendation updates, status transitions and proposed-change parsing.
"""

import pytest

from conftest import make_recommendation
from ppc_optimizer.changes import build_platform_change, find_conflicts, parse_change
from ppc_optimizer.errors import ValidationError
from ppc_optimizer.schemas import (
    ImplementationOutcome,
    PlatformSnapshot,
    Priority,
    QueueState,
    RecommendationStatus,
    RecommendationType,
    RecommendationUpdate,
    apply_implementation_outcome,
    apply_recommendation_update,
    check_status_transition,
)

S = RecommendationStatus
T = RecommendationType


# ── RecommendationUpdate ──────────────────────────────────────────────

def test_update_rejects_unknown_fields():
    with pytest.raises(ValidationError) as exc:
        RecommendationUpdate.parse({"status": "APPROVED", "proposed_change": {}})
    fields = [e["field"] for e in exc.value.details["errors"]]
    assert fields == ["proposed_change"]


def test_update_rejects_non_object():
    with pytest.raises(ValidationError):
        RecommendationUpdate.parse(["APPROVED"])


def test_update_requires_a_field():
    with pytest.raises(ValidationError):
        RecommendationUpdate.parse({})


def test_update_rejects_negative_impact():
    with pytest.raises(ValidationError):
        RecommendationUpdate.parse({"estimated_impact": -5})


def test_update_parses_enums():
    update = RecommendationUpdate.parse({"status": "APPROVED", "priority": "high"})
    assert update.status == S.APPROVED
    assert update.priority == Priority.HIGH


# ── Status transitions ────────────────────────────────────────────────

@pytest.mark.parametrize("current,new", [
    (S.PENDING, S.APPROVED),
    (S.PENDING, S.REJECTED),
    (S.APPROVED, S.IMPLEMENTED),
    (S.IMPLEMENTED, S.ROLLED_BACK),
    (S.FAILED, S.APPROVED),
])
def test_allowed_transitions(current, new):
    check_status_transition(current, new)


@pytest.mark.parametrize("current,new", [
    (S.APPROVED, S.PENDING),
    (S.REJECTED, S.APPROVED),
    (S.EXPIRED, S.APPROVED),
    (S.PENDING, S.IMPLEMENTED),
    (S.IMPLEMENTED, S.APPROVED),
])
def test_disallowed_transitions(current, new):
    with pytest.raises(ValidationError):
        check_status_transition(current, new)


def test_apply_update_keeps_other_fields():
    rec = make_recommendation("r1", status=S.PENDING)
    updated = apply_recommendation_update(rec, RecommendationUpdate(status=S.APPROVED, estimated_impact=42.0))
    assert updated.status == S.APPROVED
    assert updated.estimated_impact == 42.0
    assert updated.proposed_change == rec.proposed_change
    assert rec.status == S.PENDING


def test_same_status_is_a_no_op():
    rec = make_recommendation("r1", status=S.REJECTED)
    updated = apply_recommendation_update(rec, RecommendationUpdate(status=S.REJECTED, priority=Priority.LOW))
    assert updated.status == S.REJECTED
    assert updated.priority == Priority.LOW


# ── Implementation outcomes ───────────────────────────────────────────

def test_success_outcome_stores_who_when_and_snapshot():
    rec = make_recommendation("r1")
    snapshot = PlatformSnapshot(
        operation="update_campaign_budget", entity_type="campaign", entity_id="c1",
        campaign_id="c1", previous={"daily_budget": 200.0},
    )
    outcome = ImplementationOutcome(
        state=QueueState.SUCCEEDED, status=S.IMPLEMENTED, user_id="user-1", attempts=2, snapshot=snapshot,
    )
    updated = apply_implementation_outcome(rec, outcome)
    assert updated.status == S.IMPLEMENTED
    assert updated.implemented_by == "user-1"
    assert updated.implemented_at == outcome.recorded_at
    assert updated.rollback_snapshot == snapshot
    assert updated.apply_attempts == 2
    assert updated.last_error is None


def test_rejected_outcome_keeps_status_and_records_error():
    rec = make_recommendation("r1")
    outcome = ImplementationOutcome(state=QueueState.FAILED, error="Recommendation expired", error_code="EXPIRED")
    updated = apply_implementation_outcome(rec, outcome)
    assert updated.status == S.APPROVED
    assert updated.last_error_code == "EXPIRED"
    assert updated.implemented_at is None


def test_rollback_outcome_clears_snapshot():
    snapshot = PlatformSnapshot(operation="update_campaign_state", entity_type="campaign", entity_id="c1",
                                campaign_id="c1", previous={"state": "ENABLED"})
    rec = make_recommendation("r1", status=S.IMPLEMENTED, rollback_snapshot=snapshot, apply_attempts=1)
    updated = apply_implementation_outcome(
        rec, ImplementationOutcome(state=QueueState.ROLLED_BACK, status=S.ROLLED_BACK)
    )
    assert updated.status == S.ROLLED_BACK
    assert updated.rollback_snapshot is None
    assert updated.apply_attempts == 1


def test_outcome_follows_status_workflow():
    rec = make_recommendation("r1", status=S.REJECTED)
    with pytest.raises(ValidationError):
        apply_implementation_outcome(rec, ImplementationOutcome(state=QueueState.SUCCEEDED, status=S.IMPLEMENTED))


# ── Proposed changes ──────────────────────────────────────────────────

def test_budget_direction_must_match_type():
    with pytest.raises(ValidationError):
        parse_change(make_recommendation("r1", T.BUDGET_DECREASE))


def test_bid_percentage_bounds():
    with pytest.raises(ValidationError):
        parse_change(make_recommendation("r1", T.BID_ADJUSTMENT, proposed_change={"percentage": 0}))
    with pytest.raises(ValidationError):
        parse_change(make_recommendation("r1", T.BID_ADJUSTMENT, proposed_change={"percentage": -100}))
    change = parse_change(make_recommendation("r1", T.BID_ADJUSTMENT, proposed_change={"percentage": -15}))
    assert change.fraction == pytest.approx(-0.15)


def test_match_type_change_must_differ():
    with pytest.raises(ValidationError) as exc:
        parse_change(make_recommendation("r1", T.MATCH_TYPE_CHANGE, proposed_change={
            "keyword_id": "kw1", "keyword_text": "shoes",
            "current_match_type": "EXACT", "new_match_type": "EXACT",
        }))
    assert exc.value.details["errors"]


def test_negative_keywords_need_keywords():
    with pytest.raises(ValidationError):
        parse_change(make_recommendation("r1", T.NEGATIVE_KEYWORD, proposed_change={"keywords": []}))


@pytest.mark.parametrize("rec_type,proposed_change,operation,entity_id", [
    (T.BUDGET_INCREASE, {"current_budget": 50, "proposed_budget": 75.004}, "update_campaign_budget", "c1"),
    (T.BID_ADJUSTMENT, {"percentage": 10}, "adjust_campaign_bids", "c1"),
    (T.BID_ADJUSTMENT, {"percentage": 10, "keyword_id": "kw1"}, "adjust_keyword_bid", "kw1"),
    (T.NEGATIVE_KEYWORD, {"keywords": ["free"]}, "add_negative_keywords", "c1"),
    (T.PAUSE_KEYWORD, {"keyword_id": "kw1"}, "update_keyword_state", "kw1"),
    (T.MATCH_TYPE_CHANGE, {
        "keyword_id": "kw1", "keyword_text": "shoes", "current_match_type": "BROAD", "new_match_type": "PHRASE",
    }, "update_keyword_match_type", "kw1"),
    (T.PAUSE_CAMPAIGN, {}, "update_campaign_state", "c1"),
    (T.BIDDING_STRATEGY_CHANGE, {"strategy": "TARGET_ROAS", "target_roas": 4}, "update_bidding_strategy", "c1"),
])
def test_platform_change_per_type(rec_type, proposed_change, operation, entity_id):
    change = build_platform_change(make_recommendation("r1", rec_type, proposed_change=proposed_change))
    assert change.operation == operation
    assert change.entity_id == entity_id
    assert change.campaign_id == "c1"


def test_budget_is_rounded_to_cents():
    change = build_platform_change(make_recommendation("r1", proposed_change={
        "current_budget": 50, "proposed_budget": 75.004,
    }))
    assert change.arguments == {"daily_budget": 75.0}


def test_negative_keyword_defaults_to_phrase():
    change = build_platform_change(make_recommendation(
        "r1", T.NEGATIVE_KEYWORD, proposed_change={"keywords": ["free", "cheap"]},
    ))
    assert change.arguments == {"keywords": ["free", "cheap"], "match_type": "PHRASE"}


# ── Conflicts ─────────────────────────────────────────────────────────

def test_opposite_budget_moves_conflict():
    up = make_recommendation("b", T.BUDGET_INCREASE)
    pause = make_recommendation("a", T.PAUSE_CAMPAIGN, proposed_change={})
    assert find_conflicts([up, pause]) == [("a", "b")]


def test_campaign_bid_overlaps_keyword_bid():
    campaign_cut = make_recommendation("r1", T.BID_ADJUSTMENT, proposed_change={"percentage": -10})
    keyword_raise = make_recommendation("r2", T.BID_ADJUSTMENT, proposed_change={
        "percentage": 10, "keyword_id": "kw1",
    })
    other_keyword = make_recommendation("r3", T.BID_ADJUSTMENT, proposed_change={
        "percentage": -10, "keyword_id": "kw2",
    })
    assert find_conflicts([campaign_cut, keyword_raise, other_keyword]) == [("r1", "r2")]


def test_different_campaigns_never_conflict():
    up = make_recommendation("r1", T.BUDGET_INCREASE, campaign_id="c1")
    down = make_recommendation("r2", T.BUDGET_DECREASE, campaign_id="c2", proposed_change={
        "current_budget": 200.0, "proposed_budget": 100.0,
    })
    assert find_conflicts([up, down]) == []


def test_pause_and_match_change_on_same_keyword_conflict():
    pause = make_recommendation("r1", T.PAUSE_KEYWORD, proposed_change={"keyword_id": "kw1"})
    rematch = make_recommendation("r2", T.MATCH_TYPE_CHANGE, proposed_change={
        "keyword_id": "kw1", "keyword_text": "shoes", "current_match_type": "BROAD", "new_match_type": "EXACT",
    })
    assert find_conflicts([pause, rematch]) == [("r1", "r2")]
