"""
Tests for the implementation queue: ordering, concurrency, retries,
conflict checks, dry runs and rollback.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import FakePlatform, FakeRecommendationRepository, make_recommendation, permanent, transient
from ppc_optimizer.errors import NotFoundError, QueueStoppedError, ValidationError
from ppc_optimizer.schemas import (
    Priority,
    QueueState,
    RecommendationStatus,
    RecommendationType,
)
from ppc_optimizer.services.implementation_queue import ImplementationQueue
from ppc_optimizer.utils import utcnow


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
async def queue(recommendation_repo, platform, settings, sleeper):
    q = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await q.start()
    return q


def budget_rec(rec_id, campaign_id, **kwargs):
    return make_recommendation(rec_id, campaign_id=campaign_id, **kwargs)


class UnreadableRecommendationRepository(FakeRecommendationRepository):
    """Reads of the listed recommendations fail as if the database connection dropped."""

    def __init__(self):
        super().__init__()
        self.unreadable: set[str] = set()

    async def get(self, recommendation_id):
        if recommendation_id in self.unreadable:
            raise RuntimeError("db connection reset")
        return await super().get(recommendation_id)


class ReadOnlyRecommendationRepository(FakeRecommendationRepository):
    async def record_outcome(self, recommendation_id, outcome):
        raise RuntimeError("database is read-only")


# ── Enqueue ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_enqueue_requires_running_queue(recommendation_repo, platform, settings):
    q = ImplementationQueue(recommendation_repo, platform, settings)
    recommendation_repo.add(budget_rec("r1", "c1"))
    with pytest.raises(QueueStoppedError):
        await q.queue_implementation("r1")


@pytest.mark.anyio
async def test_enqueue_unknown_recommendation(queue):
    with pytest.raises(NotFoundError):
        await queue.queue_implementation("missing")


@pytest.mark.anyio
async def test_enqueue_is_idempotent_while_pending(queue, recommendation_repo):
    recommendation_repo.add(budget_rec("r1", "c1", priority=Priority.HIGH))
    first = await queue.queue_implementation("r1")
    second = await queue.queue_implementation("r1")
    assert first.id == second.id
    assert first.priority == Priority.HIGH
    assert queue.get_queue_status()["PENDING"] == 1
    assert queue.get_queue_status()["total"] == 1


# ── Processing ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_applies_in_priority_order(queue, recommendation_repo, platform):
    recommendation_repo.add(
        budget_rec("r-low", "c1"), budget_rec("r-critical", "c2"), budget_rec("r-high", "c3"),
        budget_rec("r-medium", "c4"),
    )
    await queue.queue_implementation("r-low", Priority.LOW)
    await queue.queue_implementation("r-medium")
    await queue.queue_implementation("r-critical", Priority.CRITICAL)
    await queue.queue_implementation("r-high", Priority.HIGH)

    results = await queue.process_queue("user-1", max_concurrent=1)

    assert [c.campaign_id for c in platform.applied] == ["c2", "c3", "c4", "c1"]
    assert [r.recommendation_id for r in results] == ["r-critical", "r-high", "r-medium", "r-low"]


@pytest.mark.anyio
async def test_success_records_snapshot_and_status(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.success
    assert result.state == QueueState.SUCCEEDED
    assert result.attempts == 1
    assert result.preview.operation == "update_campaign_budget"
    assert result.preview.arguments == {"daily_budget": 300.0}
    stored = queue.get_item(item.id)
    assert stored.pre_change_snapshot.previous == {"daily_budget": 200.0}
    assert stored.finished_at is not None
    rec = recommendation_repo.items["r1"]
    assert rec.status == RecommendationStatus.IMPLEMENTED
    assert rec.implemented_by == "user-1"
    assert rec.implemented_at is not None
    assert rec.rollback_snapshot == stored.pre_change_snapshot
    assert rec.apply_attempts == 1


@pytest.mark.anyio
async def test_unapproved_recommendation_is_not_applied(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1", status=RecommendationStatus.PENDING))
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert not result.success
    assert result.error_code == "NOT_ACTIONABLE"
    assert platform.applied == []
    assert recommendation_repo.items["r1"].status == RecommendationStatus.PENDING


@pytest.mark.anyio
async def test_recommendation_rejected_after_enqueue(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    await queue.queue_implementation("r1")
    recommendation_repo.items["r1"] = recommendation_repo.items["r1"].model_copy(
        update={"status": RecommendationStatus.REJECTED}
    )

    [result] = await queue.process_queue("user-1")

    assert result.error_code == "NOT_ACTIONABLE"
    assert platform.applied == []


@pytest.mark.anyio
async def test_expired_recommendation_is_not_applied(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1", valid_until=utcnow() - timedelta(hours=1)))
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1", force=True)

    assert result.error_code == "EXPIRED"
    assert platform.applied == []
    rec = recommendation_repo.items["r1"]
    assert rec.status == RecommendationStatus.APPROVED
    assert rec.last_error_code == "EXPIRED"


@pytest.mark.anyio
async def test_recommendation_within_validity_is_applied(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1", valid_until=utcnow() + timedelta(days=1)))
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.success


@pytest.mark.anyio
async def test_removed_campaign_is_not_modified(recommendation_repo, metrics_repo, platform, settings, sleeper):
    metrics_repo.add_campaign("c1", status="REMOVED")
    metrics_repo.add_campaign("c2")
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper, campaigns=metrics_repo)
    await queue.start()
    recommendation_repo.add(budget_rec("r1", "c1"), budget_rec("r2", "c2"))
    await queue.queue_implementation("r1")
    await queue.queue_implementation("r2")

    results = await queue.process_queue("user-1", force=True)

    by_rec = {r.recommendation_id: r for r in results}
    assert by_rec["r1"].error_code == "CAMPAIGN_REMOVED"
    assert by_rec["r2"].success
    assert [c.campaign_id for c in platform.applied] == ["c2"]
    assert recommendation_repo.items["r1"].status == RecommendationStatus.APPROVED


@pytest.mark.anyio
async def test_invalid_change_fails_item(queue, recommendation_repo, platform):
    recommendation_repo.add(make_recommendation(
        "r1", RecommendationType.BID_ADJUSTMENT, proposed_change={"percentage": 0},
    ))
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.state == QueueState.FAILED
    assert result.error_code == "VALIDATION_ERROR"
    assert platform.applied == []
    assert recommendation_repo.items["r1"].status == RecommendationStatus.FAILED


@pytest.mark.anyio
async def test_transient_failures_are_retried_with_backoff(queue, recommendation_repo, platform, sleeper):
    recommendation_repo.add(budget_rec("r1", "c1"))
    platform.failures["c1"] = [transient(), transient()]
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.success
    assert result.attempts == 3
    assert sleeper.delays == [0.5, 1.0]


@pytest.mark.anyio
async def test_transient_failures_exhaust_attempts(queue, recommendation_repo, platform, sleeper):
    recommendation_repo.add(budget_rec("r1", "c1"))
    platform.failures["c1"] = [transient("timeout")] * 3
    await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.state == QueueState.FAILED
    assert result.attempts == 3
    assert result.error_code == "EXTERNAL_APPLY_FAILED"
    assert sleeper.delays == [0.5, 1.0]
    rec = recommendation_repo.items["r1"]
    assert rec.status == RecommendationStatus.FAILED
    assert rec.apply_attempts == 3
    assert rec.last_error == "timeout"
    assert rec.last_error_code == "EXTERNAL_APPLY_FAILED"
    assert rec.rollback_snapshot is None


@pytest.mark.anyio
async def test_permanent_failure_is_not_retried_and_does_not_stop_run(
    queue, recommendation_repo, platform, sleeper
):
    recommendation_repo.add(budget_rec("r1", "c1"), budget_rec("r2", "c2"))
    platform.failures["c1"] = [permanent()]
    item1 = await queue.queue_implementation("r1")
    item2 = await queue.queue_implementation("r2")

    results = await queue.process_queue("user-1", max_concurrent=1)

    assert [r.success for r in results] == [False, True]
    assert queue.get_item(item1.id).attempt_count == 1
    assert queue.get_item(item1.id).last_error == "invalid campaign"
    assert queue.get_item(item2.id).state == QueueState.SUCCEEDED
    assert sleeper.delays == []


@pytest.mark.anyio
async def test_concurrency_is_bounded(recommendation_repo, settings, sleeper):
    platform = FakePlatform(delay=0.01)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    for i in range(6):
        recommendation_repo.add(budget_rec(f"r{i}", f"c{i}"))
        await queue.queue_implementation(f"r{i}")

    results = await queue.process_queue("user-1", max_concurrent=2)

    assert len(results) == 6
    assert all(r.success for r in results)
    assert platform.peak <= 2
    assert queue.peak_running <= 2


@pytest.mark.anyio
async def test_concurrent_runs_apply_each_item_once(recommendation_repo, settings, sleeper):
    platform = FakePlatform(delay=0.005)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    for i in range(5):
        recommendation_repo.add(budget_rec(f"r{i}", f"c{i}"))
        await queue.queue_implementation(f"r{i}")

    first, second = await asyncio.gather(
        queue.process_queue("user-1", max_concurrent=2),
        queue.process_queue("user-2", max_concurrent=2),
    )

    assert len(first) + len(second) == 5
    assert sorted(c.campaign_id for c in platform.applied) == [f"c{i}" for i in range(5)]


@pytest.mark.anyio
async def test_storage_error_fails_only_its_own_item(platform, settings, sleeper):
    repo = UnreadableRecommendationRepository()
    repo.add(budget_rec("r-bad", "c1"), budget_rec("r-ok", "c2"))
    queue = ImplementationQueue(repo, platform, settings, sleep=sleeper)
    await queue.start()
    bad = await queue.queue_implementation("r-bad")
    ok = await queue.queue_implementation("r-ok")
    repo.unreadable.add("r-bad")

    results = await queue.process_queue("user-1", max_concurrent=2)

    by_rec = {r.recommendation_id: r for r in results}
    assert by_rec["r-bad"].state == QueueState.FAILED
    assert by_rec["r-bad"].error_code == "INTERNAL_ERROR"
    assert by_rec["r-ok"].success
    assert queue.get_item(bad.id).state == QueueState.FAILED
    assert queue.get_item(ok.id).state == QueueState.SUCCEEDED
    assert [c.campaign_id for c in platform.applied] == ["c2"]
    assert queue.clear_completed() == 2


@pytest.mark.anyio
async def test_outcome_write_failure_keeps_applied_result(platform, settings, sleeper):
    repo = ReadOnlyRecommendationRepository()
    repo.add(budget_rec("r1", "c1"))
    queue = ImplementationQueue(repo, platform, settings, sleep=sleeper)
    await queue.start()
    item = await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1")

    assert result.success
    assert queue.get_item(item.id).state == QueueState.SUCCEEDED
    assert queue.get_item(item.id).pre_change_snapshot is not None


@pytest.mark.anyio
async def test_concurrent_runs_share_the_service_limit(recommendation_repo, settings, sleeper):
    settings = settings.model_copy(update={"queue_max_concurrent": 1})
    platform = FakePlatform(delay=0.005)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    for i in range(4):
        recommendation_repo.add(budget_rec(f"r{i}", f"c{i}"))
        await queue.queue_implementation(f"r{i}")

    first, second = await asyncio.gather(
        queue.process_queue("user-1", max_concurrent=1),
        queue.process_queue("user-2", max_concurrent=1),
    )

    assert len(first) + len(second) == 4
    assert platform.peak == 1
    assert queue.peak_running == 1


@pytest.mark.anyio
async def test_invalid_max_concurrent(queue):
    with pytest.raises(ValidationError):
        await queue.process_queue("user-1", max_concurrent=-1)


@pytest.mark.anyio
async def test_empty_queue_returns_no_results(queue):
    assert await queue.process_queue("user-1") == []


# ── Conflicts ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_conflicting_items_fail_without_force(queue, recommendation_repo, platform):
    recommendation_repo.add(
        budget_rec("r-up", "c1"),
        make_recommendation("r-down", RecommendationType.BUDGET_DECREASE, proposed_change={
            "current_budget": 200.0, "proposed_budget": 150.0,
        }),
    )
    await queue.queue_implementation("r-up")
    await queue.queue_implementation("r-down")

    results = await queue.process_queue("user-1")

    assert {r.error_code for r in results} == {"CONFLICT"}
    assert platform.applied == []
    assert recommendation_repo.items["r-up"].status == RecommendationStatus.APPROVED
    assert recommendation_repo.items["r-down"].status == RecommendationStatus.APPROVED


@pytest.mark.anyio
async def test_force_applies_conflicting_items(queue, recommendation_repo, platform):
    recommendation_repo.add(
        budget_rec("r-up", "c1"),
        make_recommendation("r-down", RecommendationType.PAUSE_CAMPAIGN, proposed_change={}),
    )
    await queue.queue_implementation("r-up")
    await queue.queue_implementation("r-down")

    results = await queue.process_queue("user-1", force=True)

    assert all(r.success for r in results)
    assert len(platform.applied) == 2


@pytest.mark.anyio
async def test_conflict_with_already_applied_item(queue, recommendation_repo, platform):
    recommendation_repo.add(make_recommendation("r-bid", RecommendationType.BID_ADJUSTMENT, proposed_change={
        "percentage": -10,
    }))
    await queue.queue_implementation("r-bid")
    [applied] = await queue.process_queue("user-1")
    assert applied.success

    # keyword bid raise against a live campaign-wide cut
    recommendation_repo.add(make_recommendation("r-kw", RecommendationType.BID_ADJUSTMENT, proposed_change={
        "percentage": 15, "keyword_id": "kw1",
    }))
    await queue.queue_implementation("r-kw")

    [result] = await queue.process_queue("user-1")

    assert result.error_code == "CONFLICT"
    assert "r-bid" in result.message
    assert len(platform.applied) == 1


# ── Dry run ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_dry_run_changes_nothing(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")

    [result] = await queue.process_queue("user-1", dry_run=True)

    assert result.success
    assert result.preview.operation == "update_campaign_budget"
    assert result.message.startswith("Dry run")
    assert platform.applied == []
    assert queue.get_item(item.id).state == QueueState.PENDING
    assert recommendation_repo.items["r1"].status == RecommendationStatus.APPROVED


# ── Timeout & shutdown ────────────────────────────────────────────────

@pytest.mark.anyio
async def test_timeout_stops_dispatching_but_finishes_started_items(recommendation_repo, settings, sleeper):
    platform = FakePlatform(delay=0.05)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    for i in range(4):
        recommendation_repo.add(budget_rec(f"r{i}", f"c{i}"))
        await queue.queue_implementation(f"r{i}")

    results = await queue.process_queue("user-1", max_concurrent=1, timeout=0.01)

    assert len(results) == 1
    assert results[0].success
    assert queue.get_queue_status()["SUCCEEDED"] == 1
    assert queue.get_queue_status()["PENDING"] == 3


@pytest.mark.anyio
async def test_stop_waits_for_in_flight_apply(recommendation_repo, settings, sleeper):
    platform = FakePlatform(delay=0.05)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    recommendation_repo.add(budget_rec("r1", "c1"), budget_rec("r2", "c2"))
    item = await queue.queue_implementation("r1")

    run = asyncio.create_task(queue.process_queue("user-1"))
    await asyncio.sleep(0.01)
    await queue.stop()

    assert queue.get_item(item.id).state == QueueState.SUCCEEDED
    assert not queue.running
    with pytest.raises(QueueStoppedError):
        await queue.queue_implementation("r2")
    await run


@pytest.mark.anyio
async def test_stop_during_run_prevents_further_applies(recommendation_repo, settings, sleeper):
    platform = FakePlatform(delay=0.05)
    queue = ImplementationQueue(recommendation_repo, platform, settings, sleep=sleeper)
    await queue.start()
    for i in range(4):
        recommendation_repo.add(budget_rec(f"r{i}", f"c{i}"))
        await queue.queue_implementation(f"r{i}")

    run = asyncio.create_task(queue.process_queue("user-1", max_concurrent=1))
    await asyncio.sleep(0.01)
    await queue.stop()
    applied_when_stopped = len(platform.applied)
    results = await run

    assert applied_when_stopped == 1
    assert len(platform.applied) == 1
    assert len(results) == 1
    assert queue.get_queue_status()["PENDING"] == 3


# ── Housekeeping ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_clear_completed_keeps_pending(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"), budget_rec("r2", "c2"))
    await queue.queue_implementation("r1")
    await queue.process_queue("user-1")
    pending = await queue.queue_implementation("r2")

    assert queue.clear_completed() == 1
    assert [i.id for i in queue.list_items()] == [pending.id]


@pytest.mark.anyio
async def test_get_unknown_item(queue):
    with pytest.raises(NotFoundError):
        queue.get_item("queue_missing")


# ── Rollback ──────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_rollback_restores_snapshot(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")
    await queue.process_queue("user-1")

    result = await queue.rollback(item.id)

    assert result.success
    assert result.state == QueueState.ROLLED_BACK
    assert platform.rolled_back[0].previous == {"daily_budget": 200.0}
    assert recommendation_repo.items["r1"].status == RecommendationStatus.ROLLED_BACK


@pytest.mark.anyio
async def test_rollback_requires_succeeded_item(queue, recommendation_repo):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")
    with pytest.raises(ValidationError):
        await queue.rollback(item.id)


@pytest.mark.anyio
async def test_failed_rollback_needs_manual_resolution(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"), budget_rec("r2", "c2"))
    item1 = await queue.queue_implementation("r1")
    item2 = await queue.queue_implementation("r2")
    await queue.process_queue("user-1")

    platform.rollback_result = False
    refused = await queue.rollback(item1.id)
    platform.rollback_error = permanent("platform unavailable")
    errored = await queue.rollback(item2.id)

    for result in (refused, errored):
        assert not result.success
        assert result.state == QueueState.ROLLBACK_FAILED
        assert result.error_code == "ROLLBACK_FAILED"
    assert errored.message == "platform unavailable"
    assert recommendation_repo.items["r1"].status == RecommendationStatus.IMPLEMENTED
    with pytest.raises(ValidationError):
        await queue.rollback(item1.id)


@pytest.mark.anyio
async def test_unexpected_rollback_error_is_recorded(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")
    await queue.process_queue("user-1")
    platform.rollback_error = KeyError("state")

    result = await queue.rollback(item.id)

    assert not result.success
    assert result.state == QueueState.ROLLBACK_FAILED
    assert queue.get_item(item.id).state == QueueState.ROLLBACK_FAILED
    rec = recommendation_repo.items["r1"]
    assert rec.status == RecommendationStatus.IMPLEMENTED
    assert rec.last_error_code == "ROLLBACK_FAILED"


@pytest.mark.anyio
async def test_rollback_after_queue_was_cleared(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    await queue.queue_implementation("r1")
    await queue.process_queue("user-1")
    assert queue.clear_completed() == 1

    result = await queue.rollback_recommendation("r1")

    assert result.success
    assert result.state == QueueState.ROLLED_BACK
    assert platform.rolled_back[0].previous == {"daily_budget": 200.0}
    rec = recommendation_repo.items["r1"]
    assert rec.status == RecommendationStatus.ROLLED_BACK
    assert rec.rollback_snapshot is None
    with pytest.raises(ValidationError):
        await queue.rollback_recommendation("r1")


@pytest.mark.anyio
async def test_rollback_recommendation_uses_live_item(queue, recommendation_repo, platform):
    recommendation_repo.add(budget_rec("r1", "c1"))
    item = await queue.queue_implementation("r1")
    await queue.process_queue("user-1")

    result = await queue.rollback_recommendation("r1")

    assert result.queue_item_id == item.id
    assert queue.get_item(item.id).state == QueueState.ROLLED_BACK


@pytest.mark.anyio
async def test_rollback_recommendation_requires_implemented(queue, recommendation_repo):
    recommendation_repo.add(budget_rec("r1", "c1"))
    with pytest.raises(ValidationError):
        await queue.rollback_recommendation("r1")
    with pytest.raises(NotFoundError):
        await queue.rollback_recommendation("missing")
