"""
Implementation Queue: Applies approved recommendations to the ads platform.

Items are served by priority (critical first), then enqueue order. A run
claims each PENDING item before touching the platform, so concurrent runs
never apply the same item twice. Failures are recorded per item and never
abort the rest of the run. Every outcome is written back to the
recommendation, so a SUCCEEDED change can still be rolled back after its
queue item has been cleared.
"""

import asyncio
import logging
from itertools import count
from typing import Awaitable, Callable, Optional

from ppc_optimizer.changes import build_platform_change, conflicts_between
from ppc_optimizer.config import Settings, get_settings
from ppc_optimizer.errors import (
    ExternalApplyError,
    NotFoundError,
    QueueStoppedError,
    ValidationError,
)
from ppc_optimizer.platform_client import AdsPlatform
from ppc_optimizer.repositories import MetricsRepository, RecommendationRepository
from ppc_optimizer.schemas import (
    ACTIONABLE_STATUSES,
    ImplementationOutcome,
    ImplementationResult,
    PlatformChange,
    Priority,
    QueueItem,
    QueueState,
    Recommendation,
    RecommendationStatus,
)
from ppc_optimizer.utils import utcnow

logger = logging.getLogger(__name__)

REMOVED_CAMPAIGN_STATES = frozenset({"REMOVED", "ARCHIVED"})


class ImplementationQueue:
    def __init__(
        self,
        recommendations: RecommendationRepository,
        platform: AdsPlatform,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        campaigns: Optional[MetricsRepository] = None,
    ):
        self.recommendations = recommendations
        self.platform = platform
        self.settings = settings or get_settings()
        self.campaigns = campaigns
        self._sleep = sleep
        self._items: dict[str, QueueItem] = {}
        self._sequence = count()
        self._running = False
        # Bounds platform calls across every run, not just within one
        self._limiter = asyncio.Semaphore(self.settings.queue_max_concurrent)
        self._runs: set[asyncio.Future] = set()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._rolling_back: set[str] = set()
        self.peak_running = 0

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        self._running = True
        logger.info("Implementation queue started")

    async def stop(self):
        """Refuse new work, stop active runs from dispatching, and wait for them to finish."""
        self._running = False
        if self._runs:
            logger.info(f"Waiting for {len(self._runs)} active queue run(s) to finish")
            await asyncio.wait(list(self._runs))
        await self._idle.wait()
        logger.info("Implementation queue stopped")

    def _require_running(self):
        if not self._running:
            raise QueueStoppedError("Implementation queue is not running")

    # ── Enqueue & inspection ─────────────────────────────────────────

    async def queue_implementation(
        self, recommendation_id: str, priority: Optional[Priority] = None
    ) -> QueueItem:
        """
        Add a recommendation to the queue. If it is already waiting or running,
        the existing item is returned instead of a duplicate.
        """
        self._require_running()
        recommendation = await self.recommendations.get(recommendation_id)
        if recommendation is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")

        for item in self._items.values():
            if item.recommendation_id == recommendation_id and item.state in (QueueState.PENDING, QueueState.RUNNING):
                logger.info(f"Recommendation {recommendation_id} already queued as {item.id}")
                return item.model_copy()

        item = QueueItem(
            recommendation_id=recommendation_id,
            priority=priority or recommendation.priority,
            sequence=next(self._sequence),
        )
        self._items[item.id] = item
        logger.info(f"Queued {recommendation_id} as {item.id} (priority={item.priority.value})")
        return item.model_copy()

    def get_item(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        return item.model_copy()

    def list_items(self) -> list[QueueItem]:
        return [i.model_copy() for i in sorted(self._items.values(), key=lambda i: i.sequence)]

    def get_queue_status(self) -> dict[str, int]:
        status = {state.value: 0 for state in QueueState}
        for item in self._items.values():
            status[item.state.value] += 1
        status["total"] = len(self._items)
        return status

    def clear_completed(self) -> int:
        """Drop terminal items; PENDING and RUNNING items are kept."""
        done = [item_id for item_id, item in self._items.items() if item.is_terminal]
        for item_id in done:
            del self._items[item_id]
        if done:
            logger.info(f"Cleared {len(done)} completed queue items")
        return len(done)

    def _pending_in_order(self) -> list[QueueItem]:
        pending = [i for i in self._items.values() if i.state == QueueState.PENDING]
        return sorted(pending, key=lambda i: (i.priority.rank, i.sequence))

    # ── Processing ───────────────────────────────────────────────────

    async def process_queue(
        self,
        user_id: str,
        max_concurrent: Optional[int] = None,
        dry_run: bool = False,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> list[ImplementationResult]:
        """
        Process every PENDING item with at most ``max_concurrent`` platform
        calls in flight (never more than ``queue_max_concurrent`` across all
        runs). On timeout, cancellation or stop() no further items start;
        items already started run to completion. Returns one result per
        item this run dispatched.
        """
        self._require_running()
        max_concurrent = max_concurrent or self.settings.queue_max_concurrent
        if max_concurrent < 1:
            raise ValidationError("max_concurrent must be at least 1", details={"max_concurrent": max_concurrent})

        candidates = self._pending_in_order()
        if not candidates:
            return []
        logger.info(
            f"Processing {len(candidates)} queue items for user {user_id} "
            f"(max_concurrent={max_concurrent}, dry_run={dry_run}, force={force})"
        )

        context = await self._conflict_context(candidates)
        semaphore = asyncio.Semaphore(max_concurrent)
        halted = asyncio.Event()

        def stopping() -> bool:
            return halted.is_set() or not self._running

        async def worker(item: QueueItem) -> Optional[ImplementationResult]:
            async with semaphore:
                if stopping():
                    return None
                if dry_run:
                    return await self._preview(item, context, force)
                async with self._limiter:
                    if stopping() or item.state != QueueState.PENDING:
                        return None  # halted, or claimed by a concurrent run
                    item.state = QueueState.RUNNING
                    item.started_at = utcnow()
                    return await self._run_item(item, context, force, user_id)

        gathered = asyncio.gather(*(worker(item) for item in candidates))
        self._runs.add(gathered)
        gathered.add_done_callback(self._runs.discard)
        try:
            results = await asyncio.wait_for(asyncio.shield(gathered), timeout)
        except asyncio.TimeoutError:
            halted.set()
            logger.warning(f"Queue run timed out after {timeout}s; letting started items finish")
            results = await gathered
        except asyncio.CancelledError:
            halted.set()
            logger.warning("Queue run cancelled; letting started items finish")
            await gathered
            raise

        dispatched = [r for r in results if r is not None]
        succeeded = sum(1 for r in dispatched if r.success)
        logger.info(f"Queue run finished: {succeeded}/{len(dispatched)} succeeded")
        return dispatched

    async def _conflict_context(self, candidates: list[QueueItem]) -> list[Recommendation]:
        """Recommendations in this run plus those already live on the platform."""
        ids = [i.recommendation_id for i in candidates]
        ids += [i.recommendation_id for i in self._items.values() if i.state == QueueState.SUCCEEDED]
        context = []
        for rec_id in dict.fromkeys(ids):
            try:
                rec = await self.recommendations.get(rec_id)
            except Exception as e:
                logger.error(f"Could not load recommendation {rec_id} for conflict checks: {e}", exc_info=True)
                continue
            if rec is not None:
                context.append(rec)
        return context

    @staticmethod
    def _conflicts(recommendation: Recommendation, context: list[Recommendation]) -> list[str]:
        found = []
        for other in context:
            if other.id == recommendation.id:
                continue
            try:
                if conflicts_between(recommendation, other):
                    found.append(other.id)
            except ValidationError:
                continue  # the other item fails on its own
        return found

    async def _check(
        self, item: QueueItem, context: list[Recommendation], force: bool
    ) -> tuple[Optional[Recommendation], Optional[ImplementationResult]]:
        """Re-read the recommendation and make sure it may be applied now."""
        rec = await self.recommendations.get(item.recommendation_id)
        if rec is None:
            return None, self._result(item, False, f"Recommendation {item.recommendation_id} no longer exists", "NOT_FOUND")
        if rec.status not in ACTIONABLE_STATUSES:
            return None, self._result(
                item, False,
                f"Recommendation is {rec.status.value}; only APPROVED recommendations are applied",
                "NOT_ACTIONABLE",
            )
        if rec.is_expired():
            return None, self._result(
                item, False, f"Recommendation expired at {rec.valid_until.isoformat()}", "EXPIRED"
            )
        if self.campaigns is not None:
            campaign = await self.campaigns.get_campaign(rec.campaign_id)
            if campaign is not None and campaign.status.upper() in REMOVED_CAMPAIGN_STATES:
                return None, self._result(
                    item, False, f"Campaign {rec.campaign_id} is {campaign.status}; it cannot be modified",
                    "CAMPAIGN_REMOVED",
                )
        if not force:
            conflicting = self._conflicts(rec, context)
            if conflicting:
                return None, self._result(
                    item, False,
                    f"Conflicts with recommendation(s) {', '.join(conflicting)}; use force to apply anyway",
                    "CONFLICT",
                )
        return rec, None

    async def _preview(self, item: QueueItem, context: list[Recommendation], force: bool) -> ImplementationResult:
        try:
            rec, rejection = await self._check(item, context, force)
            if rejection is not None:
                return rejection
            change = build_platform_change(rec)
        except ValidationError as e:
            return self._result(item, False, e.message, e.code)
        except Exception as e:
            logger.error(f"Dry run of queue item {item.id} failed: {e}", exc_info=True)
            return self._result(item, False, f"Unexpected error: {e}", "INTERNAL_ERROR")
        return self._result(item, True, f"Dry run: would call {change.operation}", preview=change)

    async def _run_item(
        self, item: QueueItem, context: list[Recommendation], force: bool, user_id: str
    ) -> ImplementationResult:
        self._in_flight += 1
        self._idle.clear()
        self.peak_running = max(self.peak_running, self._in_flight)
        try:
            return await self._implement(item, context, force, user_id)
        except Exception as e:
            logger.error(f"Unexpected error processing queue item {item.id}: {e}", exc_info=True)
            return await self._complete(item, QueueState.FAILED, f"Unexpected error: {e}", "INTERNAL_ERROR")
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _implement(
        self, item: QueueItem, context: list[Recommendation], force: bool, user_id: str
    ) -> ImplementationResult:
        rec, rejection = await self._check(item, context, force)
        if rejection is not None:
            if rejection.error_code == "NOT_FOUND":
                return self._finish(item, QueueState.FAILED, rejection.message, rejection.error_code)
            return await self._complete(item, QueueState.FAILED, rejection.message, rejection.error_code)

        try:
            change = build_platform_change(rec)
        except ValidationError as e:
            return await self._complete(
                item, QueueState.FAILED, e.message, e.code, status=RecommendationStatus.FAILED
            )

        try:
            snapshot = await self._apply_with_retry(item, change)
        except ExternalApplyError as e:
            return await self._complete(
                item, QueueState.FAILED, e.message, e.code, status=RecommendationStatus.FAILED, preview=change
            )
        except Exception as e:
            logger.error(f"Unexpected error applying {item.id}: {e}", exc_info=True)
            return await self._complete(
                item, QueueState.FAILED, f"Unexpected error: {e}", "INTERNAL_ERROR",
                status=RecommendationStatus.FAILED, preview=change,
            )

        item.pre_change_snapshot = snapshot
        return await self._complete(
            item, QueueState.SUCCEEDED, f"Applied {change.operation} to {change.entity_type} {change.entity_id}",
            status=RecommendationStatus.IMPLEMENTED, user_id=user_id, preview=change,
        )

    async def _apply_with_retry(self, item: QueueItem, change: PlatformChange):
        """Transient failures back off exponentially; permanent ones raise at once."""
        max_attempts = self.settings.apply_max_attempts
        for attempt in range(1, max_attempts + 1):
            item.attempt_count = attempt
            try:
                return await self.platform.apply(change)
            except ExternalApplyError as e:
                item.last_error = e.message
                if not e.transient or attempt == max_attempts:
                    raise
                delay = self.settings.apply_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f"Transient failure applying {item.id} (attempt {attempt}/{max_attempts}): "
                    f"{e.message}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

    async def _complete(
        self,
        item: QueueItem,
        state: QueueState,
        message: str,
        error_code: Optional[str] = None,
        status: Optional[RecommendationStatus] = None,
        user_id: Optional[str] = None,
        preview: Optional[PlatformChange] = None,
    ) -> ImplementationResult:
        """Finish the item and write the outcome back to its recommendation."""
        result = self._finish(item, state, message, error_code, preview=preview)
        failed = state != QueueState.SUCCEEDED
        await self._record(item, ImplementationOutcome(
            state=state,
            status=status,
            user_id=user_id,
            attempts=item.attempt_count,
            snapshot=item.pre_change_snapshot,
            error=message if failed else None,
            error_code=error_code if failed else None,
        ))
        return result

    async def _record(self, item: QueueItem, outcome: ImplementationOutcome):
        """The queue item already holds the outcome; a failed write is logged, not raised."""
        try:
            await self.recommendations.record_outcome(item.recommendation_id, outcome)
        except Exception as e:
            logger.error(
                f"Could not record {outcome.state.value} outcome of {item.id} "
                f"on recommendation {item.recommendation_id}: {e}",
                exc_info=True,
            )

    def _finish(
        self,
        item: QueueItem,
        state: QueueState,
        message: str,
        error_code: Optional[str] = None,
        preview: Optional[PlatformChange] = None,
    ) -> ImplementationResult:
        item.state = state
        item.finished_at = utcnow()
        if state == QueueState.FAILED:
            item.last_error = message
            item.error_code = error_code
            logger.warning(f"Queue item {item.id} failed after {item.attempt_count} attempt(s): {message}")
        else:
            logger.info(f"Queue item {item.id} {state.value}: {message}")
        return self._result(item, state == QueueState.SUCCEEDED, message, error_code, preview=preview)

    @staticmethod
    def _result(
        item: QueueItem,
        success: bool,
        message: str,
        error_code: Optional[str] = None,
        preview: Optional[PlatformChange] = None,
    ) -> ImplementationResult:
        return ImplementationResult(
            queue_item_id=item.id,
            recommendation_id=item.recommendation_id,
            success=success,
            state=item.state,
            message=message,
            error_code=error_code,
            attempts=item.attempt_count,
            preview=preview,
            snapshot=item.pre_change_snapshot,
        )

    # ── Rollback ─────────────────────────────────────────────────────

    async def rollback(self, item_id: str) -> ImplementationResult:
        """Restore the pre-change snapshot of a SUCCEEDED item. Never retried."""
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        if item.state != QueueState.SUCCEEDED or item.pre_change_snapshot is None:
            raise ValidationError(
                f"Queue item {item_id} is {item.state.value}; only SUCCEEDED items with a snapshot can be rolled back"
            )
        if item_id in self._rolling_back:
            raise ValidationError(f"Queue item {item_id} is already being rolled back")

        self._rolling_back.add(item_id)
        try:
            try:
                restored = await self.platform.rollback(item.pre_change_snapshot)
                error = None if restored else "Platform refused to restore the snapshot"
            except ExternalApplyError as e:
                restored, error = False, e.message
            except Exception as e:
                logger.error(f"Unexpected error rolling back {item_id}: {e}", exc_info=True)
                restored, error = False, f"Unexpected error: {e}"

            item.finished_at = utcnow()
            if restored:
                item.state = QueueState.ROLLED_BACK
                await self._record(item, ImplementationOutcome(
                    state=QueueState.ROLLED_BACK,
                    status=RecommendationStatus.ROLLED_BACK,
                    attempts=item.attempt_count,
                ))
                logger.info(f"Queue item {item_id} rolled back")
                return self._result(item, True, "Rolled back to the pre-change snapshot")

            item.state = QueueState.ROLLBACK_FAILED
            item.last_error = error
            item.error_code = "ROLLBACK_FAILED"
            await self._record(item, ImplementationOutcome(
                state=QueueState.ROLLBACK_FAILED,
                attempts=item.attempt_count,
                error=error,
                error_code="ROLLBACK_FAILED",
            ))
            logger.error(f"Rollback of queue item {item_id} failed: {error}; manual resolution needed")
            return self._result(item, False, error, "ROLLBACK_FAILED")
        finally:
            self._rolling_back.discard(item_id)

    async def rollback_recommendation(self, recommendation_id: str) -> ImplementationResult:
        """
        Roll back an IMPLEMENTED recommendation. Uses its SUCCEEDED queue item
        when one is still held, otherwise the snapshot stored on the
        recommendation when it was applied.
        """
        for item in self._items.values():
            if item.recommendation_id == recommendation_id and item.state == QueueState.SUCCEEDED:
                return await self.rollback(item.id)

        rec = await self.recommendations.get(recommendation_id)
        if rec is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")
        if rec.status != RecommendationStatus.IMPLEMENTED or rec.rollback_snapshot is None:
            raise ValidationError(
                f"Recommendation {recommendation_id} is {rec.status.value}; only IMPLEMENTED "
                f"recommendations with a stored snapshot can be rolled back"
            )

        item = QueueItem(
            recommendation_id=recommendation_id,
            priority=rec.priority,
            sequence=next(self._sequence),
            state=QueueState.SUCCEEDED,
            attempt_count=rec.apply_attempts,
            pre_change_snapshot=rec.rollback_snapshot,
            started_at=rec.implemented_at,
            finished_at=rec.implemented_at,
        )
        self._items[item.id] = item
        logger.info(f"Restored queue item {item.id} for {recommendation_id} from its stored snapshot")
        return await self.rollback(item.id)
