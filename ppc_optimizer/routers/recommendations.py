"""
Recommendations Router: Review updates, implementation queue and rollback.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ppc_optimizer.auth import get_current_user_id
from ppc_optimizer.dependencies import get_implementation_queue, get_recommendation_repository
from ppc_optimizer.errors import NotFoundError, RollbackError
from ppc_optimizer.repositories import RecommendationRepository
from ppc_optimizer.schemas import (
    ImplementationResult,
    Priority,
    QueueItem,
    Recommendation,
    RecommendationStatus,
    RecommendationUpdate,
)
from ppc_optimizer.services.implementation_queue import ImplementationQueue

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    recommendation_id: str
    priority: Optional[Priority] = None


class ProcessRequest(BaseModel):
    max_concurrent: Optional[int] = Field(default=None, ge=1)
    dry_run: bool = False
    force: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)


# ── Recommendations ───────────────────────────────────────────────────

@router.get("", response_model=list[Recommendation])
async def list_recommendations(
    campaign_id: Optional[str] = Query(None),
    status: Optional[RecommendationStatus] = Query(None),
    recommendations: RecommendationRepository = Depends(get_recommendation_repository),
):
    return await recommendations.list_recommendations(
        campaign_id=campaign_id, statuses=[status] if status else None
    )


@router.get("/{recommendation_id}", response_model=Recommendation)
async def get_recommendation(
    recommendation_id: str,
    recommendations: RecommendationRepository = Depends(get_recommendation_repository),
):
    rec = await recommendations.get(recommendation_id)
    if rec is None:
        raise NotFoundError(f"Recommendation {recommendation_id} not found")
    return rec


@router.patch("/{recommendation_id}", response_model=Recommendation)
async def update_recommendation(
    recommendation_id: str,
    payload: Any = Body(...),
    recommendations: RecommendationRepository = Depends(get_recommendation_repository),
):
    """Only status, priority and estimated_impact may change; status follows the review workflow."""
    update = RecommendationUpdate.parse(payload)
    return await recommendations.update(recommendation_id, update)


@router.post("/{recommendation_id}/rollback", response_model=ImplementationResult)
async def rollback_recommendation(
    recommendation_id: str,
    queue: ImplementationQueue = Depends(get_implementation_queue),
):
    """Undo an IMPLEMENTED recommendation from its stored snapshot, even after the queue was cleared."""
    result = await queue.rollback_recommendation(recommendation_id)
    if not result.success:
        raise RollbackError(result.message, details=result.model_dump(mode="json"))
    return result


# ── Implementation Queue ──────────────────────────────────────────────

@router.post("/queue", response_model=QueueItem)
async def enqueue(
    req: EnqueueRequest,
    queue: ImplementationQueue = Depends(get_implementation_queue),
):
    return await queue.queue_implementation(req.recommendation_id, req.priority)


@router.get("/queue/status")
async def queue_status(queue: ImplementationQueue = Depends(get_implementation_queue)):
    return queue.get_queue_status()


@router.get("/queue/items", response_model=list[QueueItem])
async def queue_items(queue: ImplementationQueue = Depends(get_implementation_queue)):
    return queue.list_items()


@router.post("/queue/process", response_model=list[ImplementationResult])
async def process_queue(
    req: Optional[ProcessRequest] = None,
    user_id: str = Depends(get_current_user_id),
    queue: ImplementationQueue = Depends(get_implementation_queue),
):
    req = req or ProcessRequest()
    return await queue.process_queue(
        user_id,
        max_concurrent=req.max_concurrent,
        dry_run=req.dry_run,
        force=req.force,
        timeout=req.timeout,
    )


@router.post("/queue/clear")
async def clear_completed(queue: ImplementationQueue = Depends(get_implementation_queue)):
    return {"cleared": queue.clear_completed()}


@router.post("/queue/{item_id}/rollback", response_model=ImplementationResult)
async def rollback(
    item_id: str,
    queue: ImplementationQueue = Depends(get_implementation_queue),
):
    """Restore the pre-change state of a SUCCEEDED item. A failed restore is a 502."""
    result = await queue.rollback(item_id)
    if not result.success:
        raise RollbackError(result.message, details=result.model_dump(mode="json"))
    return result
