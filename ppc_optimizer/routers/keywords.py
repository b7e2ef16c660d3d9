"""
Keywords Router: Duplicate keyword and match-type conflict detection.
"""

from fastapi import APIRouter, Depends, Query

from ppc_optimizer.dependencies import get_duplicate_detector
from ppc_optimizer.errors import ValidationError
from ppc_optimizer.services.duplicate_detector import DuplicateDetector

router = APIRouter()

SCOPES = ("all", "cross_campaign", "match_type")


@router.get("/{account_id}/duplicates")
async def find_duplicates(
    account_id: str,
    scope: str = Query("all"),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
):
    """Duplicate groups with savings and a consolidation plan per group."""
    if scope not in SCOPES:
        raise ValidationError(f"scope must be one of {', '.join(SCOPES)}", details={"scope": scope})

    if scope == "cross_campaign":
        groups = await detector.find_cross_campaign_duplicates(account_id)
    elif scope == "match_type":
        groups = await detector.find_match_type_conflicts(account_id)
    else:
        groups = await detector.find_duplicates(account_id)

    return {
        "account_id": account_id,
        "scope": scope,
        "groups": [g.model_dump(mode="json") for g in groups],
        "potential_savings": detector.calculate_potential_savings(groups),
        "savings": detector.summarize_savings(groups).model_dump(),
        "consolidation": [detector.build_consolidation_plan(g).model_dump(mode="json") for g in groups],
    }
