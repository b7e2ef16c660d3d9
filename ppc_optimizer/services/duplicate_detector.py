"""
Duplicate Detector: Keyword overlap analysis.
Finds keywords that compete with each other inside an account, either across
campaigns or through overlapping match types, and estimates the spend that
consolidation would save.
"""

import logging
from collections import defaultdict
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from ppc_optimizer.errors import NotFoundError
from ppc_optimizer.keyword_matching import infer_match_type, match_type_breadth, normalize_keyword
from ppc_optimizer.repositories import KeywordRepository
from ppc_optimizer.schemas import DuplicateGroup, KeywordRecord, MatchType

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}
INACTIVE_STATUSES = {"REMOVED", "ARCHIVED"}


class SavingsSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: float
    by_severity: dict[str, float]
    group_count: dict[str, int]


class ConsolidationPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    normalized_text: str
    keep: KeywordRecord
    keep_reason: str
    pause: list[KeywordRecord]


def effective_match_type(record: KeywordRecord) -> MatchType:
    """Stored match type, else the one implied by the keyword syntax, else broad."""
    return record.match_type or infer_match_type(record.text) or MatchType.BROAD


def _severity(instances: list[KeywordRecord], campaign_ids: list[str]) -> tuple[str, str]:
    active = [k for k in instances if k.status.upper() == "ENABLED"]
    if len(active) > 1 and len(campaign_ids) > 1:
        return "high", (
            "Multiple active instances across campaigns compete in the same auctions. "
            "Consolidate into the best-performing campaign and pause the others."
        )
    if len(active) > 1:
        return "medium", (
            "Multiple active instances in the same campaign. "
            "Keep one and pause the others to avoid wasted spend."
        )
    return "low", "Some instances are paused. Remove the paused duplicates to clean up the account."


def _rank_for_keep(record: KeywordRecord) -> tuple:
    # converting first, then lowest CPA, then highest spend, then id
    if record.conversions > 0:
        return (0, record.cpa, -record.cost, record.id)
    return (1, 0.0, -record.cost, record.id)


class DuplicateDetector:
    def __init__(self, keywords: KeywordRepository):
        self.keywords = keywords

    async def _load(self, account_id: str) -> list[KeywordRecord]:
        if not await self.keywords.account_exists(account_id):
            raise NotFoundError(f"Account {account_id} not found")
        return await self.keywords.list_keywords(account_id)

    async def find_duplicates(self, account_id: str) -> list[DuplicateGroup]:
        """Every normalized keyword text that occurs more than once in the account."""
        groups = self.group_keywords(await self._load(account_id))
        logger.info(f"Account {account_id}: {len(groups)} duplicate keyword groups")
        return groups

    async def find_cross_campaign_duplicates(self, account_id: str) -> list[DuplicateGroup]:
        return [g for g in await self.find_duplicates(account_id) if g.is_cross_campaign]

    async def find_match_type_conflicts(self, account_id: str) -> list[DuplicateGroup]:
        return [g for g in await self.find_duplicates(account_id) if g.has_match_type_conflict]

    @staticmethod
    def group_keywords(records: Iterable[KeywordRecord]) -> list[DuplicateGroup]:
        by_text: dict[str, list[KeywordRecord]] = defaultdict(list)
        for record in records:
            if record.status.upper() in INACTIVE_STATUSES:
                continue
            normalized = normalize_keyword(record.text)
            if normalized:
                by_text[normalized].append(record)

        groups = []
        for text, instances in by_text.items():
            if len(instances) < 2:
                continue
            instances = sorted(instances, key=lambda k: (k.campaign_id, k.id))
            campaign_ids = sorted({k.campaign_id for k in instances})
            match_types = sorted(
                {effective_match_type(k) for k in instances}, key=match_type_breadth
            )
            severity, recommendation = _severity(instances, campaign_ids)
            if len(match_types) > 1:
                recommendation += (
                    " Different match types overlap; keep the hierarchy exact > phrase > broad "
                    "or add cross-negatives."
                )
            groups.append(DuplicateGroup(
                normalized_text=text,
                match_types=match_types,
                campaign_ids=campaign_ids,
                instances=instances,
                total_cost=sum(k.cost for k in instances),
                total_conversions=sum(k.conversions for k in instances),
                severity=severity,
                recommendation=recommendation,
            ))

        groups.sort(key=lambda g: (SEVERITY_ORDER[g.severity], -g.total_cost, g.normalized_text))
        return groups

    @staticmethod
    def calculate_potential_savings(groups: Iterable[DuplicateGroup]) -> float:
        """Spend of every instance but the one kept, valued at the group's average cost."""
        return sum((g.instance_count - 1) * g.average_cost for g in groups if g.instance_count > 1)

    @classmethod
    def summarize_savings(cls, groups: Iterable[DuplicateGroup]) -> SavingsSummary:
        by_severity = {"high": 0.0, "medium": 0.0, "low": 0.0}
        count = {"high": 0, "medium": 0, "low": 0}
        for group in groups:
            by_severity[group.severity] += cls.calculate_potential_savings([group])
            count[group.severity] += 1
        return SavingsSummary(total=sum(by_severity.values()), by_severity=by_severity, group_count=count)

    @staticmethod
    def build_consolidation_plan(group: DuplicateGroup) -> ConsolidationPlan:
        """Keep the converting instance with the lowest CPA, else the highest spender."""
        active = [k for k in group.instances if k.status.upper() == "ENABLED"]
        candidates = active or list(group.instances)
        keep = min(candidates, key=_rank_for_keep)
        if keep.conversions > 0:
            reason = f"Lowest CPA ({keep.cpa:.2f}) among converting instances"
        else:
            reason = "No instance converts; kept the one with the most traffic history"
        return ConsolidationPlan(
            normalized_text=group.normalized_text,
            keep=keep,
            keep_reason=reason,
            pause=[k for k in group.instances if k.id != keep.id],
        )
