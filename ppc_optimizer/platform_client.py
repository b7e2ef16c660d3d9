"""
Advertising platform client.
Applies recommendation changes through the platform's MCP server (Streamable
HTTP transport) and restores the captured state on rollback.
"""

import json
import logging
from typing import Any, Optional, Protocol

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from ppc_optimizer.errors import ExternalApplyError
from ppc_optimizer.schemas import PlatformChange, PlatformSnapshot

logger = logging.getLogger(__name__)

MIN_BID = 0.02

NEGATIVE_MATCH_TYPES = {
    "EXACT": "NEGATIVE_EXACT",
    "PHRASE": "NEGATIVE_PHRASE",
    "BROAD": "NEGATIVE_BROAD",
}


class AdsPlatform(Protocol):
    async def apply(self, change: PlatformChange) -> PlatformSnapshot:
        """Apply the change and return the entity state captured just before it."""
        ...

    async def rollback(self, snapshot: PlatformSnapshot) -> bool:
        """Restore the snapshot; True when the platform accepted the restore."""
        ...


# ── Error Classification ─────────────────────────────────────────────

def is_transient(exc: BaseException) -> bool:
    """Timeouts, dropped connections, throttling and 5xx responses are worth retrying."""
    nested = getattr(exc, "exceptions", None)
    if nested:
        return any(is_transient(e) for e in nested)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _parse_result(result) -> Any:
    """Parse an MCP tool result into JSON where possible."""
    if getattr(result, "isError", False):
        text = " ".join(getattr(p, "text", "") for p in getattr(result, "content", []))
        raise ExternalApplyError(f"Platform rejected the call: {text[:500]}", transient=False)
    if hasattr(result, "content"):
        parts = [p.text for p in result.content if hasattr(p, "text")]
        if len(parts) == 1:
            try:
                return json.loads(parts[0])
            except (json.JSONDecodeError, TypeError):
                text = parts[0]
                if "Validation failed" in text or "Validation error" in text:
                    raise ExternalApplyError(f"Platform validation error: {text[:500]}", transient=False)
                return {"result": text}
        return {"result": parts}
    return {"result": str(result)}


def _first_list(result: Any, *keys: str) -> list:
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        for key in (*keys, "result", "results", "items", "success"):
            if isinstance(result.get(key), list):
                return result[key]
    return []


def _created_ids(result: Any) -> list[str]:
    ids = []
    for entry in _first_list(result, "success", "targets"):
        if not isinstance(entry, dict):
            continue
        target = entry.get("target") if isinstance(entry.get("target"), dict) else entry
        target_id = target.get("targetId") or target.get("id")
        if target_id:
            ids.append(str(target_id))
    return ids


# ── MCP Implementation ───────────────────────────────────────────────

class MCPAdsPlatform:
    """
    AdsPlatform backed by the advertising MCP server.
    Every apply reads the entity first so the snapshot holds the exact values to restore.
    """

    def __init__(
        self,
        url: str,
        client_id: str,
        access_token: str,
        profile_id: Optional[str] = None,
    ):
        self.url = url
        self.client_id = client_id
        self.access_token = access_token
        self.profile_id = profile_id

    @property
    def headers(self) -> dict[str, str]:
        h = {
            "Amazon-Ads-ClientId": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json, text/event-stream",
        }
        if self.profile_id:
            h["Amazon-Advertising-API-Scope"] = self.profile_id
            h["Amazon-Ads-AI-Account-Selection-Mode"] = "FIXED"
        return h

    async def call_tool(self, tool_name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        """Call a single MCP tool, translating failures into ExternalApplyError."""
        arguments = arguments or {}
        logger.info(f"MCP call: {tool_name} with args keys: {list(arguments.keys())}")
        try:
            async with streamablehttp_client(url=self.url, headers=self.headers) as (
                read_stream,
                write_stream,
                _,
            ):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    result = await session.call_tool(tool_name, arguments)
                    return _parse_result(result)
        except ExternalApplyError:
            raise
        except Exception as e:
            transient = is_transient(e)
            logger.error(f"MCP tool call failed: {tool_name} - {e} (transient={transient})")
            raise ExternalApplyError(f"Failed to call {tool_name}: {e}", transient=transient)

    # ── Reads ────────────────────────────────────────────────────────

    async def _get_campaign(self, campaign_id: str) -> dict:
        result = await self.call_tool("campaign_management-query_campaign", {
            "body": {"campaignIdFilter": {"include": [campaign_id]}}
        })
        campaigns = _first_list(result, "campaigns")
        if not campaigns:
            raise ExternalApplyError(f"Campaign {campaign_id} not found on platform", transient=False)
        return campaigns[0]

    async def _get_targets(self, campaign_id: str, target_ids: Optional[list[str]] = None) -> list[dict]:
        body = {"campaignIdFilter": {"include": [campaign_id]}}
        if target_ids:
            body["targetIdFilter"] = {"include": target_ids}
        result = await self.call_tool("campaign_management-query_target", {"body": body})
        return [t for t in _first_list(result, "targets") if isinstance(t, dict)]

    async def _get_target(self, campaign_id: str, target_id: str) -> dict:
        targets = await self._get_targets(campaign_id, [target_id])
        if not targets:
            raise ExternalApplyError(f"Keyword {target_id} not found on platform", transient=False)
        return targets[0]

    @staticmethod
    def _daily_budget(campaign: dict) -> Optional[float]:
        budget = campaign.get("dailyBudget") or campaign.get("budget")
        if not budget and campaign.get("budgets"):
            for b in campaign["budgets"]:
                if b.get("recurrenceTimePeriod") == "DAILY":
                    mv = b.get("budgetValue", {}).get("monetaryBudgetValue", {}).get("monetaryBudget", {})
                    budget = mv.get("value")
                    break
        return float(budget) if budget else None

    # ── Writes ───────────────────────────────────────────────────────

    async def _set_budget(self, campaign_id: str, budget: float):
        await self.call_tool("campaign_management-update_campaign_budget", {
            "body": {"campaigns": [{"campaignId": campaign_id, "dailyBudget": budget}]}
        })

    async def _set_campaign_state(self, campaign_id: str, state: str):
        await self.call_tool("campaign_management-update_campaign_state", {
            "body": {"campaigns": [{"campaignId": campaign_id, "state": state}]}
        })

    async def _set_bids(self, bids: dict[str, float]):
        await self.call_tool("campaign_management-update_target_bid", {
            "body": {"targets": [{"targetId": tid, "bid": bid} for tid, bid in bids.items()]}
        })

    async def _set_target_state(self, target_id: str, state: str):
        await self.call_tool("campaign_management-update_target", {
            "body": {"targets": [{"targetId": target_id, "state": state}]}
        })

    async def _delete_targets(self, target_ids: list[str]):
        await self.call_tool("campaign_management-delete_target", {"body": {"targetIds": target_ids}})

    @staticmethod
    def _adjusted(bid: float, percentage: float) -> float:
        return max(round(bid * (1 + percentage / 100.0), 2), MIN_BID)

    async def apply(self, change: PlatformChange) -> PlatformSnapshot:
        op = change.operation
        args = change.arguments
        previous: dict[str, Any] = {}

        if op == "update_campaign_budget":
            campaign = await self._get_campaign(change.entity_id)
            previous["daily_budget"] = self._daily_budget(campaign)
            await self._set_budget(change.entity_id, args["daily_budget"])

        elif op == "update_campaign_state":
            campaign = await self._get_campaign(change.entity_id)
            previous["state"] = campaign.get("state") or "ENABLED"
            await self._set_campaign_state(change.entity_id, args["state"])

        elif op == "adjust_keyword_bid":
            target = await self._get_target(change.campaign_id, change.entity_id)
            bid = float(target.get("bid") or 0)
            if bid <= 0:
                raise ExternalApplyError(f"Keyword {change.entity_id} has no bid to adjust", transient=False)
            previous["bids"] = {change.entity_id: bid}
            await self._set_bids({change.entity_id: self._adjusted(bid, args["percentage"])})

        elif op == "adjust_campaign_bids":
            targets = await self._get_targets(change.campaign_id)
            bids = {
                str(t.get("targetId")): float(t["bid"])
                for t in targets if t.get("targetId") and t.get("bid")
            }
            if not bids:
                raise ExternalApplyError(f"Campaign {change.campaign_id} has no bids to adjust", transient=False)
            previous["bids"] = bids
            await self._set_bids({tid: self._adjusted(bid, args["percentage"]) for tid, bid in bids.items()})

        elif op == "update_keyword_state":
            target = await self._get_target(change.campaign_id, change.entity_id)
            previous["state"] = target.get("state") or "ENABLED"
            await self._set_target_state(change.entity_id, args["state"])

        elif op == "update_keyword_match_type":
            # Match type is immutable on the platform: create the replacement, pause the original.
            target = await self._get_target(change.campaign_id, change.entity_id)
            keyword = target.get("keyword") or target.get("keywordText") or ""
            result = await self.call_tool("campaign_management-create_target", {"body": {"targets": [{
                "campaignId": change.campaign_id,
                "adGroupId": target.get("adGroupId"),
                "keyword": keyword,
                "matchType": args["match_type"],
                "bid": target.get("bid"),
                "state": "ENABLED",
            }]}})
            previous["state"] = target.get("state") or "ENABLED"
            previous["created_target_ids"] = _created_ids(result)
            await self._set_target_state(change.entity_id, "PAUSED")

        elif op == "add_negative_keywords":
            match_type = NEGATIVE_MATCH_TYPES[args["match_type"]]
            result = await self.call_tool("campaign_management-create_target", {"body": {"targets": [
                {"campaignId": change.campaign_id, "keyword": kw, "matchType": match_type, "state": "ENABLED"}
                for kw in args["keywords"]
            ]}})
            previous["created_target_ids"] = _created_ids(result)

        elif op == "update_bidding_strategy":
            campaign = await self._get_campaign(change.entity_id)
            previous["dynamic_bidding"] = campaign.get("dynamicBidding")
            await self.call_tool("campaign_management-update_campaign", {"body": {"campaigns": [{
                "campaignId": change.entity_id,
                "dynamicBidding": {"strategy": args["strategy"], **{
                    k: v for k, v in args.items() if k != "strategy"
                }},
            }]}})

        else:
            raise ExternalApplyError(f"Unsupported platform operation: {op}", transient=False)

        logger.info(f"Applied {op} on {change.entity_type} {change.entity_id}")
        return PlatformSnapshot(
            operation=op,
            entity_type=change.entity_type,
            entity_id=change.entity_id,
            campaign_id=change.campaign_id,
            previous=previous,
        )

    async def rollback(self, snapshot: PlatformSnapshot) -> bool:
        op = snapshot.operation
        prev = snapshot.previous

        if op == "update_campaign_budget":
            if prev.get("daily_budget") is None:
                return False
            await self._set_budget(snapshot.entity_id, prev["daily_budget"])
        elif op == "update_campaign_state":
            await self._set_campaign_state(snapshot.entity_id, prev["state"])
        elif op in ("adjust_keyword_bid", "adjust_campaign_bids"):
            await self._set_bids(prev["bids"])
        elif op == "update_keyword_state":
            await self._set_target_state(snapshot.entity_id, prev["state"])
        elif op == "update_keyword_match_type":
            if prev.get("created_target_ids"):
                await self._delete_targets(prev["created_target_ids"])
            await self._set_target_state(snapshot.entity_id, prev["state"])
        elif op == "add_negative_keywords":
            if not prev.get("created_target_ids"):
                return False
            await self._delete_targets(prev["created_target_ids"])
        elif op == "update_bidding_strategy":
            await self.call_tool("campaign_management-update_campaign", {"body": {"campaigns": [{
                "campaignId": snapshot.entity_id,
                "dynamicBidding": prev.get("dynamic_bidding"),
            }]}})
        else:
            return False

        logger.info(f"Rolled back {op} on {snapshot.entity_type} {snapshot.entity_id}")
        return True


def create_platform(settings) -> MCPAdsPlatform:
    """Factory function to create the platform client from settings."""
    return MCPAdsPlatform(
        url=settings.platform_mcp_url,
        client_id=settings.platform_client_id,
        access_token=settings.platform_access_token,
        profile_id=settings.platform_profile_id or None,
    )
