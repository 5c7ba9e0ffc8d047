"""Spendboard - Meta API Endpoints.

Fetch functions for each Meta Marketing API resource the sync needs.
Each returns the raw rows; shaping happens in the transformer.
"""

import json
from datetime import date
from typing import Any, Dict, List, Set

from spendboard.connectors.meta.client import MetaClient
from spendboard.core.logging import get_logger

logger = get_logger("meta.endpoints")

PAGE_LIMIT = 500

ACCOUNT_FIELDS = "id,name"
CAMPAIGN_INSIGHT_FIELDS = "spend,impressions,clicks,campaign_name,campaign_id"
AD_INSIGHT_FIELDS = (
    "ad_name,ad_id,campaign_id,spend,impressions,clicks,actions,action_values"
)
CAMPAIGN_BUDGET_FIELDS = "id,name,daily_budget,lifetime_budget,effective_status"
ACTIVE_AD_FIELDS = "id,campaign_id"


def _time_range(since: date, until: date) -> str:
    return json.dumps({"since": since.isoformat(), "until": until.isoformat()})


class MetaEndpoints:
    """Typed access to the Meta endpoints used by the sync."""

    def __init__(self, client: MetaClient):
        self.client = client

    async def close(self) -> None:
        await self.client.close()

    # ── Accounts ──

    async def fetch_ad_accounts(self) -> List[Dict[str, Any]]:
        """All ad accounts visible to the token: `[{id, name}]`."""
        page = await self.client.fetch_all(
            "/me/adaccounts", {"fields": ACCOUNT_FIELDS, "limit": PAGE_LIMIT}
        )
        return page.data

    # ── Insights ──

    async def _insights(
        self, account_id: str, level: str, fields: str, since: date, until: date
    ) -> List[Dict[str, Any]]:
        params = {
            "fields": fields,
            "level": level,
            "time_increment": 1,
            "time_range": _time_range(since, until),
            "limit": PAGE_LIMIT,
        }
        page = await self.client.fetch_all(f"/{account_id}/insights", params)
        return page.data

    async def fetch_campaign_insights(
        self, account_id: str, since: date, until: date
    ) -> List[Dict[str, Any]]:
        """Campaign-level insights, one row per campaign per day."""
        return await self._insights(
            account_id, "campaign", CAMPAIGN_INSIGHT_FIELDS, since, until
        )

    async def fetch_ad_insights(
        self, account_id: str, since: date, until: date
    ) -> List[Dict[str, Any]]:
        """Ad-level insights, one row per ad per day."""
        return await self._insights(account_id, "ad", AD_INSIGHT_FIELDS, since, until)

    # ── Structure ──

    async def fetch_campaign_budgets(self, account_id: str) -> List[Dict[str, Any]]:
        """Campaigns with budget fields (minor currency units) and status."""
        page = await self.client.fetch_all(
            f"/{account_id}/campaigns",
            {"fields": CAMPAIGN_BUDGET_FIELDS, "limit": PAGE_LIMIT},
        )
        return page.data

    async def fetch_active_ad_campaign_ids(self, account_id: str) -> Set[str]:
        """Ids of campaigns that currently have at least one ACTIVE ad."""
        page = await self.client.fetch_all(
            f"/{account_id}/ads",
            {
                "fields": ACTIVE_AD_FIELDS,
                "effective_status": json.dumps(["ACTIVE"]),
                "limit": PAGE_LIMIT,
            },
        )
        return {str(ad["campaign_id"]) for ad in page.data if ad.get("campaign_id")}
