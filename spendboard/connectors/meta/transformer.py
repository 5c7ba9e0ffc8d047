"""Spendboard - Meta Raw → Fact Row Transformer.

Converts raw Meta insight/campaign rows into the column dictionaries the
store persists, enriching them with parsed naming attributes.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set

from spendboard.models.sync_models import WinnersFilters
from spendboard.naming.parsers import parse_ad_name, parse_campaign_name
from spendboard.naming.products import normalize_product_key
from spendboard.core.logging import get_logger

logger = get_logger("meta.transformer")

PURCHASE_ACTION_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase")


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    return int(_safe_float(value))


def _is_purchase(action_type: Any) -> bool:
    if not action_type or not isinstance(action_type, str):
        return False
    return action_type in PURCHASE_ACTION_TYPES or "purchase" in action_type


def _first_purchase_value(entries: Any) -> float:
    """Value of the first purchase-like entry.

    Meta reports the same purchases under several action types; summing them
    would double count.
    """
    for entry in entries or []:
        if _is_purchase(entry.get("action_type")) and entry.get("value") is not None:
            return _safe_float(entry["value"])
    return 0.0


def _row_date(row: Dict[str, Any]) -> Optional[str]:
    return row.get("date_start") or row.get("date_stop") or None


def campaign_fact_from_insight(
    row: Dict[str, Any], account: Dict[str, Any]
) -> Dict[str, Any]:
    """Shape one campaign insight row."""
    name = row.get("campaign_name") or ""
    naming = parse_campaign_name(name, account.get("name"))
    return {
        "account_id": account.get("id"),
        "account_name": account.get("name"),
        "campaign_id": row.get("campaign_id"),
        "campaign_name": row.get("campaign_name"),
        "date": _row_date(row),
        "spend": _safe_float(row.get("spend")),
        "impressions": _safe_int(row.get("impressions")),
        "clicks": _safe_int(row.get("clicks")),
        "code_country": naming.market,
        "product_name": naming.product,
        "product_with_animal": naming.product_with_variant,
        "animal": naming.variant,
        "type": naming.creative_type,
        "raw": naming.raw,
        "naming_date": naming.naming_date,
    }


def ad_fact_from_insight(row: Dict[str, Any], account: Dict[str, Any]) -> Dict[str, Any]:
    """Shape one ad insight row, extracting purchase count and value."""
    name = row.get("ad_name") or row.get("ad_id") or "-"
    naming = parse_ad_name(name, account.get("name"))
    return {
        "ad_id": row.get("ad_id"),
        "ad_name": name,
        "account_id": account.get("id"),
        "account_name": account.get("name"),
        "campaign_id": row.get("campaign_id"),
        "date": _row_date(row),
        "spend": _safe_float(row.get("spend")),
        "impressions": _safe_int(row.get("impressions")),
        "clicks": _safe_int(row.get("clicks")),
        "purchase_count": _safe_int(_first_purchase_value(row.get("actions"))),
        "purchase_value": _first_purchase_value(row.get("action_values")),
        "code_country": naming.market,
        "product_name": naming.product,
    }


def budget_from_campaign(
    row: Dict[str, Any],
    account: Dict[str, Any],
    active_campaign_ids: Optional[Set[str]] = None,
) -> Dict[str, Any]:
    """Shape one campaign metadata row. Budgets arrive in minor units."""
    campaign_id = str(row.get("id"))
    has_active_ads = None
    if active_campaign_ids is not None:
        has_active_ads = campaign_id in active_campaign_ids
    return {
        "account_id": str(account.get("id")),
        "account_name": account.get("name"),
        "campaign_id": campaign_id,
        "campaign_name": row.get("name") or campaign_id,
        "daily_budget": _safe_float(row.get("daily_budget")) / 100,
        "lifetime_budget": _safe_float(row.get("lifetime_budget")) / 100,
        "effective_status": row.get("effective_status"),
        "has_active_ads": has_active_ads,
    }


def compute_roas(purchase_value: float, spend: float) -> Optional[float]:
    """purchase value / spend, undefined when nothing was spent."""
    if spend > 0:
        return purchase_value / spend
    return None


def apply_winners_filters(
    rows: Iterable[Dict[str, Any]], filters: Optional[WinnersFilters]
) -> List[Dict[str, Any]]:
    """Keep only the daily rows of ads that pass the filters.

    Spend and ROAS thresholds are judged on each ad's totals over the window,
    so an ad is either kept whole or dropped whole.
    """
    rows = list(rows)
    if filters is None or filters.is_empty():
        return rows

    markets = {m.upper() for m in filters.markets or []}
    products = {normalize_product_key(p) for p in filters.products or []}

    totals: Dict[Any, Dict[str, float]] = defaultdict(lambda: {"spend": 0.0, "value": 0.0})
    for r in rows:
        key = (r.get("account_id"), r.get("ad_id"))
        totals[key]["spend"] += r.get("spend", 0.0)
        totals[key]["value"] += r.get("purchase_value", 0.0)

    def passes(r: Dict[str, Any]) -> bool:
        if markets and (r.get("code_country") or "").upper() not in markets:
            return False
        if products and normalize_product_key(r.get("product_name")) not in products:
            return False
        total = totals[(r.get("account_id"), r.get("ad_id"))]
        if filters.min_spend is not None and total["spend"] < filters.min_spend:
            return False
        if filters.min_roas is not None:
            roas = compute_roas(total["value"], total["spend"])
            if roas is None or roas < filters.min_roas:
                return False
        return True

    kept = [r for r in rows if passes(r)]
    logger.info(f"Winners filters kept {len(kept)} of {len(rows)} ad rows")
    return kept
