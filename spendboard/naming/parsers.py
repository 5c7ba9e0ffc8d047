"""Spendboard - Campaign, Ad and Account Naming Parsers.

Naming conventions used by the media buyers:

  campaign: CBO_[MARKET]_[PRODUCT NAME]_[ANIMAL]_[TYPE]_[DATE]
            e.g. CBO_ES_SMART_BALL_CAT_BASIC_20250216
  short:    CBO_[MARKET]_[PRODUCT]_[ANIMAL]_[TYPE]
            e.g. CBO_MX_DENTALWIPES_DOG_TESTING #7
  ad:       [ID]_[MARKET]_[PRODUCT NAME]_[CONCEPT]_[TYPE]_[FORMAT]
            e.g. 1094_EN_SMART_BALL_CAT_BASIC_MASHUP_VIDEO_4x5
  account:  [BRAND] [MARKET] [MODEL] [CURRENCY]
            e.g. VELUNAPETS SI COD $

Every parser is total: bad input yields a defaulted result, never an exception.
"""

import re

from pydantic import BaseModel

from spendboard.naming.products import OTHER, normalize_product_name

MARKET_RE = re.compile(r"^[A-Z]{2,3}$")
# Tolerates prefixes and stray spaces: "[NEW] CBO_GR_...", "CBO _HR_..."
MARKET_SEARCH_RE = re.compile(r"(?:CBO|ABO)\s*_\s*([A-Z]{2,3})(?:_|$|\s)", re.IGNORECASE)
BUDGET_PREFIX_RE = re.compile(r"^(CBO|ABO)$", re.IGNORECASE)

KNOWN_CONCEPTS = ("BASIC", "PROMO", "MASHUP", "UGG")
KNOWN_CREATIVE_TYPES = ("VIDEO", "IMAGE", "CAROUSEL")


class CampaignNaming(BaseModel):
    market: str = ""
    product: str = OTHER
    product_with_variant: str = OTHER
    variant: str = ""
    creative_type: str = ""
    naming_date: str = ""
    raw: str = ""


class AdNaming(BaseModel):
    id: str = ""
    market: str = ""
    product: str = OTHER
    target: str = ""
    offer: str = ""
    concept: str = "-"
    creative_type: str = "-"
    format: str = "-"
    raw: str = ""


def extract_market_from_account(account_name) -> str:
    """Second whitespace token of the account name, if it is 2-3 letters."""
    if not account_name or not isinstance(account_name, str):
        return ""
    parts = account_name.split()
    if len(parts) < 2:
        return ""
    code = parts[1].upper()
    return code if MARKET_RE.match(code) else ""


def _campaign_market(name: str, parts: list[str]) -> str:
    first = parts[0].strip()
    if len(parts) >= 2 and BUDGET_PREFIX_RE.match(first):
        candidate = parts[1].strip().upper()
        if MARKET_RE.match(candidate):
            return candidate
    match = MARKET_SEARCH_RE.search(name)
    if match and MARKET_RE.match(match.group(1).upper()):
        return match.group(1).upper()
    return ""


def _with_variant(product: str, variant: str) -> str:
    return f"{product} {variant}" if variant else product


def parse_campaign_name(name, account_name: str | None = None) -> CampaignNaming:
    """Decode market, product, variant, type and date token from a campaign name.

    When the name carries no market, the account naming convention is used.
    """
    if not name or not isinstance(name, str):
        return CampaignNaming(
            market=extract_market_from_account(account_name),
            raw=name if isinstance(name, str) else "",
        )

    parts = name.split("_")
    market = _campaign_market(name, parts) or extract_market_from_account(account_name)

    if len(parts) == 5:
        product = normalize_product_name(parts[2].strip())
        variant = parts[3].strip()
        return CampaignNaming(
            market=market,
            product=product,
            product_with_variant=_with_variant(product, variant),
            variant=variant,
            creative_type=parts[4].strip(),
            raw=name,
        )

    if len(parts) < 6:
        return CampaignNaming(market=market, raw=name)

    raw_product = " ".join(parts[2:-3]).strip()
    product = normalize_product_name(raw_product)
    variant = parts[-3].strip()
    return CampaignNaming(
        market=market,
        product=product,
        product_with_variant=_with_variant(product, variant),
        variant=variant,
        creative_type=parts[-2].strip(),
        naming_date=parts[-1].strip(),
        raw=name,
    )


def parse_ad_name(name, account_name: str | None = None) -> AdNaming:
    """Decode id, market, product, concept, type and format from an ad name."""
    if not name or not isinstance(name, str):
        return AdNaming(
            market=extract_market_from_account(account_name),
            raw=name if isinstance(name, str) else "",
        )

    parts = name.split("_")
    if len(parts) < 4:
        return AdNaming(
            id=parts[0],
            market=extract_market_from_account(account_name),
            product=name.strip() or OTHER,
            raw=name,
        )

    market = parts[1].strip().upper()
    if not MARKET_RE.match(market):
        market = extract_market_from_account(account_name)

    product_parts: list[str] = []
    concept_parts: list[str] = []
    for part in parts[2:-2]:
        upper = part.upper()
        if upper in KNOWN_CONCEPTS:
            concept_parts.append(part)
        elif concept_parts and upper in KNOWN_CREATIVE_TYPES:
            break
        elif not concept_parts:
            product_parts.append(part)

    return AdNaming(
        id=parts[0],
        market=market,
        product=normalize_product_name(" ".join(product_parts)),
        concept=" ".join(concept_parts) or "-",
        creative_type=parts[-2] or "-",
        format=parts[-1] or "-",
        raw=name,
    )
