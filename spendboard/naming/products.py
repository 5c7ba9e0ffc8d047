"""Spendboard - Product Name Normalization.

Collapses spelling/spacing variants of product labels found in campaign and
ad names into one canonical label.
"""

import re
from typing import Dict

OTHER = "Other"

# Keys are lowercase, either despaced or single-spaced.
PRODUCT_ALIASES: Dict[str, str] = {
    "silvervinesticks": "SILVERVINE DENTAL STICKS",
    "silvervinedentalsticks": "SILVERVINE DENTAL STICKS",
    "bg silvervine dental sticks": "SILVERVINE DENTAL STICKS",
    "smartball": "SMART BALL",
    "smartbal": "SMART BALL",
    "pawtrimmer": "PAW TRIMMER",
    "antifleacollar12months": "ANTI FLEA COLLAR 12 MONTHS",
    "barkingdevice": "BARKING DEVICE",
    "bundles": "BUNDLES",
    "pheromonediffuser": "PHEROMONE DIFFUSER",
    "lintreusableroller": "LINT REUSABLE ROLLER",
    "bg lint reusable roller": "LINT REUSABLE ROLLER",
    "dentalwipes": "DENTAL WIPES",
    "fingerwipes": "FINGER WIPES",
    "spiralscratch": "SPIRAL SCRATCH",
    "mistbrush": "MIST BRUSH",
}

_LP_SUFFIX = re.compile(r"\s+LP\s*$", re.IGNORECASE)
_PDP_SUFFIX = re.compile(r"\s+PDP(\s+PDP)*\s*$", re.IGNORECASE)
_MULTI_SPACE = re.compile(r"\s{2,}")


def normalize_product_name(name) -> str:
    """Map a raw product label to its canonical form.

    Unmapped labels are returned trimmed; empty or non-string input is "Other".
    """
    if not name or not isinstance(name, str):
        return OTHER
    stripped = name.strip()
    spaced = _MULTI_SPACE.sub(" ", stripped.lower())
    despaced = re.sub(r"\s+", "", spaced)
    return PRODUCT_ALIASES.get(despaced) or PRODUCT_ALIASES.get(spaced) or (stripped or OTHER)


def normalize_product_key(label) -> str:
    """Aggregation key: canonical name without landing-page/product-page suffixes.

    "SMART BALL LP" and "SMART BALL PDP" both become "SMART BALL".
    """
    if not label or not isinstance(label, str):
        return OTHER
    key = normalize_product_name(label)
    # Stripping can expose another suffix ("X PDP LP"), so repeat to a fixpoint.
    while True:
        stripped = _PDP_SUFFIX.sub("", _LP_SUFFIX.sub("", key))
        stripped = _MULTI_SPACE.sub(" ", stripped).strip()
        stripped = normalize_product_name(stripped) if stripped else OTHER
        if stripped == key:
            return key
        key = stripped
