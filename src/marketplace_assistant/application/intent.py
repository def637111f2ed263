"""Tool intent heuristics and tool-decision parsing.

The tool-analysis model returns a JSON decision. When that payload is missing,
malformed or carries invalid parameters, the same decision is re-derived from
the raw user text with the rules below. The heuristics also decide whether a
turn is cache-eligible: any detected action intent makes it ineligible.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from marketplace_assistant.application.exceptions import ToolParameterError

# ---------------------------------------------------------------------------
# Structured decision from the tool-analysis model
# ---------------------------------------------------------------------------


class ToolDecision(BaseModel):
    """Stage-two analysis payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    should_execute_tool: bool = Field(alias="shouldExecuteTool")
    tool_name: str | None = Field(default=None, alias="toolName")
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_tool_decision(raw: str | None) -> ToolDecision:
    """Parse the model's decision, tolerating code fences and surrounding prose.

    Raises:
        ToolParameterError: if no valid decision object can be recovered.
    """
    if not raw or not raw.strip():
        raise ToolParameterError("decision", "empty tool decision")
    text = _FENCE_RE.sub("", raw.strip())
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ToolParameterError("decision", "no JSON object in tool decision")
    try:
        return ToolDecision.model_validate_json(text[start : end + 1])
    except ValidationError as exc:
        raise ToolParameterError("decision", f"invalid tool decision: {exc.error_count()} errors") from exc


# ---------------------------------------------------------------------------
# Intent detection
# ---------------------------------------------------------------------------

_CART_RE = re.compile(r"\b(add|put|throw)\b.{0,80}\b(cart|basket)\b")
_NAV_RE = re.compile(
    r"\b(go to|take me to|navigate to|open|bring up|head to|show me|view)\s+"
    r"(my\s+|the\s+)?(cart|basket|orders?|order history|profile|account|dashboard|"
    r"publishers page|marketplace)\b"
)
_CLEAR_RE = re.compile(r"\b(clear|reset|remove)\b.{0,20}\bfilters?\b")
_ACTION_RE = re.compile(
    r"\b(show|find|filter|looking for|look for|need|want|got any|search|browse|list|"
    r"give me|get me|recommend|only)\b"
)
_CONCEPTUAL_RE = re.compile(r"^\s*(what|how|why|explain|tell me about|define|when|who)\b")
_INVENTORY_RE = re.compile(r"\b(sites?|websites?|publishers?|blogs?|domains?|outlets?)\b")


def detect_intent(text: str) -> str | None:
    """Name of the tool the user text asks for, or None for informational turns."""
    lowered = text.lower()
    if _CART_RE.search(lowered):
        return "add_to_cart"
    if _NAV_RE.search(lowered):
        return "navigate"
    if _CLEAR_RE.search(lowered):
        return "apply_filters"
    has_action = bool(_ACTION_RE.search(lowered))
    if _CONCEPTUAL_RE.search(lowered) and not has_action:
        return None
    if (has_action or _INVENTORY_RE.search(lowered)) and extract_filters(text):
        return "apply_filters"
    return None


# ---------------------------------------------------------------------------
# Filter vocabulary
# ---------------------------------------------------------------------------


class FilterMode(StrEnum):
    NEW = "new"
    MERGE = "merge"
    REPLACE = "replace"
    CLEAR = "clear"


_MERGE_RE = re.compile(r"\b(also|plus|as well|additionally|too)\b|^\s*and\b")
_REPLACE_RE = re.compile(r"\b(instead|change to|change it to|actually|switch to)\b")

_NUMBER = r"\$?\s*(\d[\d,]*(?:\.\d+)?)\s*(k)?\b"
_PRICE_MAX_RE = re.compile(r"\b(?:under|less than|below|cheaper than|up to|max(?:imum)?|budget(?: is| of)?)\s*" + _NUMBER)
_PRICE_MIN_RE = re.compile(r"\b(?:above|over|more than|at least|min(?:imum)?)\s*" + _NUMBER)
_TRAFFIC_MIN_RE = re.compile(
    r"\b(?:traffic|visitors|visits)\s*(?:of\s*)?(?:over|above|more than|at least|>=?)\s*"
    r"(\d[\d,]*)\s*(k)?\b"
)
_AUTHORITY_RE = re.compile(
    r"\b(da|dr|domain authority|domain rating)\s*(?:of\s*)?(?:over|above|at least|more than|>=?)?\s*"
    r"(\d{1,3})\s*\+?"
)

_QUALITY_RE = re.compile(r"\b(quality|good|reputable|trustworthy|trusted)\b")
_HIGH_AUTHORITY_RE = re.compile(r"\b(high authority|strong|authoritative)\b")
_LOW_SPAM_RE = re.compile(r"\b(low spam|clean)\b")
_CHEAP_RE = re.compile(r"\b(cheap|affordable|budget|inexpensive)\b")
_PREMIUM_RE = re.compile(r"\b(expensive|premium|high-end|high end)\b")
_MID_RE = re.compile(r"\b(mid-range|mid range|moderate|moderately priced)\b")
_POPULAR_RE = re.compile(r"\b(popular|high traffic|high-traffic|busy)\b")
_ESTABLISHED_RE = re.compile(r"\bestablished traffic\b")

COUNTRIES: dict[str, tuple[str, ...]] = {
    "us": ("usa", "united states", "america", "american"),
    "uk": ("uk", "united kingdom", "britain", "british", "england"),
    "ca": ("canada", "canadian"),
    "au": ("australia", "australian"),
    "india": ("india", "indian"),
    "de": ("germany", "german"),
    "fr": ("france", "french"),
}

NICHES: dict[str, tuple[str, ...]] = {
    "tech": ("tech", "technology", "software", "saas", "gadgets"),
    "health": ("health", "fitness", "medical", "wellness"),
    "finance": ("finance", "financial", "fintech", "crypto", "banking"),
    "business": ("business", "marketing", "startup", "startups"),
    "lifestyle": ("lifestyle", "fashion", "food", "beauty"),
    "education": ("education", "learning", "edu", "academic"),
    "travel": ("travel", "tourism"),
}


def _amount(digits: str, thousands: str | None) -> int:
    value = float(digits.replace(",", ""))
    if thousands:
        value *= 1000
    return int(value)


def _first_keyword(lowered: str, table: dict[str, tuple[str, ...]]) -> str | None:
    best: tuple[int, str] | None = None
    for code, words in table.items():
        for word in words:
            match = re.search(rf"\b{re.escape(word)}\b", lowered)
            if match and (best is None or match.start() < best[0]):
                best = (match.start(), code)
    return best[1] if best else None


def filter_mode(text: str) -> FilterMode:
    lowered = text.lower()
    if _CLEAR_RE.search(lowered):
        return FilterMode.CLEAR
    if _REPLACE_RE.search(lowered):
        return FilterMode.REPLACE
    if _MERGE_RE.search(lowered):
        return FilterMode.MERGE
    return FilterMode.NEW


def extract_filters(text: str) -> dict[str, Any]:
    """Filters named in *text*, keyed by their query-string names (camelCase)."""
    lowered = text.lower()
    filters: dict[str, Any] = {}

    # Word-level signals first so explicit numbers can override them.
    if _QUALITY_RE.search(lowered):
        filters.update(daMin=50, drMin=50, spamMax=2)
    if _HIGH_AUTHORITY_RE.search(lowered):
        filters.update(daMin=60, drMin=60)
    if _LOW_SPAM_RE.search(lowered):
        filters["spamMax"] = 2
    if _MID_RE.search(lowered):
        filters.update(priceMin=500, priceMax=1500)
    elif _PREMIUM_RE.search(lowered):
        filters["priceMin"] = 1000
    elif _CHEAP_RE.search(lowered):
        filters["priceMax"] = 500
    if _ESTABLISHED_RE.search(lowered):
        filters["trafficMin"] = 5000
    elif _POPULAR_RE.search(lowered):
        filters["trafficMin"] = 10000

    # Explicit numbers. Traffic and authority spans are removed before the
    # price patterns run so "traffic over 5k" is not read as a price.
    remaining = lowered
    for match in _TRAFFIC_MIN_RE.finditer(lowered):
        filters["trafficMin"] = _amount(match.group(1), match.group(2))
        remaining = remaining.replace(match.group(0), " ")
    for match in _AUTHORITY_RE.finditer(remaining):
        key = "daMin" if match.group(1) in ("da", "domain authority") else "drMin"
        filters[key] = min(int(match.group(2)), 100)
        remaining = remaining.replace(match.group(0), " ")
    for match in _PRICE_MAX_RE.finditer(remaining):
        filters["priceMax"] = _amount(match.group(1), match.group(2))
    for match in _PRICE_MIN_RE.finditer(remaining):
        filters["priceMin"] = _amount(match.group(1), match.group(2))

    if re.search(r"\bUS\b", text):
        filters["country"] = "us"
    else:
        country = _first_keyword(lowered, COUNTRIES)
        if country:
            filters["country"] = country
    niche = _first_keyword(lowered, NICHES)
    if niche:
        filters["niche"] = niche

    return filters


def merge_filters(
    current: dict[str, Any] | None, extracted: dict[str, Any], mode: FilterMode
) -> dict[str, Any]:
    """Combine *extracted* filters with the client's *current* filters."""
    if mode is FilterMode.CLEAR:
        return {}
    if mode is FilterMode.MERGE:
        return {**(current or {}), **extracted}
    return dict(extracted)


# ---------------------------------------------------------------------------
# Parameter derivation for each tool
# ---------------------------------------------------------------------------

_ROUTE_WORDS = (
    ("/cart", re.compile(r"\b(cart|basket)\b")),
    ("/orders", re.compile(r"\b(orders?|order history|purchases)\b")),
    ("/profile", re.compile(r"\b(profile|account|settings)\b")),
    ("/dashboard", re.compile(r"\bdashboard\b")),
    ("/publishers", re.compile(r"\b(publishers?|marketplace|listings)\b")),
)

_ITEM_RE = re.compile(
    r"\b(?:item|publisher|site|product|listing)\b\s*(?:id\s*)?#?\s*([a-z0-9_-]*\d[a-z0-9_-]*)"
    r"|\b([a-z0-9-]+\.(?:com|net|org|io|co|uk|in))\b"
)
_QUANTITY_RE = re.compile(r"\b(\d{1,2})\s*(?:x\b|of\b|copies|slots|posts)")


def derive_parameters(
    tool_name: str, text: str, current_filters: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    """Parameters for *tool_name* read directly from the user text.

    Returns None when the text does not determine them unambiguously.
    """
    lowered = text.lower()
    if tool_name == "apply_filters":
        mode = filter_mode(text)
        extracted = extract_filters(text)
        if not extracted and mode is not FilterMode.CLEAR:
            return None
        return merge_filters(current_filters, extracted, mode)

    if tool_name == "navigate":
        for route, pattern in _ROUTE_WORDS:
            if pattern.search(lowered):
                return {"route": route}
        return None

    if tool_name == "add_to_cart":
        match = _ITEM_RE.search(lowered)
        if not match:
            return None
        item_id = match.group(1) or match.group(2)
        quantity = _QUANTITY_RE.search(lowered)
        return {"itemId": item_id, "quantity": int(quantity.group(1)) if quantity else 1}

    return None


def describe_filters(filters: dict[str, Any] | None) -> str:
    """Compact rendering of the client's filters for prompts."""
    if not filters:
        return "none"
    return json.dumps(filters, sort_keys=True)
