"""Marketplace tools the assistant can trigger during a turn.

Tools do not touch the cart or order systems directly. Each one validates its
parameters and returns a ``ToolResult`` directive (filter URL, route, cart
update) that the web client applies.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from marketplace_assistant.application.exceptions import ToolExecutionError, ToolParameterError
from marketplace_assistant.domain.models import ToolResult

# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------

_BOUNDED_PAIRS = (("da_min", "da_max"), ("dr_min", "dr_max"), ("spam_min", "spam_max"))
_UNBOUNDED_PAIRS = (("price_min", "price_max"), ("traffic_min", "traffic_max"))


class FilterParams(BaseModel):
    """Publisher filters. Field aliases match the marketplace query string."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    da_min: int | None = Field(default=None, alias="daMin", ge=0, le=100)
    da_max: int | None = Field(default=None, alias="daMax", ge=0, le=100)
    dr_min: int | None = Field(default=None, alias="drMin", ge=0, le=100)
    dr_max: int | None = Field(default=None, alias="drMax", ge=0, le=100)
    spam_min: int | None = Field(default=None, alias="spamMin", ge=0, le=100)
    spam_max: int | None = Field(default=None, alias="spamMax", ge=0, le=100)
    price_min: float | None = Field(default=None, alias="priceMin", ge=0)
    price_max: float | None = Field(default=None, alias="priceMax", ge=0)
    traffic_min: int | None = Field(default=None, alias="trafficMin", ge=0)
    traffic_max: int | None = Field(default=None, alias="trafficMax", ge=0)
    country: str | None = None
    niche: str | None = None

    @model_validator(mode="after")
    def _check_ranges(self) -> "FilterParams":
        for low, high in _BOUNDED_PAIRS + _UNBOUNDED_PAIRS:
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} must not exceed {high}")
        return self

    def to_query(self) -> dict[str, Any]:
        """Non-empty filters keyed by their query-string names."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {k: (int(v) if isinstance(v, float) and v.is_integer() else v) for k, v in data.items()}


NAVIGATION_ROUTES = {
    "publishers": "/publishers",
    "cart": "/cart",
    "orders": "/orders",
    "profile": "/profile",
    "dashboard": "/dashboard",
}


class NavigateParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    route: str

    @model_validator(mode="after")
    def _known_route(self) -> "NavigateParams":
        route = self.route.strip().lower()
        if not route.startswith("/"):
            route = NAVIGATION_ROUTES.get(route, "/" + route)
        if route not in NAVIGATION_ROUTES.values():
            raise ValueError(f"unknown route {self.route!r}")
        self.route = route
        return self


class AddToCartParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    item_id: str = Field(alias="itemId", min_length=1)
    quantity: int = Field(default=1, ge=1, le=100)


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------


async def apply_filters(params: FilterParams) -> ToolResult:
    query = params.to_query()
    if not query:
        return ToolResult(
            success=True,
            action="filters_cleared",
            message="Cleared all publisher filters.",
            data={"filters": {}, "url": "/publishers"},
        )
    url = "/publishers?" + urlencode(query)
    summary = ", ".join(f"{k}={v}" for k, v in query.items())
    return ToolResult(
        success=True,
        action="filter_applied",
        message=f"Applied filters: {summary}",
        data={"filters": query, "url": url},
    )


async def navigate(params: NavigateParams) -> ToolResult:
    return ToolResult(
        success=True,
        action="navigate",
        message=f"Opening {params.route}",
        data={"url": params.route},
    )


async def add_to_cart(params: AddToCartParams) -> ToolResult:
    return ToolResult(
        success=True,
        action="cart_updated",
        message=f"Added {params.quantity} x {params.item_id} to your cart.",
        data={"itemId": params.item_id, "quantity": params.quantity},
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_TOOLS: dict[str, tuple[type[BaseModel], Callable[[Any], Awaitable[ToolResult]]]] = {
    "apply_filters": (FilterParams, apply_filters),
    "navigate": (NavigateParams, navigate),
    "add_to_cart": (AddToCartParams, add_to_cart),
}

# Names the tool-analysis model has been seen to produce.
TOOL_ALIASES = {
    "applyFilters": "apply_filters",
    "navigateTo": "navigate",
    "addToCart": "add_to_cart",
}


def canonical_tool_name(name: str | None) -> str | None:
    if not name:
        return None
    return TOOL_ALIASES.get(name, name)


class ToolRegistry:
    """Validates and runs the enabled tools."""

    def __init__(self, enabled: list[str] | None = None) -> None:
        names = enabled if enabled is not None else list(_TOOLS)
        unknown = [n for n in names if n not in _TOOLS]
        if unknown:
            raise ValueError(f"Unknown tools: {unknown}")
        self._enabled = list(names)

    @property
    def names(self) -> list[str]:
        return list(self._enabled)

    def validate(self, name: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Return normalized parameters or raise ``ToolParameterError``."""
        if name not in self._enabled:
            raise ToolParameterError(name, "tool is not enabled")
        if not isinstance(parameters, dict):
            raise ToolParameterError(name, "parameters must be an object")
        model_cls, _ = _TOOLS[name]
        try:
            model = model_cls.model_validate(parameters)
        except ValidationError as exc:
            raise ToolParameterError(name, exc.errors(include_url=False)[0]["msg"]) from exc
        return model.model_dump(by_alias=True, exclude_none=True)

    async def execute(self, name: str, parameters: dict[str, Any]) -> ToolResult:
        """Validate *parameters* and run tool *name*."""
        normalized = self.validate(name, parameters)
        model_cls, fn = _TOOLS[name]
        try:
            result = await fn(model_cls.model_validate(normalized))
        except (ValueError, KeyError) as exc:
            raise ToolExecutionError(name, str(exc)) from exc
        logger.info("Tool executed | name={} action={}", name, result.action)
        return result
