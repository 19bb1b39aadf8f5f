"""
Static plan catalog.

Every (plan code, interval) combination the product sells is registered here
at import time. Definitions are frozen: limits and features are read-only
mappings, so nothing at runtime can widen a plan by accident.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from app.core.errors import PlanNotFoundError, UnknownMetricError


class PlanCode(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


class PlanInterval(str, Enum):
    NONE = "none"
    MONTH = "month"
    YEAR = "year"


class Unlimited(str, Enum):
    """Sentinel for metrics without a cap. Never compared numerically."""
    UNLIMITED = "unlimited"


UNLIMITED = Unlimited.UNLIMITED


class MetricWindow(str, Enum):
    """How a metric's consumption is bucketed over time."""
    STATIC = "static"      # standing cap (e.g. items stored), not a reservation counter
    MONTHLY = "monthly"
    HOURLY = "hourly"
    LIFETIME = "lifetime"


# Every limit key a plan may declare, and the window its counter uses.
METRIC_WINDOWS: Mapping[str, MetricWindow] = MappingProxyType({
    "wardrobe_items": MetricWindow.STATIC,
    "saved_outfits": MetricWindow.STATIC,
    "calendar_history_days": MetricWindow.STATIC,
    "calendar_forward_days": MetricWindow.STATIC,
    "active_trips": MetricWindow.STATIC,
    "max_trip_days": MetricWindow.STATIC,
    "packing_items_per_trip": MetricWindow.STATIC,
    "ai_outfit_generations_monthly": MetricWindow.MONTHLY,
    "ai_image_generations_monthly": MetricWindow.MONTHLY,
    "ai_stylist_messages_monthly": MetricWindow.MONTHLY,
    "ai_stylist_vision_messages_monthly": MetricWindow.MONTHLY,
    "ai_today_ai_generations_monthly": MetricWindow.MONTHLY,
    "ai_burst_per_hour": MetricWindow.HOURLY,
    "ai_stylist_burst_per_hour": MetricWindow.HOURLY,
    "ai_today_ai_trial_lifetime": MetricWindow.LIFETIME,
})

FEATURE_KEYS = (
    "analytics_basic",
    "analytics_advanced",
    "export_share",
    "priority_support",
    "ai_image_generation",
)


@dataclass(frozen=True)
class PlanDefinition:
    code: PlanCode
    interval: PlanInterval
    display_name: str
    price_cents: int
    currency: str
    limits: Mapping[str, int | Unlimited] = field(default_factory=dict)
    features: Mapping[str, bool] = field(default_factory=dict)

    def __post_init__(self):
        unknown = set(self.limits) - set(METRIC_WINDOWS)
        if unknown:
            raise ValueError(f"Unknown metric keys in plan {self.code.value}: {sorted(unknown)}")
        missing = set(METRIC_WINDOWS) - set(self.limits)
        if missing:
            raise ValueError(f"Plan {self.code.value} does not declare limits for: {sorted(missing)}")
        for key, value in self.limits.items():
            if value is not UNLIMITED and (not isinstance(value, int) or value < 0):
                raise ValueError(f"Limit {key} of plan {self.code.value} must be a non-negative int or UNLIMITED")
        # freeze the mappings even if the caller passed plain dicts
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))
        object.__setattr__(self, "features", MappingProxyType({key: bool(self.features.get(key, False)) for key in FEATURE_KEYS}))

    @property
    def is_paid(self) -> bool:
        return self.code != PlanCode.FREE


_FREE_LIMITS = {
    "wardrobe_items": 100,
    "saved_outfits": 50,
    "calendar_history_days": 60,
    "calendar_forward_days": 30,
    "active_trips": 1,
    "max_trip_days": 7,
    "packing_items_per_trip": 50,
    "ai_outfit_generations_monthly": 20,
    "ai_image_generations_monthly": 0,
    "ai_stylist_messages_monthly": 20,
    "ai_stylist_vision_messages_monthly": 0,
    "ai_today_ai_generations_monthly": 0,
    "ai_burst_per_hour": 5,
    "ai_stylist_burst_per_hour": 5,
    "ai_today_ai_trial_lifetime": 1,
}

_PLUS_LIMITS = {
    "wardrobe_items": 500,
    "saved_outfits": 300,
    "calendar_history_days": 365,
    "calendar_forward_days": 365,
    "active_trips": 10,
    "max_trip_days": 30,
    "packing_items_per_trip": 250,
    "ai_outfit_generations_monthly": 300,
    "ai_image_generations_monthly": 30,
    "ai_stylist_messages_monthly": 300,
    "ai_stylist_vision_messages_monthly": 30,
    "ai_today_ai_generations_monthly": 7,
    "ai_burst_per_hour": 5,
    "ai_stylist_burst_per_hour": 5,
    "ai_today_ai_trial_lifetime": 1,
}

_PRO_LIMITS = {
    "wardrobe_items": UNLIMITED,
    "saved_outfits": UNLIMITED,
    "calendar_history_days": UNLIMITED,
    "calendar_forward_days": UNLIMITED,
    "active_trips": UNLIMITED,
    "max_trip_days": 30,
    "packing_items_per_trip": UNLIMITED,
    "ai_outfit_generations_monthly": UNLIMITED,
    "ai_image_generations_monthly": 100,
    "ai_stylist_messages_monthly": UNLIMITED,
    "ai_stylist_vision_messages_monthly": 100,
    "ai_today_ai_generations_monthly": 30,
    "ai_burst_per_hour": 5,
    "ai_stylist_burst_per_hour": 5,
    "ai_today_ai_trial_lifetime": 1,
}

_FREE_FEATURES = {}

_PLUS_FEATURES = {
    "analytics_basic": True,
    "ai_image_generation": True,
}

_PRO_FEATURES = {key: True for key in FEATURE_KEYS}


def _plan(code, interval, display_name, price_cents, limits, features) -> PlanDefinition:
    return PlanDefinition(
        code=code,
        interval=interval,
        display_name=display_name,
        price_cents=price_cents,
        currency="usd",
        limits=limits,
        features=features,
    )


_CATALOG: Mapping[tuple[PlanCode, PlanInterval], PlanDefinition] = MappingProxyType({
    (PlanCode.FREE, PlanInterval.NONE): _plan(PlanCode.FREE, PlanInterval.NONE, "Starter", 0, _FREE_LIMITS, _FREE_FEATURES),
    (PlanCode.PLUS, PlanInterval.MONTH): _plan(PlanCode.PLUS, PlanInterval.MONTH, "Plus", 499, _PLUS_LIMITS, _PLUS_FEATURES),
    (PlanCode.PLUS, PlanInterval.YEAR): _plan(PlanCode.PLUS, PlanInterval.YEAR, "Plus", 3999, _PLUS_LIMITS, _PLUS_FEATURES),
    (PlanCode.PRO, PlanInterval.MONTH): _plan(PlanCode.PRO, PlanInterval.MONTH, "Pro", 999, _PRO_LIMITS, _PRO_FEATURES),
    (PlanCode.PRO, PlanInterval.YEAR): _plan(PlanCode.PRO, PlanInterval.YEAR, "Pro", 7999, _PRO_LIMITS, _PRO_FEATURES),
})


def get_plan_definition(code: PlanCode | str, interval: PlanInterval | str) -> PlanDefinition:
    """
    Look up a registered plan.

    Args:
        code: Plan code ('free', 'plus', 'pro')
        interval: Billing interval ('none', 'month', 'year')

    Returns:
        PlanDefinition: The frozen plan definition

    Raises:
        PlanNotFoundError: If the combination is not sold
    """
    try:
        key = (PlanCode(code), PlanInterval(interval))
    except ValueError:
        raise PlanNotFoundError(f"Plan '{code}' with interval '{interval}' is not registered")

    plan = _CATALOG.get(key)
    if plan is None:
        raise PlanNotFoundError(f"Plan '{key[0].value}' with interval '{key[1].value}' is not registered")
    return plan


def get_default_free_plan() -> PlanDefinition:
    return _CATALOG[(PlanCode.FREE, PlanInterval.NONE)]


def list_plan_definitions() -> list[PlanDefinition]:
    """All registered plans, cheapest first."""
    return sorted(_CATALOG.values(), key=lambda plan: (plan.price_cents, plan.interval.value))


def get_metric_window(metric_key: str) -> MetricWindow:
    """
    Return the counter window for a metric.

    Raises:
        UnknownMetricError: If the metric is not part of the catalog schema
    """
    window = METRIC_WINDOWS.get(metric_key)
    if window is None:
        raise UnknownMetricError(f"Unknown usage metric '{metric_key}'", metric=metric_key)
    return window
