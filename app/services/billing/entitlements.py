"""
Entitlements resolver.

Turns a user's locally cached subscription record into what the user may do
*right now*: the effective plan, the usage window, limits and features.

The pure functions (resolve_effective_plan_code, normalize_billing_state,
compute_month_period, build_entitlements) hold all the decisions and never
touch the database; resolve_user_entitlements() is the thin I/O wrapper used
by request handlers.

Every ambiguous branch degrades to the free plan.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc, utcnow
from app.core.errors import PlanNotFoundError, UnknownFeatureError
from app.models.user import User
from app.models.user_subscription import UserSubscription
from app.services.billing.plans import (
    FEATURE_KEYS,
    PlanCode,
    PlanDefinition,
    PlanInterval,
    MetricWindow,
    UNLIMITED,
    Unlimited,
    get_default_free_plan,
    get_metric_window,
    get_plan_definition,
)
from app.services.billing.usage import LIFETIME, PeriodKey, get_usage_map, resolve_period_window

logger = logging.getLogger(__name__)


class BillingState(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    TRIALING = "trialing"
    SCHEDULED_CANCEL = "scheduled_cancel"


# States in which the nominal paid plan keeps granting access
PAID_ACCESS_STATES = frozenset({
    BillingState.ACTIVE,
    BillingState.TRIALING,
    BillingState.PAST_DUE,
    BillingState.SCHEDULED_CANCEL,
})

# States in which the subscription is expected to renew
RENEWING_STATES = frozenset({
    BillingState.ACTIVE,
    BillingState.TRIALING,
    BillingState.PAST_DUE,
})

# Free-tier windows never start later than the 28th so every month has the day
MAX_ANCHOR_DAY = 28

# Longest monthly billing cycle (e.g. Feb 28 -> Mar 31)
MAX_MONTHLY_CYCLE = timedelta(days=31)


@dataclass(frozen=True)
class UsagePeriod:
    start: datetime
    end: datetime
    key: str

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class Entitlements:
    """What a user is entitled to at one instant. Computed per request, never stored."""
    user_id: str | None
    effective_plan_code: PlanCode
    effective_interval: PlanInterval
    nominal_plan_code: str
    billing_state: BillingState
    is_paid: bool
    has_billing_account: bool
    plan: PlanDefinition
    period: UsagePeriod
    renewal_at: datetime | None
    cancel_at_period_end: bool
    resolved_at: datetime
    stripe_customer_id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


def _coerce_billing_state(value) -> BillingState | None:
    try:
        return BillingState(value)
    except ValueError:
        return None


def resolve_effective_plan_code(billing_state: BillingState | str, plan_code: PlanCode | str) -> PlanCode:
    """
    Map (billing state, nominal plan) to the plan that grants access.

    Paid plans pass through while the subscription is active, trialing,
    past due (payment retry grace period) or scheduled to cancel at period
    end. Unpaid and canceled subscriptions fall back to free. Unknown plan
    codes or billing states also fall back to free.
    """
    try:
        code = PlanCode(plan_code)
    except ValueError:
        logger.warning(f"[ENTITLEMENTS] Unrecognized plan code {plan_code!r}, falling back to free")
        return PlanCode.FREE

    state = _coerce_billing_state(billing_state)
    if state is None:
        logger.warning(f"[ENTITLEMENTS] Unrecognized billing state {billing_state!r}, falling back to free")
        return PlanCode.FREE

    if state in PAID_ACCESS_STATES:
        return code
    return PlanCode.FREE


def normalize_billing_state(subscription: UserSubscription, now: datetime) -> BillingState:
    """
    Billing state as of `now`.

    The stored state may lag behind time: a subscription flagged to cancel at
    period end is 'scheduled_cancel' until the period ends and 'canceled'
    afterwards, even if no webhook has arrived yet.
    """
    state = _coerce_billing_state(subscription.billing_state)
    if state is None:
        logger.warning(
            f"[ENTITLEMENTS] Unrecognized stored billing state {subscription.billing_state!r} "
            f"for user {subscription.user_id}, treating as canceled"
        )
        return BillingState.CANCELED

    period_end = as_utc(subscription.current_period_end)
    period_over = period_end is None or period_end <= now

    if state in (BillingState.ACTIVE, BillingState.TRIALING) and subscription.cancel_at_period_end:
        return BillingState.CANCELED if period_over else BillingState.SCHEDULED_CANCEL

    if state == BillingState.SCHEDULED_CANCEL and period_over:
        return BillingState.CANCELED

    return state


def compute_month_period(anchor: date | datetime, now: datetime) -> UsagePeriod:
    """
    Rolling calendar-month window containing `now`.

    The window starts at midnight UTC on the anchor's day of month (clamped to
    the 28th) and lasts one calendar month. The key is the start date.

    Example:
        anchor 2025-11-15, now 2026-02-03 -> [2026-01-15, 2026-02-15), key '2026-01-15'
    """
    now = as_utc(now)
    anchor_day = min(anchor.day, MAX_ANCHOR_DAY)
    candidate = datetime(now.year, now.month, anchor_day, tzinfo=timezone.utc)
    start = candidate if now >= candidate else candidate - relativedelta(months=1)
    end = start + relativedelta(months=1)
    return UsagePeriod(start=start, end=end, key=start.strftime("%Y-%m-%d"))


def compute_hour_period(now: datetime) -> UsagePeriod:
    """Clock-hour window containing `now`, keyed 'YYYY-MM-DDTHH'."""
    start = as_utc(now).replace(minute=0, second=0, microsecond=0)
    return UsagePeriod(start=start, end=start + timedelta(hours=1), key=start.strftime("%Y-%m-%dT%H"))


def _resolve_plan(code: PlanCode, interval: str | None) -> tuple[PlanDefinition, PlanInterval]:
    if code == PlanCode.FREE:
        return get_default_free_plan(), PlanInterval.NONE
    try:
        plan = get_plan_definition(code, interval or PlanInterval.NONE)
    except PlanNotFoundError:
        logger.warning(f"[ENTITLEMENTS] No plan registered for ({code.value}, {interval!r}), falling back to free")
        return get_default_free_plan(), PlanInterval.NONE
    return plan, plan.interval


def build_entitlements(
    subscription: UserSubscription | None,
    now: datetime,
    account_created_at: datetime | None = None,
    user_id: str | None = None,
) -> Entitlements:
    """
    Compute entitlements from a subscription record. Pure: no I/O.

    Args:
        subscription: The user's subscription row, or None if they never subscribed
        now: Resolution instant
        account_created_at: Anchor for the free-tier monthly window
        user_id: Owner, used when there is no subscription row

    Returns:
        Entitlements: Effective plan, period and limits for `now`
    """
    now = as_utc(now)
    fallback_anchor = as_utc(account_created_at) or now

    if subscription is None:
        return Entitlements(
            user_id=user_id,
            effective_plan_code=PlanCode.FREE,
            effective_interval=PlanInterval.NONE,
            nominal_plan_code=PlanCode.FREE.value,
            billing_state=BillingState.ACTIVE,
            is_paid=False,
            has_billing_account=False,
            plan=get_default_free_plan(),
            period=compute_month_period(fallback_anchor, now),
            renewal_at=None,
            cancel_at_period_end=False,
            resolved_at=now,
        )

    state = normalize_billing_state(subscription, now)
    code = resolve_effective_plan_code(state, subscription.plan_code)
    plan, interval = _resolve_plan(code, subscription.plan_interval)
    is_paid = plan.is_paid

    period_start = as_utc(subscription.current_period_start)
    period_end = as_utc(subscription.current_period_end)
    anchor = subscription.plan_anchor_date or period_start or fallback_anchor

    period = None
    if is_paid and period_start and period_end:
        cycle = UsagePeriod(start=period_start, end=period_end, key=period_start.strftime("%Y-%m-%d"))
        # A stale cycle (renewal webhook not received yet) falls back to the rolling window
        if cycle.contains(now):
            if period_end - period_start > MAX_MONTHLY_CYCLE:
                # Yearly cycles still meter monthly, anchored on the cycle start
                period = compute_month_period(period_start, now)
            else:
                period = cycle
    if period is None:
        period = compute_month_period(anchor, now)

    renewal_at = None
    if is_paid and state in RENEWING_STATES:
        renewal_at = period_end if period_end and period_end > now else period.end

    return Entitlements(
        user_id=subscription.user_id,
        effective_plan_code=plan.code,
        effective_interval=interval,
        nominal_plan_code=subscription.plan_code,
        billing_state=state,
        is_paid=is_paid,
        has_billing_account=bool(subscription.stripe_customer_id),
        plan=plan,
        period=period,
        renewal_at=renewal_at,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        resolved_at=now,
        stripe_customer_id=subscription.stripe_customer_id,
    )


def get_usage_limit_for_metric(entitlements: Entitlements, metric_key: str) -> int | Unlimited:
    """
    Cap for a metric under the effective plan.

    Raises:
        UnknownMetricError: If the metric is not in the catalog schema
    """
    get_metric_window(metric_key)
    return entitlements.plan.limits[metric_key]


def get_usage_period_for_metric(entitlements: Entitlements, metric_key: str, now: datetime | None = None) -> PeriodKey:
    """
    Counter period key for a metered metric at `now`.

    Raises:
        UnknownMetricError: If the metric is not in the catalog schema
        ValueError: For static caps, which are not reservation counters
    """
    window = get_metric_window(metric_key)
    if window == MetricWindow.MONTHLY:
        return entitlements.period.key
    if window == MetricWindow.HOURLY:
        return compute_hour_period(now or entitlements.resolved_at).key
    if window == MetricWindow.LIFETIME:
        return LIFETIME
    raise ValueError(f"Metric '{metric_key}' is a standing cap, not a metered counter")


def can_use_feature(entitlements: Entitlements, feature_key: str) -> bool:
    if feature_key not in FEATURE_KEYS:
        raise UnknownFeatureError(f"Unknown feature '{feature_key}'", feature=feature_key)
    return entitlements.plan.features[feature_key]


def is_usage_exceeded(entitlements: Entitlements, metric_key: str) -> bool:
    """True if the loaded usage already reached the metric's cap."""
    limit = get_usage_limit_for_metric(entitlements, metric_key)
    if limit is UNLIMITED:
        return False
    return entitlements.usage.get(metric_key, 0) >= limit


async def resolve_user_entitlements(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
    include_usage: bool = True,
) -> Entitlements:
    """
    Load a user's subscription and compute their entitlements.

    Args:
        db: Database session
        user_id: Supabase user id
        now: Resolution instant (defaults to the current UTC time)
        include_usage: Also load current counts for every metered metric

    Returns:
        Entitlements: With `usage` populated when include_usage is set
    """
    now = as_utc(now) if now else utcnow()

    result = await db.execute(select(User.created_at).where(User.id == user_id))
    account_created_at = result.scalar_one_or_none()

    result = await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    subscription = result.scalar_one_or_none()

    entitlements = build_entitlements(subscription, now, account_created_at, user_id=user_id)

    if include_usage:
        metric_periods = {}
        for metric_key in entitlements.plan.limits:
            if get_metric_window(metric_key) != MetricWindow.STATIC:
                metric_periods[metric_key] = get_usage_period_for_metric(entitlements, metric_key, now)

        counts = await get_usage_map(db, user_id, list(set(metric_periods.values())))
        entitlements.usage = {
            metric_key: counts.get((metric_key, resolve_period_window(period_key).key), 0)
            for metric_key, period_key in metric_periods.items()
        }

    return entitlements
