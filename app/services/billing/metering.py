"""
Metered actions built on the usage counter store.

Request handlers call these before doing side-effecting work (calling the
model, rendering an image). They branch on UNLIMITED, pick the counter period
from the metric's window and raise RateLimitedError with the reservation
metadata when the quota is exhausted.
"""
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import FeatureNotAvailableError, RateLimitedError
from app.services.billing.entitlements import (
    Entitlements,
    can_use_feature,
    get_usage_limit_for_metric,
    get_usage_period_for_metric,
)
from app.services.billing.plan_labels import get_plan_display_name, is_free_plan, to_plan_label_code
from app.services.billing.plans import UNLIMITED, PlanCode
from app.services.billing.usage import UsageReservation, get_usage_limit_status, reserve_usage_counter_atomic

logger = logging.getLogger(__name__)

TODAY_AI_MONTHLY_METRIC = "ai_today_ai_generations_monthly"
TODAY_AI_TRIAL_METRIC = "ai_today_ai_trial_lifetime"
IMAGE_GENERATION_METRIC = "ai_image_generations_monthly"
AI_BURST_METRIC = "ai_burst_per_hour"

_DENIAL_MESSAGES = {
    "USAGE_LIMIT_EXCEEDED": "Monthly limit reached for {metric}",
    "TRIAL_LIMIT_EXCEEDED": "Free trial already used for {metric}",
    "BURST_LIMIT_EXCEEDED": "Too many requests this hour for {metric}",
}


async def consume_metered_action(
    db: AsyncSession,
    entitlements: Entitlements,
    metric_key: str,
    increment_by: int = 1,
    now: datetime | None = None,
    code: str = "USAGE_LIMIT_EXCEEDED",
) -> UsageReservation | None:
    """
    Reserve capacity for one metered action.

    Args:
        db: Database session
        entitlements: Resolved entitlements of the acting user
        metric_key: Metric to consume
        increment_by: Units to reserve
        now: Instant used to pick hourly windows
        code: Error code reported on denial

    Returns:
        UsageReservation | None: The granted reservation, or None when the
        metric is unlimited for the user's plan (nothing is recorded)

    Raises:
        RateLimitedError: If the quota is exhausted
        UnknownMetricError: If metric_key is not in the catalog
    """
    limit = get_usage_limit_for_metric(entitlements, metric_key)
    if limit is UNLIMITED:
        return None

    user_id = _bound_user_id(entitlements)
    period_key = get_usage_period_for_metric(entitlements, metric_key, now)
    reservation = await reserve_usage_counter_atomic(
        db, user_id, metric_key, period_key, limit, increment_by
    )

    if not reservation.allowed:
        raise _limit_error(
            entitlements, metric_key, code, reservation.limit, reservation.remaining, reservation.reset_at
        )

    return reservation


async def ensure_quota_left(
    db: AsyncSession,
    entitlements: Entitlements,
    metric_key: str,
    now: datetime | None = None,
    code: str = "USAGE_LIMIT_EXCEEDED",
) -> None:
    """
    Raise RateLimitedError if a metric is already used up. Consumes nothing.

    Checked before the burst guard so a request refused for its quota does not
    spend a burst slot. A quota used up between this read and the reservation
    still costs that one slot.
    """
    limit = get_usage_limit_for_metric(entitlements, metric_key)
    if limit is UNLIMITED:
        return

    user_id = _bound_user_id(entitlements)
    period_key = get_usage_period_for_metric(entitlements, metric_key, now)
    status = await get_usage_limit_status(db, user_id, metric_key, period_key, limit)
    await db.commit()

    if status.remaining < 1:
        logger.info(f"[USAGE] Denied {metric_key}/{period_key} for {user_id}: {status.used}/{limit}")
        raise _limit_error(entitlements, metric_key, code, status.limit, status.remaining, status.reset_at)


def _bound_user_id(entitlements: Entitlements) -> str:
    if not entitlements.user_id:
        raise ValueError("Entitlements are not bound to a user")
    return entitlements.user_id


def _limit_error(entitlements: Entitlements, metric_key: str, code: str, limit, remaining, reset_at) -> RateLimitedError:
    message = _DENIAL_MESSAGES.get(code, "Limit reached for {metric}").format(metric=metric_key)
    return RateLimitedError(
        message,
        limit=limit,
        remaining=remaining,
        reset_at=reset_at,
        code=code,
        metric=metric_key,
        plan=to_plan_label_code(entitlements.effective_plan_code).value,
    )


async def reserve_today_ai_generation(
    db: AsyncSession,
    entitlements: Entitlements,
    now: datetime | None = None,
) -> UsageReservation | None:
    """
    Reserve one "Today" AI outfit generation.

    Starter users draw on a one-time lifetime trial; paid users on their
    monthly quota. The hourly burst guard is charged only while that quota
    still has room.
    """
    if is_free_plan(entitlements.effective_plan_code):
        metric_key, code = TODAY_AI_TRIAL_METRIC, "TRIAL_LIMIT_EXCEEDED"
    else:
        metric_key, code = TODAY_AI_MONTHLY_METRIC, "USAGE_LIMIT_EXCEEDED"

    await ensure_quota_left(db, entitlements, metric_key, now=now, code=code)
    await consume_metered_action(db, entitlements, AI_BURST_METRIC, now=now, code="BURST_LIMIT_EXCEEDED")
    return await consume_metered_action(db, entitlements, metric_key, now=now, code=code)


async def reserve_image_generation(
    db: AsyncSession,
    entitlements: Entitlements,
    now: datetime | None = None,
) -> UsageReservation | None:
    """
    Reserve one outfit image generation.

    Raises:
        FeatureNotAvailableError: If the plan does not include image generation
        RateLimitedError: If the hourly burst or monthly quota is exhausted
    """
    if not can_use_feature(entitlements, "ai_image_generation"):
        logger.info(f"[USAGE] Image generation requires an upgrade (user {entitlements.user_id})")
        raise FeatureNotAvailableError(
            "Image generation is not included in your plan",
            required_plan=to_plan_label_code(PlanCode.PLUS).value,
            required_plan_name=get_plan_display_name(PlanCode.PLUS),
        )

    await ensure_quota_left(db, entitlements, IMAGE_GENERATION_METRIC, now=now)
    await consume_metered_action(db, entitlements, AI_BURST_METRIC, now=now, code="BURST_LIMIT_EXCEEDED")
    return await consume_metered_action(db, entitlements, IMAGE_GENERATION_METRIC, now=now)
