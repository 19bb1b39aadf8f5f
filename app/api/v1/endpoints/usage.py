"""
API endpoints for metered AI actions.

Reserve endpoints are called by the client before it starts a generation;
the reservation is committed before the response, so a granted slot is
already counted even if the generation later fails.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_entitlements
from app.schemas.billing import ReservationResponse, UsageListResponse, UsageStatusResponse
from app.services.billing.entitlements import Entitlements, get_usage_period_for_metric
from app.services.billing.metering import (
    IMAGE_GENERATION_METRIC,
    TODAY_AI_MONTHLY_METRIC,
    TODAY_AI_TRIAL_METRIC,
    reserve_image_generation,
    reserve_today_ai_generation,
)
from app.services.billing.plan_labels import is_free_plan
from app.services.billing.plans import METRIC_WINDOWS, MetricWindow, Unlimited
from app.services.billing.usage import LIFETIME, UsageReservation, get_usage_limit_status

router = APIRouter()


def _reservation_response(request: Request, metric_key: str, reservation: UsageReservation | None) -> ReservationResponse:
    if reservation is None:
        return ReservationResponse(metric=metric_key, unlimited=True)

    request.state.usage_reservation = reservation
    return ReservationResponse(
        metric=reservation.metric_key,
        count=reservation.count,
        limit=reservation.limit,
        remaining=reservation.remaining,
        reset_at=None if reservation.period_key == LIFETIME.value else reservation.reset_at,
    )


@router.get("", response_model=UsageListResponse)
async def get_my_usage(
    entitlements: Entitlements = Depends(get_entitlements),
    db: AsyncSession = Depends(get_db),
):
    """
    Get quota status for every metered metric. Read-only: nothing is consumed.
    """
    statuses = []
    for metric_key, window in METRIC_WINDOWS.items():
        if window == MetricWindow.STATIC:
            continue

        limit = entitlements.plan.limits[metric_key]
        if isinstance(limit, Unlimited):
            statuses.append(UsageStatusResponse(
                metric=metric_key,
                window=window.value,
                limit=limit.value,
                used=entitlements.usage.get(metric_key, 0),
            ))
            continue

        period_key = get_usage_period_for_metric(entitlements, metric_key)
        status = await get_usage_limit_status(db, entitlements.user_id, metric_key, period_key, limit)
        statuses.append(UsageStatusResponse(
            metric=metric_key,
            window=window.value,
            limit=status.limit,
            used=status.used,
            remaining=status.remaining,
            reset_at=None if window == MetricWindow.LIFETIME else status.reset_at,
        ))

    return UsageListResponse(usage=statuses)


@router.post("/today-ai/reserve", response_model=ReservationResponse)
async def reserve_today_ai(
    request: Request,
    entitlements: Entitlements = Depends(get_entitlements),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve one "Today" AI outfit generation.

    Starter users get a single lifetime trial; paid plans a monthly quota.

    Raises:
        RateLimitedError 429: BURST_LIMIT_EXCEEDED, TRIAL_LIMIT_EXCEEDED or USAGE_LIMIT_EXCEEDED
    """
    reservation = await reserve_today_ai_generation(db, entitlements)
    metric_key = TODAY_AI_TRIAL_METRIC if is_free_plan(entitlements.effective_plan_code) else TODAY_AI_MONTHLY_METRIC
    return _reservation_response(request, metric_key, reservation)


@router.post("/image-generation/reserve", response_model=ReservationResponse)
async def reserve_image(
    request: Request,
    entitlements: Entitlements = Depends(get_entitlements),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve one outfit image generation.

    Raises:
        FeatureNotAvailableError 403: PLAN_REQUIRED for Starter users
        RateLimitedError 429: BURST_LIMIT_EXCEEDED or USAGE_LIMIT_EXCEEDED
    """
    reservation = await reserve_image_generation(db, entitlements)
    return _reservation_response(request, IMAGE_GENERATION_METRIC, reservation)
