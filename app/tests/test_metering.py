"""
Test suite for metered actions (quota checks in front of AI features).
"""
from datetime import datetime, timezone

import pytest

from app.core.errors import FeatureNotAvailableError, RateLimitedError
from app.services.billing.entitlements import build_entitlements, resolve_user_entitlements
from app.services.billing.metering import (
    AI_BURST_METRIC,
    IMAGE_GENERATION_METRIC,
    TODAY_AI_MONTHLY_METRIC,
    consume_metered_action,
    reserve_image_generation,
    reserve_today_ai_generation,
)
from app.services.billing.usage import get_usage_map

NOW = datetime(2026, 2, 10, 12, 30, tzinfo=timezone.utc)
LATER = datetime(2026, 2, 10, 18, 0, tzinfo=timezone.utc)

PLUS_CYCLE = dict(
    current_period_start=datetime(2026, 2, 1, tzinfo=timezone.utc),
    current_period_end=datetime(2026, 3, 1, tzinfo=timezone.utc),
)


@pytest.mark.asyncio
async def test_unlimited_metric_records_nothing(db, make_user):
    await make_user("user-pro", plan_code="pro", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-pro", now=NOW, include_usage=False)

    reservation = await consume_metered_action(db, entitlements, "ai_outfit_generations_monthly", now=NOW)

    assert reservation is None
    assert await get_usage_map(db, "user-pro", ["2026-02-01"]) == {}


@pytest.mark.asyncio
async def test_denial_raises_with_reservation_metadata(db, make_user):
    await make_user("user-plus", plan_code="plus", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-plus", now=NOW, include_usage=False)

    for _ in range(30):
        await consume_metered_action(db, entitlements, IMAGE_GENERATION_METRIC, now=NOW)

    with pytest.raises(RateLimitedError) as exc_info:
        await consume_metered_action(db, entitlements, IMAGE_GENERATION_METRIC, now=NOW)

    error = exc_info.value
    assert error.code == "USAGE_LIMIT_EXCEEDED"
    assert error.limit == 30
    assert error.remaining == 0
    assert error.reset_at == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert error.to_dict()["plan"] == "plus"
    assert error.headers()["X-RateLimit-Limit"] == "30"


@pytest.mark.asyncio
async def test_today_ai_plus_uses_monthly_quota(db, make_user):
    """
    Validates:
    - Plus users draw on the 7/month quota
    - Burst guard counts each attempt in the current hour
    """
    # Setup
    await make_user("user-plus", plan_code="plus", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-plus", now=NOW, include_usage=False)

    # Execute: spread across hours so the burst guard does not interfere
    hours = [datetime(2026, 2, 10, hour, 5, tzinfo=timezone.utc) for hour in range(12, 19)]
    reservations = [await reserve_today_ai_generation(db, entitlements, now=hour) for hour in hours]

    # Assert
    assert reservations[-1].metric_key == TODAY_AI_MONTHLY_METRIC
    assert reservations[-1].count == 7

    with pytest.raises(RateLimitedError) as exc_info:
        await reserve_today_ai_generation(db, entitlements, now=datetime(2026, 2, 10, 20, tzinfo=timezone.utc))
    assert exc_info.value.code == "USAGE_LIMIT_EXCEEDED"
    assert exc_info.value.limit == 7


@pytest.mark.asyncio
async def test_today_ai_free_user_gets_one_lifetime_trial(db, make_user):
    await make_user("user-free")
    entitlements = await resolve_user_entitlements(db, "user-free", now=NOW, include_usage=False)

    trial = await reserve_today_ai_generation(db, entitlements, now=NOW)
    assert trial.period_key == "lifetime"

    with pytest.raises(RateLimitedError) as exc_info:
        await reserve_today_ai_generation(db, entitlements, now=LATER)

    assert exc_info.value.code == "TRIAL_LIMIT_EXCEEDED"
    assert exc_info.value.to_dict()["plan"] == "starter"


@pytest.mark.asyncio
async def test_burst_guard_runs_first(db, make_user):
    await make_user("user-plus", plan_code="plus", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-plus", now=NOW, include_usage=False)

    for _ in range(5):
        await consume_metered_action(db, entitlements, AI_BURST_METRIC, now=NOW)

    with pytest.raises(RateLimitedError) as exc_info:
        await reserve_today_ai_generation(db, entitlements, now=NOW)

    assert exc_info.value.code == "BURST_LIMIT_EXCEEDED"
    assert exc_info.value.reset_at == datetime(2026, 2, 10, 13, tzinfo=timezone.utc)
    usage = await get_usage_map(db, "user-plus", ["2026-02-01"])
    assert usage.get((TODAY_AI_MONTHLY_METRIC, "2026-02-01"), 0) == 0


@pytest.mark.asyncio
async def test_image_generation_requires_plus(db, make_user):
    await make_user("user-free")
    entitlements = await resolve_user_entitlements(db, "user-free", now=NOW, include_usage=False)

    with pytest.raises(FeatureNotAvailableError) as exc_info:
        await reserve_image_generation(db, entitlements, now=NOW)

    body = exc_info.value.to_dict()
    assert body["code"] == "PLAN_REQUIRED"
    assert body["required_plan"] == "plus"
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_image_generation_for_plus(db, make_user):
    await make_user("user-plus", plan_code="plus", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-plus", now=NOW, include_usage=False)

    reservation = await reserve_image_generation(db, entitlements, now=NOW)

    assert reservation.metric_key == IMAGE_GENERATION_METRIC
    assert reservation.count == 1
    assert reservation.remaining == 29


@pytest.mark.asyncio
async def test_metering_requires_bound_user(db):
    entitlements = build_entitlements(None, NOW)

    with pytest.raises(ValueError):
        await consume_metered_action(db, entitlements, "ai_outfit_generations_monthly", now=NOW)


@pytest.mark.asyncio
async def test_quota_denial_does_not_spend_burst_slot(db, make_user):
    """
    Validates:
    - A request refused because the trial or monthly quota is used up leaves
      the hourly burst counter untouched
    """
    # Setup: the free trial is already used
    await make_user("user-free")
    entitlements = await resolve_user_entitlements(db, "user-free", now=NOW, include_usage=False)
    await reserve_today_ai_generation(db, entitlements, now=NOW)

    # Execute
    for _ in range(3):
        with pytest.raises(RateLimitedError) as exc_info:
            await reserve_today_ai_generation(db, entitlements, now=NOW)
        assert exc_info.value.code == "TRIAL_LIMIT_EXCEEDED"

    # Assert: only the granted request counted against the burst guard
    usage = await get_usage_map(db, "user-free", ["2026-02-10T12"])
    assert usage[(AI_BURST_METRIC, "2026-02-10T12")] == 1


@pytest.mark.asyncio
async def test_exhausted_image_quota_does_not_spend_burst_slot(db, make_user):
    await make_user("user-plus", plan_code="plus", **PLUS_CYCLE)
    entitlements = await resolve_user_entitlements(db, "user-plus", now=NOW, include_usage=False)
    for _ in range(30):
        await consume_metered_action(db, entitlements, IMAGE_GENERATION_METRIC, now=NOW)

    with pytest.raises(RateLimitedError) as exc_info:
        await reserve_image_generation(db, entitlements, now=NOW)

    assert exc_info.value.code == "USAGE_LIMIT_EXCEEDED"
    assert exc_info.value.reset_at == datetime(2026, 3, 1, tzinfo=timezone.utc)
    usage = await get_usage_map(db, "user-plus", ["2026-02-10T12"])
    assert usage.get((AI_BURST_METRIC, "2026-02-10T12"), 0) == 0
