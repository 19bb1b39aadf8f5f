"""
Usage counter store.

All mutation of usage_counters goes through reserve_usage_counter_atomic(),
which pushes the check-and-increment into the database:

1. ``INSERT ... ON CONFLICT DO NOTHING`` creates the row with count=0 the first
   time a (user, metric, period) tuple is seen.
2. ``UPDATE ... SET count = count + :n WHERE ... AND count + :n <= :limit
   RETURNING count`` grants the reservation only if it fits.

On PostgreSQL the UPDATE takes the row lock and re-evaluates its predicate
after a concurrent writer commits, so two callers can never both take the last
unit. On SQLite every transaction starts with BEGIN IMMEDIATE (see
app.core.database), which serialises writers on the database lock.

Nothing here caches counts between calls. A failed reservation is final; the
primitive never retries.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc
from app.core.database import dialect_insert
from app.core.errors import StorageConflictError
from app.models.usage_counter import UsageCounter
from app.services.billing.plans import Unlimited

logger = logging.getLogger(__name__)


class LifetimePeriod(str, Enum):
    """Period for counters that never reset (one-time trial allowances)."""
    LIFETIME = "lifetime"


LIFETIME = LifetimePeriod.LIFETIME

# reset_at reported for lifetime counters
LIFETIME_RESET_AT = datetime(9999, 12, 31, tzinfo=timezone.utc)
LIFETIME_START_AT = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MONTH_KEY = re.compile(r"\d{4}-\d{2}-\d{2}")
_HOUR_KEY = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}")

PeriodKey = str | LifetimePeriod


@dataclass(frozen=True)
class PeriodWindow:
    key: str
    start_at: datetime
    reset_at: datetime


@dataclass(frozen=True)
class UsageReservation:
    """Outcome of one reservation attempt."""
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: datetime
    metric_key: str
    period_key: str


@dataclass(frozen=True)
class UsageLimitStatus:
    limit: int
    used: int
    remaining: int
    reset_at: datetime


def resolve_period_window(period_key: PeriodKey) -> PeriodWindow:
    """
    Turn a period key into the window it identifies.

    Accepted keys:
        - LIFETIME: never resets
        - 'YYYY-MM-DD': monthly window starting that day, resets one calendar month later
        - 'YYYY-MM-DDTHH': hourly window

    Raises:
        ValueError: For the bare string 'lifetime' or a malformed key
    """
    if isinstance(period_key, LifetimePeriod):
        return PeriodWindow(key=period_key.value, start_at=LIFETIME_START_AT, reset_at=LIFETIME_RESET_AT)

    if not isinstance(period_key, str):
        raise ValueError(f"Period key must be a string or LIFETIME, got {type(period_key).__name__}")

    if period_key == LifetimePeriod.LIFETIME.value:
        raise ValueError("Use the LIFETIME sentinel for lifetime counters, not the string 'lifetime'")

    if _MONTH_KEY.fullmatch(period_key):
        start_at = datetime.strptime(period_key, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        return PeriodWindow(key=period_key, start_at=start_at, reset_at=start_at + relativedelta(months=1))

    if _HOUR_KEY.fullmatch(period_key):
        start_at = datetime.strptime(period_key, "%Y-%m-%dT%H").replace(tzinfo=timezone.utc)
        return PeriodWindow(key=period_key, start_at=start_at, reset_at=start_at + timedelta(hours=1))

    raise ValueError(f"Malformed period key: {period_key!r}")


def _check_limit(limit) -> int:
    if isinstance(limit, Unlimited):
        raise ValueError("Unlimited metrics are not metered; branch before reserving")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValueError(f"Limit must be a non-negative integer, got {limit!r}")
    return limit


def _counter_filter(user_id: str, metric_key: str, period_key: str):
    return (
        UsageCounter.user_id == user_id,
        UsageCounter.metric_key == metric_key,
        UsageCounter.period_key == period_key,
    )


async def _read_count(db: AsyncSession, user_id: str, metric_key: str, window: PeriodWindow):
    result = await db.execute(
        select(UsageCounter.count, UsageCounter.period_end_at)
        .where(*_counter_filter(user_id, metric_key, window.key))
    )
    row = result.first()
    if row is None:
        return 0, window.reset_at
    return row.count, as_utc(row.period_end_at)


async def reserve_usage_counter_atomic(
    db: AsyncSession,
    user_id: str,
    metric_key: str,
    period_key: PeriodKey,
    limit: int,
    increment_by: int = 1,
) -> UsageReservation:
    """
    Atomically reserve `increment_by` units of a metric for a user.

    The reservation is all-or-nothing: it is granted only if the stored count
    plus `increment_by` stays within `limit`. Granted reservations are
    committed before returning.

    Args:
        db: Database session (committed by this call)
        user_id: Owner of the counter
        metric_key: Metric being consumed
        period_key: Calendar key or LIFETIME
        limit: Integer cap for the window (UNLIMITED is rejected)
        increment_by: Units to reserve, at least 1

    Returns:
        UsageReservation: allowed flag plus count/limit/remaining/reset_at

    Raises:
        ValueError: For a bad period key, limit or increment
        StorageConflictError: If the statement could not commit
    """
    limit = _check_limit(limit)
    if isinstance(increment_by, bool) or not isinstance(increment_by, int) or increment_by < 1:
        raise ValueError(f"increment_by must be a positive integer, got {increment_by!r}")

    window = resolve_period_window(period_key)

    try:
        if increment_by > limit:
            # Can never fit: no row is created or touched.
            count, reset_at = await _read_count(db, user_id, metric_key, window)
            allowed = False
        else:
            insert = dialect_insert(db)
            await db.execute(
                insert(UsageCounter)
                .values(
                    user_id=user_id,
                    metric_key=metric_key,
                    period_key=window.key,
                    period_start_at=window.start_at,
                    period_end_at=window.reset_at,
                    count=0,
                    limit_snapshot=limit,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "metric_key", "period_key"])
            )

            result = await db.execute(
                update(UsageCounter)
                .where(
                    *_counter_filter(user_id, metric_key, window.key),
                    UsageCounter.count + increment_by <= limit,
                )
                .values(
                    count=UsageCounter.count + increment_by,
                    limit_snapshot=limit,
                    updated_at=func.now(),
                )
                .returning(UsageCounter.count, UsageCounter.period_end_at)
                .execution_options(synchronize_session=False)
            )
            row = result.first()

            if row is not None:
                allowed = True
                count, reset_at = row.count, as_utc(row.period_end_at)
            else:
                allowed = False
                count, reset_at = await _read_count(db, user_id, metric_key, window)

        await db.commit()

    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[USAGE] Reservation failed for {metric_key}/{window.key} (user {user_id}): {e}")
        raise StorageConflictError(
            "Usage counter is temporarily unavailable, retry the request",
            metric=metric_key,
        ) from e

    if allowed:
        logger.debug(f"[USAGE] Reserved {increment_by} {metric_key}/{window.key} for {user_id}: {count}/{limit}")
    else:
        logger.info(f"[USAGE] Denied {metric_key}/{window.key} for {user_id}: {count}/{limit} (+{increment_by})")

    return UsageReservation(
        allowed=allowed,
        count=count,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at=reset_at,
        metric_key=metric_key,
        period_key=window.key,
    )


async def reserve_lifetime_usage_counter_atomic(
    db: AsyncSession,
    user_id: str,
    metric_key: str,
    limit: int,
    increment_by: int = 1,
) -> UsageReservation:
    """Reserve against a counter that never resets."""
    return await reserve_usage_counter_atomic(db, user_id, metric_key, LIFETIME, limit, increment_by)


async def get_usage_limit_status(
    db: AsyncSession,
    user_id: str,
    metric_key: str,
    period_key: PeriodKey,
    limit: int,
) -> UsageLimitStatus:
    """
    Report quota for display. Read-only: never creates or updates a row.
    """
    limit = _check_limit(limit)
    window = resolve_period_window(period_key)
    used, reset_at = await _read_count(db, user_id, metric_key, window)
    return UsageLimitStatus(
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        reset_at=reset_at,
    )


async def get_usage_map(
    db: AsyncSession,
    user_id: str,
    period_keys: list[PeriodKey],
) -> dict[tuple[str, str], int]:
    """
    Bulk read of a user's counters for the given periods.

    Returns:
        dict: {(metric_key, period_key): count}
    """
    keys = [resolve_period_window(key).key for key in period_keys]
    if not keys:
        return {}

    result = await db.execute(
        select(UsageCounter.metric_key, UsageCounter.period_key, UsageCounter.count)
        .where(UsageCounter.user_id == user_id)
        .where(UsageCounter.period_key.in_(keys))
    )
    return {(row.metric_key, row.period_key): row.count for row in result.all()}
