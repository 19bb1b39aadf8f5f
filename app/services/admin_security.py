"""
Guards for administrative write operations.

- enforce_admin_rate_limit_durable(): fixed-window action counter persisted in
  admin_rate_limits, with the same single-statement check-and-increment
  discipline as the usage counters.
- has_recent_admin_auth(): step-up check on the session's most recent strong
  authentication.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update, case, or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc, utcnow
from app.core.config import get_admin_rate_limit_max_actions, get_admin_rate_limit_window_seconds
from app.core.database import dialect_insert
from app.core.errors import StorageConflictError
from app.models.admin_rate_limit import AdminRateLimit

logger = logging.getLogger(__name__)

# Strong-auth timestamps slightly in the future are tolerated (clock skew)
CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class AdminRateLimitResult:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_at: datetime


async def enforce_admin_rate_limit_durable(
    db: AsyncSession,
    actor_user_id: str,
    action_key: str,
    max_actions: int | None = None,
    window_seconds: int | None = None,
    now: datetime | None = None,
) -> AdminRateLimitResult:
    """
    Count one admin action against a durable fixed window.

    The window opens on the first action and lasts `window_seconds`. Once it
    has expired the next action restarts it at count 1. Both the restart and
    the increment happen inside one guarded UPDATE.

    Args:
        db: Database session (committed by this call)
        actor_user_id: Admin performing the action
        action_key: Scope of the counter, e.g. 'admin-support-case-update'
        max_actions: Actions allowed per window (ADMIN_RATE_LIMIT_MAX_ACTIONS)
        window_seconds: Window length (ADMIN_RATE_LIMIT_WINDOW_SECONDS)
        now: Current instant

    Returns:
        AdminRateLimitResult: allowed flag with remaining and reset_at

    Raises:
        StorageConflictError: If the statement could not commit
    """
    max_actions = get_admin_rate_limit_max_actions() if max_actions is None else max_actions
    window_seconds = get_admin_rate_limit_window_seconds() if window_seconds is None else window_seconds
    now = as_utc(now) if now else utcnow()
    new_reset_at = now + timedelta(seconds=window_seconds)

    if max_actions <= 0:
        logger.warning(f"[ADMIN RATE LIMIT] {action_key} is disabled (max_actions={max_actions})")
        return AdminRateLimitResult(allowed=False, count=0, limit=0, remaining=0, reset_at=new_reset_at)

    scope_filter = (AdminRateLimit.user_id == actor_user_id, AdminRateLimit.scope == action_key)
    window_expired = AdminRateLimit.reset_at <= now

    try:
        insert = dialect_insert(db)
        await db.execute(
            insert(AdminRateLimit)
            .values(
                user_id=actor_user_id,
                scope=action_key,
                count=0,
                reset_at=new_reset_at,
                window_seconds=window_seconds,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "scope"])
        )

        result = await db.execute(
            update(AdminRateLimit)
            .where(*scope_filter, or_(window_expired, AdminRateLimit.count + 1 <= max_actions))
            .values(
                count=case((window_expired, 1), else_=AdminRateLimit.count + 1),
                reset_at=case((window_expired, new_reset_at), else_=AdminRateLimit.reset_at),
                window_seconds=window_seconds,
                updated_at=func.now(),
            )
            .returning(AdminRateLimit.count, AdminRateLimit.reset_at)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        allowed = row is not None

        if row is None:
            result = await db.execute(
                select(AdminRateLimit.count, AdminRateLimit.reset_at).where(*scope_filter)
            )
            row = result.one()

        await db.commit()

    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[ADMIN RATE LIMIT] Could not record {action_key} for {actor_user_id}: {e}")
        raise StorageConflictError("Admin rate limiter is temporarily unavailable", action=action_key) from e

    count, reset_at = row.count, as_utc(row.reset_at)
    if not allowed:
        logger.warning(f"[ADMIN RATE LIMIT] {actor_user_id} exceeded {action_key}: {count}/{max_actions}")

    return AdminRateLimitResult(
        allowed=allowed,
        count=count,
        limit=max_actions,
        remaining=max(0, max_actions - count),
        reset_at=reset_at,
    )


def has_recent_admin_auth(session, max_age_seconds: int, now: datetime | None = None) -> bool:
    """
    Check that the session's last strong authentication is recent enough.

    Args:
        session: Object exposing get_last_strong_auth_at() (see AuthSession)
        max_age_seconds: Freshness window
        now: Current instant

    Returns:
        bool: False on any failure to read the timestamp
    """
    now = as_utc(now) if now else utcnow()
    try:
        last_strong_auth_at = as_utc(session.get_last_strong_auth_at())
    except Exception as e:
        logger.warning(f"[STEP-UP] Could not read strong-auth timestamp: {e}")
        return False

    if last_strong_auth_at is None:
        logger.warning("[STEP-UP] Session has no strong-auth timestamp")
        return False

    age_seconds = (now - last_strong_auth_at).total_seconds()
    return -CLOCK_SKEW_SECONDS <= age_seconds <= max_age_seconds
