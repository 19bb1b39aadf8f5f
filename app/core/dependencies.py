"""
FastAPI dependencies for authentication, entitlements and admin guards.
"""
import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_admin_high_risk_max_age_seconds, get_admin_low_risk_max_age_seconds
from app.core.database import get_db
from app.core.errors import ForbiddenError, RateLimitedError, StepUpRequiredError
from app.core.supabase_auth import AuthSession, get_current_session
from app.services.admin_permissions import has_admin_permission
from app.services.admin_security import enforce_admin_rate_limit_durable, has_recent_admin_auth
from app.services.billing.entitlements import Entitlements, resolve_user_entitlements

logger = logging.getLogger(__name__)


async def get_auth_session(
    request: Request,
    session: AuthSession = Depends(get_current_session),
) -> AuthSession:
    """Authenticated session, also exposed on request.state for the HTTP throttle key."""
    request.state.auth_session = session
    return session


async def get_entitlements(
    session: AuthSession = Depends(get_auth_session),
    db: AsyncSession = Depends(get_db),
) -> Entitlements:
    """Entitlements of the caller, with current usage loaded."""
    return await resolve_user_entitlements(db, session.user_id)


def require_admin_action(permission: str, action_key: str, high_risk: bool = False):
    """
    Build a dependency guarding an admin route.

    Checks run in this order, each failing with its own error:
    1. permission held through an admin role (403 FORBIDDEN)
    2. recent strong authentication (401 ADMIN_STEP_UP_REQUIRED)
    3. durable per-admin rate limit for `action_key` (429 ADMIN_RATE_LIMITED)

    Args:
        permission: Permission key, e.g. 'support.write'
        action_key: Rate limit scope, e.g. 'admin-support-case-update'
        high_risk: Mutations use ADMIN_HIGH_RISK_MAX_AGE_SECONDS as the step-up
            freshness, reads ADMIN_LOW_RISK_MAX_AGE_SECONDS

    Returns:
        Callable: FastAPI dependency returning the admin's AuthSession
    """

    async def guard(
        session: AuthSession = Depends(get_auth_session),
        db: AsyncSession = Depends(get_db),
    ) -> AuthSession:
        if not await has_admin_permission(db, session.user_id, permission):
            logger.warning(f"[ADMIN] {session.user_id} lacks {permission} for {action_key}")
            raise ForbiddenError("Admin permission required", permission=permission)

        if high_risk:
            max_age = get_admin_high_risk_max_age_seconds()
        else:
            max_age = get_admin_low_risk_max_age_seconds()
        if not has_recent_admin_auth(session, max_age):
            raise StepUpRequiredError(
                "Recent sign-in required for this admin action",
                max_age_seconds=max_age,
            )

        result = await enforce_admin_rate_limit_durable(db, session.user_id, action_key)
        if not result.allowed:
            raise RateLimitedError(
                "Too many admin actions, slow down",
                limit=result.limit,
                remaining=result.remaining,
                reset_at=result.reset_at,
                code="ADMIN_RATE_LIMITED",
                action=action_key,
            )

        return session

    return guard
