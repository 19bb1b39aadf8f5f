"""
Admin endpoints for support and billing tooling.

Every route goes through require_admin_action(): permission, then step-up
freshness, then the durable per-admin rate limit.
"""
from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_admin_action
from app.core.errors import NotFoundError
from app.core.supabase_auth import AuthSession
from app.api.v1.endpoints.billing import serialize_entitlements
from app.models.support_case import SupportCase
from app.models.user import User
from app.models.user_subscription import UserSubscription
from app.schemas.admin import AdminSubscriptionView, AdminUserOverview
from app.schemas.support_case import SupportCaseResponse, SupportCaseUpdate, SupportCaseUpdateResponse
from app.services.admin_permissions import get_user_roles
from app.services.billing.entitlements import resolve_user_entitlements
from app.services.support_cases import SupportCaseStatus, get_support_case, update_support_case

router = APIRouter()


@router.get("/users/{user_id}/overview", response_model=AdminUserOverview)
async def get_user_overview(
    user_id: str,
    admin: AuthSession = Depends(require_admin_action("billing.read", "admin-user-overview")),
    db: AsyncSession = Depends(get_db),
):
    """
    Get a user's stored subscription next to their effective entitlements.

    Requires:
        - billing.read permission
        - recent strong authentication

    Raises:
        NotFoundError 404: If the user does not exist
    """
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND")

    result = await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    subscription = result.scalar_one_or_none()

    entitlements = await resolve_user_entitlements(db, user_id)

    result = await db.execute(
        select(func.count(SupportCase.id))
        .where(SupportCase.user_id == user_id)
        .where(SupportCase.status != SupportCaseStatus.CLOSED.value)
    )
    open_cases = result.scalar_one()

    return AdminUserOverview(
        user_id=user.id,
        email=user.email,
        created_at=user.created_at,
        roles=await get_user_roles(db, user_id),
        subscription=AdminSubscriptionView.model_validate(subscription) if subscription else None,
        entitlements=serialize_entitlements(entitlements),
        open_support_cases=open_cases,
    )


@router.get("/support-cases/{case_id}", response_model=SupportCaseResponse)
async def get_support_case_detail(
    case_id: int,
    admin: AuthSession = Depends(require_admin_action("support.read", "admin-support-case-detail")),
    db: AsyncSession = Depends(get_db),
):
    """
    Get one support case.

    Raises:
        SupportCaseNotFoundError 404: If the case does not exist
    """
    return await get_support_case(db, case_id)


@router.patch("/support-cases/{case_id}", response_model=SupportCaseUpdateResponse)
async def patch_support_case(
    case_id: int,
    body: SupportCaseUpdate,
    admin: AuthSession = Depends(require_admin_action("support.write", "admin-support-case-update", high_risk=True)),
    db: AsyncSession = Depends(get_db),
):
    """
    Update a support case: fields, status, close or reopen.

    Requires a strong sign-in within ADMIN_HIGH_RISK_MAX_AGE_SECONDS.

    Closing an already closed case is a no-op reported as already_closed.
    A closed case can be reopened (status 'open') for 7 days after closing.

    Raises:
        SupportCaseNotFoundError 404: If the case does not exist
        InvalidTransitionError 400: For transitions the lifecycle forbids
        ReopenWindowExpiredError 400: When reopening after the deadline
    """
    result = await update_support_case(
        db,
        case_id,
        admin.user_id,
        status=body.status,
        priority=body.priority.value if body.priority else None,
        category=body.category.value if body.category else None,
        subject=body.subject,
        summary=body.summary,
    )
    return SupportCaseUpdateResponse(
        case=SupportCaseResponse.model_validate(result.case),
        already_closed=result.already_closed,
        reopened=result.reopened,
    )
