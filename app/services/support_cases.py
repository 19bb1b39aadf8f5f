"""
Support case lifecycle.

    open <-> in_progress -> closed -> (reopen) open

A closed case can be reopened for REOPEN_WINDOW after it was closed; after
that it is terminal and a new case has to be filed. Close and reopen are each
a single guarded UPDATE, so two admins acting at once cannot stamp a case
twice or reopen it past its deadline.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import as_utc, utcnow
from app.core.errors import InvalidTransitionError, ReopenWindowExpiredError, SupportCaseNotFoundError
from app.models.support_case import SupportCase

logger = logging.getLogger(__name__)

REOPEN_WINDOW = timedelta(days=7)


class SupportCaseStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class SupportCasePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SupportCaseCategory(str, Enum):
    BILLING = "billing"
    ACCOUNT = "account"
    BUG = "bug"
    FEATURE = "feature"
    OTHER = "other"


# (from, to) pairs handled by a plain field update; close and reopen have their own paths
_SIMPLE_TRANSITIONS = {
    (SupportCaseStatus.OPEN, SupportCaseStatus.IN_PROGRESS),
    (SupportCaseStatus.IN_PROGRESS, SupportCaseStatus.OPEN),
}


@dataclass
class SupportCaseUpdateResult:
    case: SupportCase
    already_closed: bool = False
    reopened: bool = False


def build_close_case_patch(actor_user_id: str, now: datetime) -> dict:
    """Column values that close a case. The three close fields always move together."""
    return {
        "status": SupportCaseStatus.CLOSED.value,
        "closed_at": now,
        "closed_by_user_id": actor_user_id,
        "reopen_deadline_at": now + REOPEN_WINDOW,
    }


def build_reopen_case_patch() -> dict:
    return {
        "status": SupportCaseStatus.OPEN.value,
        "closed_at": None,
        "closed_by_user_id": None,
        "reopen_deadline_at": None,
    }


def can_reopen_case(case: SupportCase, now: datetime) -> bool:
    deadline = as_utc(case.reopen_deadline_at)
    return case.status == SupportCaseStatus.CLOSED.value and deadline is not None and as_utc(now) <= deadline


async def get_support_case(db: AsyncSession, case_id: int) -> SupportCase:
    """
    Raises:
        SupportCaseNotFoundError: If no case has this id
    """
    result = await db.execute(select(SupportCase).where(SupportCase.id == case_id))
    case = result.scalar_one_or_none()
    if case is None:
        raise SupportCaseNotFoundError(f"Support case {case_id} not found")
    return case


async def close_support_case(
    db: AsyncSession,
    case_id: int,
    actor_user_id: str,
    fields: dict | None = None,
    now: datetime | None = None,
) -> SupportCaseUpdateResult:
    """
    Close a case, stamping closed_at, closed_by_user_id and reopen_deadline_at.

    Closing a case that is already closed changes nothing and reports
    already_closed=True; the original close stamps are kept.

    Raises:
        SupportCaseNotFoundError: If no case has this id
    """
    now = as_utc(now) if now else utcnow()
    values = {**(fields or {}), **build_close_case_patch(actor_user_id, now)}

    result = await db.execute(
        update(SupportCase)
        .where(SupportCase.id == case_id, SupportCase.status != SupportCaseStatus.CLOSED.value)
        .values(**values)
        .returning(SupportCase.id)
        .execution_options(synchronize_session=False)
    )
    closed = result.first() is not None
    await db.commit()

    case = await get_support_case(db, case_id)
    await db.refresh(case)

    if closed:
        logger.info(f"[SUPPORT] Case {case_id} closed by {actor_user_id}")
    else:
        logger.info(f"[SUPPORT] Case {case_id} already closed")
    return SupportCaseUpdateResult(case=case, already_closed=not closed)


async def reopen_support_case(
    db: AsyncSession,
    case_id: int,
    actor_user_id: str,
    fields: dict | None = None,
    now: datetime | None = None,
) -> SupportCaseUpdateResult:
    """
    Reopen a closed case while its reopen window is still open.

    Raises:
        SupportCaseNotFoundError: If no case has this id
        InvalidTransitionError: If the case is not closed
        ReopenWindowExpiredError: If now is past reopen_deadline_at
    """
    now = as_utc(now) if now else utcnow()
    values = {**(fields or {}), **build_reopen_case_patch()}

    result = await db.execute(
        update(SupportCase)
        .where(
            SupportCase.id == case_id,
            SupportCase.status == SupportCaseStatus.CLOSED.value,
            SupportCase.reopen_deadline_at >= now,
        )
        .values(**values)
        .returning(SupportCase.id)
        .execution_options(synchronize_session=False)
    )
    reopened = result.first() is not None
    await db.commit()

    case = await get_support_case(db, case_id)
    await db.refresh(case)

    if not reopened:
        if case.status != SupportCaseStatus.CLOSED.value:
            raise InvalidTransitionError(
                f"Support case {case_id} is not closed",
                status=case.status,
            )
        raise ReopenWindowExpiredError(
            "The reopen window for this case has expired; file a new case",
            reopen_deadline_at=as_utc(case.reopen_deadline_at),
        )

    logger.info(f"[SUPPORT] Case {case_id} reopened by {actor_user_id}")
    return SupportCaseUpdateResult(case=case, reopened=True)


async def update_support_case(
    db: AsyncSession,
    case_id: int,
    actor_user_id: str,
    status: SupportCaseStatus | str | None = None,
    priority: str | None = None,
    category: str | None = None,
    subject: str | None = None,
    summary: str | None = None,
    now: datetime | None = None,
) -> SupportCaseUpdateResult:
    """
    Apply an admin patch to a case.

    Field changes are written together with the status change. The acting
    admin becomes the case owner.

    Args:
        db: Database session
        case_id: Case to update
        actor_user_id: Admin performing the update
        status: Target status, or None to leave it
        priority, category, subject, summary: Optional field changes
        now: Current instant

    Returns:
        SupportCaseUpdateResult: The refreshed case and what happened

    Raises:
        SupportCaseNotFoundError: If no case has this id
        InvalidTransitionError: For transitions the lifecycle does not allow
        ReopenWindowExpiredError: When reopening past the deadline
    """
    case = await get_support_case(db, case_id)
    current = SupportCaseStatus(case.status)
    target = SupportCaseStatus(status) if status is not None else None

    fields = {
        key: value
        for key, value in {
            "priority": priority,
            "category": category,
            "subject": subject,
            "summary": summary,
        }.items()
        if value is not None
    }
    fields["owner_admin_user_id"] = actor_user_id

    if target == SupportCaseStatus.CLOSED:
        result = await close_support_case(db, case_id, actor_user_id, fields, now)
        if result.already_closed and len(fields) > 1:
            await _apply_fields(db, case_id, fields)
            await db.refresh(result.case)
        return result

    if current == SupportCaseStatus.CLOSED and target == SupportCaseStatus.OPEN:
        return await reopen_support_case(db, case_id, actor_user_id, fields, now)

    if current == SupportCaseStatus.CLOSED and target is not None:
        raise InvalidTransitionError(
            f"Cannot move a closed case to '{target.value}'; reopen it first",
            status=current.value,
        )

    if target is not None and target != current:
        if (current, target) not in _SIMPLE_TRANSITIONS:
            raise InvalidTransitionError(
                f"Cannot move a case from '{current.value}' to '{target.value}'",
                status=current.value,
            )
        fields["status"] = target.value

    await _apply_fields(db, case_id, fields, expected_status=current)
    await db.refresh(case)
    return SupportCaseUpdateResult(case=case)


async def _apply_fields(
    db: AsyncSession,
    case_id: int,
    fields: dict,
    expected_status: SupportCaseStatus | None = None,
) -> None:
    """
    Write field changes in one UPDATE.

    A status change only applies while the case is still in the status it was
    checked against; a case closed in the meantime keeps its close stamps.
    """
    statement = update(SupportCase).where(SupportCase.id == case_id)
    if "status" in fields and expected_status is not None:
        statement = statement.where(SupportCase.status == expected_status.value)

    result = await db.execute(
        statement
        .values(**fields)
        .returning(SupportCase.id)
        .execution_options(synchronize_session=False)
    )
    updated = result.first() is not None
    await db.commit()

    if not updated:
        case = await get_support_case(db, case_id)
        await db.refresh(case)
        await db.commit()
        logger.warning(
            f"[SUPPORT] Case {case_id} moved to '{case.status}' before '{fields.get('status')}' was applied"
        )
        raise InvalidTransitionError(
            f"Support case {case_id} changed status to '{case.status}'; reload and retry",
            status=case.status,
        )
