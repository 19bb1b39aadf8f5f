"""
Keeps user_subscriptions in step with Stripe webhook events.

Each event is journaled in billing_events first; an event that was already
processed is acknowledged without being applied again. The row keeps the
*nominal* plan Stripe reports. Whether that plan grants access right now is
decided by the entitlements resolver from billing_state and the period.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.database import dialect_insert
from app.models.billing_event import BillingEvent
from app.models.user import User
from app.models.user_subscription import UserSubscription
from app.services.billing.entitlements import BillingState
from app.services.billing.plans import PlanCode, PlanInterval
from app.services.billing.stripe_client import lookup_plan_for_price_id

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
PAYMENT_SUCCEEDED_EVENTS = {"invoice.paid", "invoice.payment_succeeded"}
PAYMENT_FAILED_EVENTS = {"invoice.payment_failed"}
CHECKOUT_EVENTS = {"checkout.session.completed"}

# Stripe statuses that map one-to-one onto a billing state
_DIRECT_STATUSES = {"past_due", "unpaid", "trialing", "canceled"}

# Stripe statuses where no payment has gone through yet
_UNPAID_STATUSES = {"incomplete", "paused"}

MAX_ERROR_TEXT = 2000

# A pending event not finished within this time is treated as abandoned
STALE_CLAIM = timedelta(minutes=5)


def derive_billing_state(
    status: str | None,
    cancel_at_period_end: bool = False,
    event_type: str | None = None,
) -> BillingState:
    """
    Map a Stripe subscription status (and the event carrying it) to a billing state.

    Args:
        status: Stripe subscription status, or the stored billing state for invoice events
        cancel_at_period_end: Whether cancellation is scheduled for period end
        event_type: Stripe event type

    Returns:
        BillingState: Normalized state to store
    """
    if event_type == "customer.subscription.deleted":
        return BillingState.CANCELED
    if event_type in PAYMENT_FAILED_EVENTS:
        return BillingState.PAST_DUE
    if event_type in PAYMENT_SUCCEEDED_EVENTS:
        if status == BillingState.CANCELED.value:
            return BillingState.CANCELED
        return BillingState.SCHEDULED_CANCEL if cancel_at_period_end else BillingState.ACTIVE

    if status in _DIRECT_STATUSES:
        return BillingState(status)
    if status == "incomplete_expired":
        return BillingState.CANCELED
    if status in _UNPAID_STATUSES:
        return BillingState.UNPAID
    return BillingState.SCHEDULED_CANCEL if cancel_at_period_end else BillingState.ACTIVE


def _object_id(value) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _epoch_to_datetime(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _object_id(details.get("subscription"))


async def _find_subscription_row(
    db: AsyncSession,
    user_id: str | None = None,
    subscription_id: str | None = None,
    customer_id: str | None = None,
) -> UserSubscription | None:
    """Look the row up by user id, then subscription id, then customer id."""
    lookups = (
        (UserSubscription.user_id, user_id),
        (UserSubscription.stripe_subscription_id, subscription_id),
        (UserSubscription.stripe_customer_id, customer_id),
    )
    for column, value in lookups:
        if not value:
            continue
        result = await db.execute(select(UserSubscription).where(column == value).limit(1))
        row = result.scalar_one_or_none()
        if row is not None:
            return row
    return None


async def _ensure_user(db: AsyncSession, user_id: str) -> None:
    insert = dialect_insert(db)
    await db.execute(insert(User).values(id=user_id).on_conflict_do_nothing(index_elements=["id"]))


async def _get_or_create_row(db: AsyncSession, user_id: str) -> UserSubscription:
    row = await _find_subscription_row(db, user_id=user_id)
    if row is None:
        await _ensure_user(db, user_id)
        row = UserSubscription(
            user_id=user_id,
            plan_code=PlanCode.FREE.value,
            plan_interval=PlanInterval.NONE.value,
            status="active",
            billing_state=BillingState.ACTIVE.value,
            cancel_at_period_end=False,
        )
        db.add(row)
    return row


async def _apply_checkout_session(db: AsyncSession, session: dict) -> str | None:
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id") or session.get("client_reference_id")
    if not user_id:
        logger.warning(f"[WEBHOOK] Checkout session {session.get('id')} has no user reference")
        return None

    row = await _get_or_create_row(db, user_id)
    customer_id = _object_id(session.get("customer"))
    subscription_id = _object_id(session.get("subscription"))
    if customer_id:
        row.stripe_customer_id = customer_id
    if subscription_id:
        row.stripe_subscription_id = subscription_id
    return user_id


async def _apply_subscription(db: AsyncSession, subscription: dict, event_type: str) -> str | None:
    metadata = subscription.get("metadata") or {}
    subscription_id = subscription.get("id")
    customer_id = _object_id(subscription.get("customer"))

    row = await _find_subscription_row(
        db,
        user_id=metadata.get("user_id"),
        subscription_id=subscription_id,
        customer_id=customer_id,
    )
    if row is None and metadata.get("user_id"):
        row = await _get_or_create_row(db, metadata["user_id"])
    if row is None:
        logger.warning(f"[WEBHOOK] No user found for subscription {subscription_id} / customer {customer_id}")
        return None

    item = _first_item(subscription)
    price_id = _object_id(item.get("price"))
    plan = lookup_plan_for_price_id(price_id)
    if plan is not None:
        row.plan_code, row.plan_interval = plan[0].value, plan[1].value
    elif price_id:
        logger.warning(f"[WEBHOOK] Unknown price {price_id} on {subscription_id}, keeping plan {row.plan_code}")

    status = subscription.get("status")
    cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
    period_start = _epoch_to_datetime(subscription.get("current_period_start") or item.get("current_period_start"))
    period_end = _epoch_to_datetime(subscription.get("current_period_end") or item.get("current_period_end"))

    row.status = status or row.status
    row.billing_state = derive_billing_state(status, cancel_at_period_end, event_type).value
    row.cancel_at_period_end = cancel_at_period_end
    row.stripe_subscription_id = subscription_id or row.stripe_subscription_id
    row.stripe_customer_id = customer_id or row.stripe_customer_id
    if period_start:
        row.current_period_start = period_start
        if row.plan_anchor_date is None:
            row.plan_anchor_date = period_start.date()
    if period_end:
        row.current_period_end = period_end

    return row.user_id


async def _apply_invoice(db: AsyncSession, invoice: dict, event_type: str) -> str | None:
    subscription_id = _invoice_subscription_id(invoice)
    customer_id = _object_id(invoice.get("customer"))
    row = await _find_subscription_row(db, subscription_id=subscription_id, customer_id=customer_id)
    if row is None:
        logger.warning(f"[WEBHOOK] No subscription found for invoice {invoice.get('id')}")
        return None

    row.billing_state = derive_billing_state(row.billing_state, row.cancel_at_period_end, event_type).value
    if event_type in PAYMENT_FAILED_EVENTS:
        row.status = "past_due"
    elif row.billing_state != BillingState.CANCELED.value:
        row.status = "active"
    return row.user_id


async def apply_stripe_event(db: AsyncSession, event: dict) -> str | None:
    """
    Apply one event to user_subscriptions without committing.

    Returns:
        str | None: The user the event was matched to
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in CHECKOUT_EVENTS:
        return await _apply_checkout_session(db, obj)
    if event_type in SUBSCRIPTION_EVENTS:
        return await _apply_subscription(db, obj, event_type)
    if event_type in PAYMENT_SUCCEEDED_EVENTS or event_type in PAYMENT_FAILED_EVENTS:
        return await _apply_invoice(db, obj, event_type)

    logger.info(f"[WEBHOOK] Ignoring event type {event_type}")
    return None


async def _claim_event(db: AsyncSession, event_id: str, now: datetime) -> bool:
    """Take a failed or abandoned journal row for processing. False if another delivery holds it."""
    result = await db.execute(
        update(BillingEvent)
        .where(
            BillingEvent.stripe_event_id == event_id,
            or_(
                BillingEvent.processing_status == "failed",
                and_(
                    BillingEvent.processing_status == "pending",
                    or_(BillingEvent.claimed_at.is_(None), BillingEvent.claimed_at <= now - STALE_CLAIM),
                ),
            ),
        )
        .values(processing_status="pending", claimed_at=now, error_text=None)
        .returning(BillingEvent.id)
        .execution_options(synchronize_session=False)
    )
    claimed = result.first() is not None
    await db.commit()
    return claimed


async def process_stripe_event(db: AsyncSession, event: dict) -> dict:
    """
    Journal and apply a verified Stripe event.

    Args:
        db: Database session
        event: Parsed event body

    Returns:
        dict: {"received": True, "deduped": bool}

    Raises:
        ValueError: If the event has no id or type
        Exception: Whatever applying the event raised; the journal row is
            marked failed first so Stripe's retry gets another attempt
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise ValueError("Stripe event is missing id or type")

    result = await db.execute(select(BillingEvent).where(BillingEvent.stripe_event_id == event_id))
    journal = result.scalar_one_or_none()

    now = utcnow()

    if journal is not None and journal.processing_status == "processed":
        await db.commit()
        logger.info(f"[WEBHOOK] Event {event_id} already processed")
        return {"received": True, "deduped": True}

    if journal is not None and not await _claim_event(db, event_id, now):
        logger.info(f"[WEBHOOK] Event {event_id} is being processed by another delivery")
        return {"received": True, "deduped": True}

    if journal is None:
        db.add(BillingEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload_json=event,
            processing_status="pending",
            claimed_at=now,
        ))
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event journaled it first
            await db.rollback()
            logger.info(f"[WEBHOOK] Event {event_id} is being processed by another delivery")
            return {"received": True, "deduped": True}

    try:
        user_id = await apply_stripe_event(db, event)
        await db.execute(
            update(BillingEvent)
            .where(BillingEvent.stripe_event_id == event_id)
            .values(processing_status="processed", processed_at=utcnow(), user_id=user_id, error_text=None)
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"[WEBHOOK] Failed to apply {event_type} {event_id}: {e}")
        await db.execute(
            update(BillingEvent)
            .where(BillingEvent.stripe_event_id == event_id)
            .values(processing_status="failed", error_text=str(e)[:MAX_ERROR_TEXT])
        )
        await db.commit()
        raise

    logger.info(f"[WEBHOOK] Processed {event_type} {event_id} (user {user_id})")
    return {"received": True, "deduped": False}
