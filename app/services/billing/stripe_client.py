"""
Stripe adapter.

The rest of the billing code only sees these calls:
- create_portal_session(): Customer portal URL for self-service billing
- list_invoices(): Invoice history for the billing page
- verify_stripe_webhook_signature(): Authenticity check for webhook payloads
- price id <-> (plan code, interval) mapping

STRIPE_MODE selects between *_TEST and *_LIVE variants of every setting.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe

from app.core.config import get_stripe_env_value, get_stripe_mode, get_stripe_webhook_tolerance_seconds
from app.core.errors import NoBillingAccountError, PaymentProviderConfigError, PaymentProviderError
from app.services.billing.plans import PlanCode, PlanInterval

logger = logging.getLogger(__name__)

MAX_INVOICES = 100

_PRICE_ENV_NAMES = {
    (PlanCode.PLUS, PlanInterval.MONTH): "STRIPE_PRICE_PLUS_MONTHLY",
    (PlanCode.PLUS, PlanInterval.YEAR): "STRIPE_PRICE_PLUS_YEARLY",
    (PlanCode.PRO, PlanInterval.MONTH): "STRIPE_PRICE_PRO_MONTHLY",
    (PlanCode.PRO, PlanInterval.YEAR): "STRIPE_PRICE_PRO_YEARLY",
}


@dataclass(frozen=True)
class InvoiceSummary:
    id: str
    number: str | None
    status: str | None
    amount_due: int
    amount_paid: int
    currency: str
    created_at: datetime | None
    hosted_invoice_url: str | None
    invoice_pdf: str | None


def _configure_stripe() -> None:
    """
    Set the API key for the configured mode.

    Raises:
        PaymentProviderConfigError: If the key is missing or belongs to the other mode
    """
    secret_key = (get_stripe_env_value("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise PaymentProviderConfigError("Stripe secret key is not configured")

    mode = get_stripe_mode()
    if mode == "test" and secret_key.startswith(("sk_live_", "rk_live_")):
        raise PaymentProviderConfigError("Live Stripe key configured while STRIPE_MODE is test")
    if mode == "live" and secret_key.startswith(("sk_test_", "rk_test_")):
        raise PaymentProviderConfigError("Test Stripe key configured while STRIPE_MODE is live")

    stripe.api_key = secret_key


def create_portal_session(customer_id: str | None, return_url: str) -> str:
    """
    Create a Stripe customer portal session.

    Args:
        customer_id: Stripe customer id (cus_...)
        return_url: Where Stripe sends the user back to

    Returns:
        str: Portal URL

    Raises:
        NoBillingAccountError: If the user has no Stripe customer
        PaymentProviderError: If Stripe rejects the request
    """
    if not customer_id:
        raise NoBillingAccountError("No billing account exists for this user")

    _configure_stripe()
    try:
        portal_session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error(f"[STRIPE] Portal session failed for {customer_id}: {e}")
        raise PaymentProviderError("Could not open the billing portal") from e

    logger.info(f"[STRIPE] Portal session created for {customer_id}")
    return portal_session.url


def _to_datetime(epoch) -> datetime | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc)


def list_invoices(customer_id: str | None, limit: int = 25) -> list[InvoiceSummary]:
    """
    List a customer's most recent invoices, newest first.

    Raises:
        NoBillingAccountError: If the user has no Stripe customer
        PaymentProviderError: If Stripe rejects the request
    """
    if not customer_id:
        raise NoBillingAccountError("No billing account exists for this user")

    _configure_stripe()
    try:
        invoices = stripe.Invoice.list(customer=customer_id, limit=max(1, min(limit, MAX_INVOICES)))
    except stripe.StripeError as e:
        logger.error(f"[STRIPE] Invoice list failed for {customer_id}: {e}")
        raise PaymentProviderError("Could not load invoices") from e

    return [
        InvoiceSummary(
            id=invoice.id,
            number=getattr(invoice, "number", None),
            status=getattr(invoice, "status", None),
            amount_due=getattr(invoice, "amount_due", 0) or 0,
            amount_paid=getattr(invoice, "amount_paid", 0) or 0,
            currency=getattr(invoice, "currency", "usd") or "usd",
            created_at=_to_datetime(getattr(invoice, "created", None)),
            hosted_invoice_url=getattr(invoice, "hosted_invoice_url", None),
            invoice_pdf=getattr(invoice, "invoice_pdf", None),
        )
        for invoice in invoices.data
    ]


def _parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_webhook_signature(
    payload: bytes | str,
    header: str | None,
    secret: str | None,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """
    Verify a Stripe-Signature header.

    The header has the form ``t=<epoch>,v1=<hex>[,v1=<hex>...]``; the
    signature is HMAC-SHA256 of ``"{t}.{payload}"`` with the endpoint secret.

    Args:
        payload: Raw request body exactly as received
        header: Stripe-Signature header value
        secret: Webhook endpoint secret (whsec_...)
        tolerance_seconds: Maximum |now - t| (STRIPE_WEBHOOK_TOLERANCE_SECONDS)
        now: Current epoch seconds

    Returns:
        bool: True only for a valid, fresh signature. Never raises.
    """
    if not header or not secret:
        return False

    tolerance = get_stripe_webhook_tolerance_seconds() if tolerance_seconds is None else tolerance_seconds
    now = time.time() if now is None else now

    timestamp, signatures = _parse_signature_header(header)
    if timestamp is None or not signatures:
        return False
    try:
        signed_at = int(timestamp)
    except ValueError:
        return False

    if abs(now - signed_at) > tolerance:
        logger.warning(f"[WEBHOOK] Signature timestamp outside tolerance ({int(now - signed_at)}s)")
        return False

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return False

    try:
        # Freshness was checked above against the caller's clock
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=None)
    except stripe.SignatureVerificationError:
        logger.warning("[WEBHOOK] Signature mismatch")
        return False
    return True


def get_stripe_price_id(code: PlanCode | str, interval: PlanInterval | str) -> str | None:
    """Configured Stripe price id for a paid plan, or None."""
    try:
        env_name = _PRICE_ENV_NAMES.get((PlanCode(code), PlanInterval(interval)))
    except ValueError:
        return None
    if env_name is None:
        return None
    return get_stripe_env_value(env_name)


def lookup_plan_for_price_id(price_id: str | None) -> tuple[PlanCode, PlanInterval] | None:
    """(code, interval) for a configured price id, or None if it is not ours."""
    if not price_id:
        return None
    for key, env_name in _PRICE_ENV_NAMES.items():
        if get_stripe_env_value(env_name) == price_id:
            return key
    return None


def get_plan_from_stripe_price_id(price_id: str | None) -> tuple[PlanCode, PlanInterval]:
    """
    Map a Stripe price id to a plan.

    Unknown or empty price ids map to the free plan.
    """
    plan = lookup_plan_for_price_id(price_id)
    if plan is None:
        if price_id:
            logger.warning(f"[STRIPE] Unknown price id {price_id}, mapping to free")
        return PlanCode.FREE, PlanInterval.NONE
    return plan
