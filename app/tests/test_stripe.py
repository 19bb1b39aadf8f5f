"""
Test suite for the Stripe adapter: webhook signatures, price mapping and the
portal/invoice calls (with the Stripe SDK patched out).
"""
import hashlib
import hmac
import time
from types import SimpleNamespace

import pytest
import stripe

from app.core.errors import NoBillingAccountError, PaymentProviderConfigError, PaymentProviderError
from app.services.billing import stripe_client
from app.services.billing.plans import PlanCode, PlanInterval

SECRET = "whsec_test_secret"
PAYLOAD = '{"id": "evt_1", "type": "invoice.paid"}'


def sign(payload: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stripe_env(monkeypatch):
    """Test-mode Stripe settings with no *_TEST overrides leaking in from .env."""
    monkeypatch.setenv("STRIPE_MODE", "test")
    for name in (
        "STRIPE_SECRET_KEY",
        "STRIPE_PRICE_PLUS_MONTHLY",
        "STRIPE_PRICE_PLUS_YEARLY",
        "STRIPE_PRICE_PRO_MONTHLY",
        "STRIPE_PRICE_PRO_YEARLY",
    ):
        monkeypatch.delenv(f"{name}_TEST", raising=False)
        monkeypatch.delenv(f"{name}_LIVE", raising=False)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_PRICE_PLUS_MONTHLY", "price_plus_m")
    monkeypatch.setenv("STRIPE_PRICE_PLUS_YEARLY", "price_plus_y")
    monkeypatch.setenv("STRIPE_PRICE_PRO_MONTHLY", "price_pro_m")
    monkeypatch.setenv("STRIPE_PRICE_PRO_YEARLY", "price_pro_y")
    return monkeypatch


def test_valid_signature():
    header = sign(PAYLOAD)

    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=300) is True
    assert stripe_client.verify_stripe_webhook_signature(
        PAYLOAD.encode("utf-8"), header, SECRET, tolerance_seconds=300
    ) is True


def test_signature_outside_tolerance_is_rejected():
    """
    Validates:
    - A correctly signed payload from an hour ago fails a 300s tolerance
    """
    now = time.time()
    header = sign(PAYLOAD, timestamp=int(now) - 3600)

    assert stripe_client.verify_stripe_webhook_signature(
        PAYLOAD, header, SECRET, tolerance_seconds=300, now=now
    ) is False


@pytest.mark.parametrize("header", [
    None,
    "",
    "v1=abcdef",
    "t=notanumber,v1=abcdef",
])
def test_malformed_headers_are_rejected(header):
    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=300) is False


def test_missing_v1_is_rejected():
    header = sign(PAYLOAD).replace("v1=", "v0=")

    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=300) is False


def test_tampered_payload_or_wrong_secret_is_rejected():
    header = sign(PAYLOAD)

    assert stripe_client.verify_stripe_webhook_signature(
        PAYLOAD.replace("invoice.paid", "invoice.payment_failed"), header, SECRET, tolerance_seconds=300
    ) is False
    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, "whsec_other", tolerance_seconds=300) is False
    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, None, tolerance_seconds=300) is False


def test_any_matching_v1_signature_is_accepted():
    timestamp = int(time.time())
    good = sign(PAYLOAD, timestamp=timestamp)
    header = f"t={timestamp},v1={'0' * 64},{good.split(',')[1]}"

    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=300) is True


def test_tolerance_defaults_to_config(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "10")
    now = time.time()
    header = sign(PAYLOAD, timestamp=int(now) - 60)

    assert stripe_client.verify_stripe_webhook_signature(PAYLOAD, header, SECRET, now=now) is False


def test_price_mapping(stripe_env):
    assert stripe_client.get_stripe_price_id("plus", "month") == "price_plus_m"
    assert stripe_client.get_stripe_price_id("pro", "year") == "price_pro_y"
    assert stripe_client.get_stripe_price_id("free", "none") is None

    assert stripe_client.get_plan_from_stripe_price_id("price_pro_m") == (PlanCode.PRO, PlanInterval.MONTH)
    assert stripe_client.get_plan_from_stripe_price_id("price_unknown") == (PlanCode.FREE, PlanInterval.NONE)
    assert stripe_client.get_plan_from_stripe_price_id(None) == (PlanCode.FREE, PlanInterval.NONE)
    assert stripe_client.lookup_plan_for_price_id("price_unknown") is None


def test_mode_suffix_wins(stripe_env):
    stripe_env.setenv("STRIPE_PRICE_PLUS_MONTHLY_TEST", "price_plus_m_test")
    stripe_env.setenv("STRIPE_PRICE_PLUS_MONTHLY_LIVE", "price_plus_m_live")

    assert stripe_client.get_stripe_price_id("plus", "month") == "price_plus_m_test"

    stripe_env.setenv("STRIPE_MODE", "live")
    assert stripe_client.get_stripe_price_id("plus", "month") == "price_plus_m_live"


def test_portal_session(stripe_env):
    calls = {}

    def fake_create(**kwargs):
        calls.update(kwargs)
        return SimpleNamespace(url="https://billing.stripe.com/session/abc")

    stripe_env.setattr(stripe.billing_portal.Session, "create", fake_create)

    url = stripe_client.create_portal_session("cus_123", "http://localhost:3000/settings/billing")

    assert url == "https://billing.stripe.com/session/abc"
    assert calls == {"customer": "cus_123", "return_url": "http://localhost:3000/settings/billing"}


def test_portal_session_without_customer():
    with pytest.raises(NoBillingAccountError):
        stripe_client.create_portal_session(None, "http://localhost:3000")


def test_portal_session_provider_error(stripe_env):
    def fake_create(**kwargs):
        raise stripe.StripeError("boom")

    stripe_env.setattr(stripe.billing_portal.Session, "create", fake_create)

    with pytest.raises(PaymentProviderError):
        stripe_client.create_portal_session("cus_123", "http://localhost:3000")


def test_live_key_in_test_mode_is_refused(stripe_env):
    stripe_env.setenv("STRIPE_SECRET_KEY", "sk_live_123")

    with pytest.raises(PaymentProviderConfigError):
        stripe_client.create_portal_session("cus_123", "http://localhost:3000")


def test_list_invoices(stripe_env):
    invoice = SimpleNamespace(
        id="in_1",
        number="A-0001",
        status="paid",
        amount_due=499,
        amount_paid=499,
        currency="usd",
        created=1770000000,
        hosted_invoice_url="https://invoice.stripe.com/i/in_1",
        invoice_pdf=None,
    )
    captured = {}

    def fake_list(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(data=[invoice])

    stripe_env.setattr(stripe.Invoice, "list", fake_list)

    invoices = stripe_client.list_invoices("cus_123", limit=500)

    assert captured["limit"] == stripe_client.MAX_INVOICES
    assert len(invoices) == 1
    assert invoices[0].amount_paid == 499
    assert invoices[0].created_at.year == 2026
