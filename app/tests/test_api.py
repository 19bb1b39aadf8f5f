"""
HTTP tests for the billing, usage, admin and webhook endpoints.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from sqlalchemy import select

from app.models.support_case import SupportCase
from app.models.user_subscription import UserSubscription
from app.services.billing.usage import reserve_usage_counter_atomic
from scripts.seed_admin_roles import AdminRoleSeeder


def current_cycle() -> dict:
    now = datetime.now(timezone.utc)
    return dict(
        current_period_start=now - timedelta(days=5),
        current_period_end=now + timedelta(days=25),
    )


@pytest.fixture
def make_admin(session_factory, make_user):
    async def _make_admin(user_id: str, role: str) -> None:
        await make_user(user_id)
        async with session_factory() as session:
            seeder = AdminRoleSeeder()
            await seeder.seed(session)
            await seeder.assign_role(session, user_id, role)

    return _make_admin


@pytest.fixture
def make_case(session_factory):
    async def _make_case(user_id: str, **fields) -> int:
        async with session_factory() as session:
            case = SupportCase(user_id=user_id, summary="Cannot open the portal", **fields)
            session.add(case)
            await session.commit()
            return case.id

    return _make_case


@pytest.mark.asyncio
async def test_root_sets_request_id(client):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json()["status"] == "OK"
    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_plans_are_public(client):
    """
    Validates:
    - The catalog is readable without authentication
    - Unlimited caps are reported as the string 'unlimited'
    """
    response = await client.get("/api/v1/billing/plans")

    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["price_cents"] for p in plans] == [0, 499, 999, 3999, 7999]
    assert plans[0]["label_code"] == "starter"
    pro = next(p for p in plans if p["code"] == "pro")
    assert pro["limits"]["wardrobe_items"] == "unlimited"
    assert pro["limits"]["max_trip_days"] == 30


@pytest.mark.asyncio
async def test_entitlements_require_authentication(client):
    response = await client.get("/api/v1/billing/entitlements")

    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_REQUIRED"


@pytest.mark.asyncio
async def test_entitlements_with_supabase_token(client, make_user, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-jwt-secret")
    await make_user("11111111-1111-1111-1111-111111111111")
    token = jwt.encode(
        {"sub": "11111111-1111-1111-1111-111111111111", "email": "a@example.com", "exp": int(time.time()) + 600},
        "test-jwt-secret",
        algorithm="HS256",
    )

    response = await client.get("/api/v1/billing/entitlements", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["plan_code"] == "free"


@pytest.mark.asyncio
async def test_entitlements_for_past_due_plus_user(client, make_user, login):
    await make_user("user-plus", plan_code="plus", billing_state="past_due", stripe_customer_id="cus_1", **current_cycle())
    login("user-plus")

    response = await client.get("/api/v1/billing/entitlements")

    assert response.status_code == 200
    data = response.json()
    assert data["plan_code"] == "plus"
    assert data["plan_label"] == "plus"
    assert data["billing_state"] == "past_due"
    assert data["is_paid"] is True
    assert data["limits"]["ai_today_ai_generations_monthly"] == 7
    assert data["features"]["ai_image_generation"] is True
    today_ai = next(u for u in data["usage"] if u["metric"] == "ai_today_ai_generations_monthly")
    assert today_ai["used"] == 0
    assert today_ai["remaining"] == 7


@pytest.mark.asyncio
async def test_entitlements_for_canceled_user(client, make_user, login):
    await make_user("user-gone", plan_code="pro", billing_state="canceled", **current_cycle())
    login("user-gone")

    data = (await client.get("/api/v1/billing/entitlements")).json()

    assert data["plan_code"] == "free"
    assert data["plan_display_name"] == "Starter"
    assert data["is_paid"] is False


@pytest.mark.asyncio
async def test_today_ai_reserve_until_quota_exhausted(client, make_user, login):
    """
    Validates:
    - Granted reservations report count/remaining in body and headers
    - Denial is a 429 with code, limit, remaining and reset_at
    """
    # Setup
    await make_user("user-plus", plan_code="plus", **current_cycle())
    login("user-plus")

    # Execute: the hourly burst guard allows 5
    responses = [await client.post("/api/v1/usage/today-ai/reserve") for _ in range(6)]

    # Assert
    assert [r.status_code for r in responses] == [200] * 5 + [429]
    granted = responses[0]
    assert granted.json()["count"] == 1
    assert granted.json()["remaining"] == 6
    assert granted.headers["X-RateLimit-Limit"] == "7"
    assert granted.headers["X-RateLimit-Remaining"] == "6"

    denied = responses[-1]
    body = denied.json()
    assert body["code"] == "BURST_LIMIT_EXCEEDED"
    assert body["limit"] == 5
    assert body["remaining"] == 0
    assert "reset_at" in body
    assert denied.headers["X-RateLimit-Remaining"] == "0"
    assert "Retry-After" in denied.headers


@pytest.mark.asyncio
async def test_today_ai_monthly_quota_denial(client, make_user, login, session_factory):
    await make_user("user-plus", plan_code="plus", **current_cycle())
    async with session_factory() as session:
        subscription = (await session.execute(
            select(UserSubscription).where(UserSubscription.user_id == "user-plus")
        )).scalar_one()
        period_key = subscription.current_period_start.strftime("%Y-%m-%d")

    async with session_factory() as session:
        for _ in range(7):
            await reserve_usage_counter_atomic(session, "user-plus", "ai_today_ai_generations_monthly", period_key, 7)
    login("user-plus")

    response = await client.post("/api/v1/usage/today-ai/reserve")

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "USAGE_LIMIT_EXCEEDED"
    assert body["limit"] == 7
    assert body["metric"] == "ai_today_ai_generations_monthly"


@pytest.mark.asyncio
async def test_free_user_trial_then_denied(client, make_user, login):
    await make_user("user-free")
    login("user-free")

    first = await client.post("/api/v1/usage/today-ai/reserve")
    second = await client.post("/api/v1/usage/today-ai/reserve")

    assert first.status_code == 200
    assert first.json()["reset_at"] is None
    assert second.status_code == 429
    assert second.json()["code"] == "TRIAL_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_image_generation_requires_plan(client, make_user, login):
    await make_user("user-free")
    login("user-free")

    response = await client.post("/api/v1/usage/image-generation/reserve")

    assert response.status_code == 403
    assert response.json()["code"] == "PLAN_REQUIRED"
    assert response.json()["required_plan"] == "plus"


@pytest.mark.asyncio
async def test_usage_listing_is_read_only(client, make_user, login):
    await make_user("user-plus", plan_code="plus", **current_cycle())
    login("user-plus")

    await client.post("/api/v1/usage/image-generation/reserve")
    first = (await client.get("/api/v1/usage")).json()["usage"]
    second = (await client.get("/api/v1/usage")).json()["usage"]

    assert first == second
    image = next(u for u in first if u["metric"] == "ai_image_generations_monthly")
    assert image["used"] == 1
    assert image["remaining"] == 29
    trial = next(u for u in first if u["metric"] == "ai_today_ai_trial_lifetime")
    assert trial["reset_at"] is None


@pytest.mark.asyncio
async def test_portal_without_billing_account(client, make_user, login):
    await make_user("user-free")
    login("user-free")

    response = await client.post("/api/v1/billing/portal", json={"return_path": "/settings/billing"})

    assert response.status_code == 400
    assert response.json()["code"] == "NO_BILLING_ACCOUNT"


@pytest.mark.asyncio
async def test_portal_rejects_external_return_path(client, make_user, login):
    await make_user("user-plus", plan_code="plus", stripe_customer_id="cus_1", **current_cycle())
    login("user-plus")

    response = await client.post("/api/v1/billing/portal", json={"return_path": "https://evil.example.com"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_route_requires_permission(client, make_user, make_case, login):
    await make_user("customer-1")
    case_id = await make_case("customer-1")
    login("customer-1")

    response = await client.get(f"/api/v1/admin/support-cases/{case_id}")

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_admin_route_requires_recent_sign_in(client, make_user, make_admin, make_case, login):
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    case_id = await make_case("customer-1")
    login("admin-1", strong_auth_age=2 * 86400)

    response = await client.get(f"/api/v1/admin/support-cases/{case_id}")

    assert response.status_code == 401
    assert response.json()["code"] == "ADMIN_STEP_UP_REQUIRED"


@pytest.mark.asyncio
async def test_admin_mutation_needs_fresher_sign_in_than_reads(client, make_user, make_admin, make_case, login, monkeypatch):
    monkeypatch.delenv("ADMIN_HIGH_RISK_MAX_AGE_SECONDS", raising=False)
    monkeypatch.delenv("ADMIN_LOW_RISK_MAX_AGE_SECONDS", raising=False)
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    case_id = await make_case("customer-1")
    login("admin-1", strong_auth_age=3600)
    url = f"/api/v1/admin/support-cases/{case_id}"

    read = await client.get(url)
    write = await client.patch(url, json={"priority": "high"})

    assert read.status_code == 200
    assert write.status_code == 401
    assert write.json()["code"] == "ADMIN_STEP_UP_REQUIRED"
    assert write.json()["max_age_seconds"] == 900


@pytest.mark.asyncio
async def test_admin_route_without_amr_is_denied(client, make_user, make_admin, make_case, login):
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    case_id = await make_case("customer-1")
    login("admin-1", strong_auth_age=None)

    response = await client.get(f"/api/v1/admin/support-cases/{case_id}")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_rate_limit(client, make_user, make_admin, make_case, login, monkeypatch):
    monkeypatch.setenv("ADMIN_RATE_LIMIT_MAX_ACTIONS", "2")
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    case_id = await make_case("customer-1")
    login("admin-1")

    responses = [await client.get(f"/api/v1/admin/support-cases/{case_id}") for _ in range(3)]

    assert [r.status_code for r in responses] == [200, 200, 429]
    body = responses[-1].json()
    assert body["code"] == "ADMIN_RATE_LIMITED"
    assert body["limit"] == 2
    assert body["remaining"] == 0


@pytest.mark.asyncio
async def test_admin_close_and_reopen_case(client, make_user, make_admin, make_case, login):
    """
    Validates:
    - PATCH status=closed stamps the close fields
    - A second close reports already_closed
    - PATCH status=open inside the window reopens and clears them
    """
    # Setup
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    case_id = await make_case("customer-1")
    login("admin-1")
    url = f"/api/v1/admin/support-cases/{case_id}"

    # Execute / Assert
    closed = await client.patch(url, json={"status": "closed", "summary": "Portal link resent"})
    assert closed.status_code == 200
    case = closed.json()["case"]
    assert case["status"] == "closed"
    assert case["closed_by_user_id"] == "admin-1"
    assert case["summary"] == "Portal link resent"
    closed_at = datetime.fromisoformat(case["closed_at"])
    deadline = datetime.fromisoformat(case["reopen_deadline_at"])
    assert deadline - closed_at == timedelta(days=7)

    again = await client.patch(url, json={"status": "closed"})
    assert again.json()["already_closed"] is True

    jump = await client.patch(url, json={"status": "in_progress"})
    assert jump.status_code == 400
    assert jump.json()["code"] == "INVALID_TRANSITION"

    reopened = await client.patch(url, json={"status": "open"})
    assert reopened.status_code == 200
    assert reopened.json()["reopened"] is True
    assert reopened.json()["case"]["closed_at"] is None


@pytest.mark.asyncio
async def test_admin_reopen_after_window(client, make_user, make_admin, make_case, login):
    await make_user("customer-1")
    await make_admin("admin-1", "support_admin")
    closed_at = datetime.now(timezone.utc) - timedelta(days=8)
    case_id = await make_case(
        "customer-1",
        status="closed",
        closed_at=closed_at,
        closed_by_user_id="admin-1",
        reopen_deadline_at=closed_at + timedelta(days=7),
    )
    login("admin-1")

    response = await client.patch(f"/api/v1/admin/support-cases/{case_id}", json={"status": "open"})

    assert response.status_code == 400
    assert response.json()["code"] == "SUPPORT_REOPEN_WINDOW_EXPIRED"


@pytest.mark.asyncio
async def test_admin_missing_case(client, make_admin, login):
    await make_admin("admin-1", "support_admin")
    login("admin-1")

    response = await client.get("/api/v1/admin/support-cases/424242")

    assert response.status_code == 404
    assert response.json()["code"] == "CASE_NOT_FOUND"


@pytest.mark.asyncio
async def test_admin_user_overview(client, make_user, make_admin, make_case, login):
    await make_user("customer-1", plan_code="plus", billing_state="unpaid", stripe_customer_id="cus_1", **current_cycle())
    await make_admin("admin-1", "billing_admin")
    await make_case("customer-1")
    login("admin-1")

    response = await client.get("/api/v1/admin/users/customer-1/overview")

    assert response.status_code == 200
    data = response.json()
    assert data["subscription"]["plan_code"] == "plus"
    assert data["subscription"]["billing_state"] == "unpaid"
    assert data["entitlements"]["plan_code"] == "free"
    assert data["open_support_cases"] == 1


def signed_webhook(payload: dict, secret: str) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


@pytest.fixture
def webhook_env(monkeypatch):
    monkeypatch.setenv("STRIPE_MODE", "test")
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET_TEST", raising=False)
    monkeypatch.delenv("STRIPE_PRICE_PLUS_MONTHLY_TEST", raising=False)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_api_test")
    monkeypatch.setenv("STRIPE_PRICE_PLUS_MONTHLY", "price_plus_m")
    return "whsec_api_test"


@pytest.mark.asyncio
async def test_stripe_webhook(client, make_user, session_factory, webhook_env):
    await make_user("user-1")
    event = {
        "id": "evt_api_1",
        "type": "customer.subscription.created",
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": False,
            "metadata": {"user_id": "user-1"},
            "items": {"data": [{"price": {"id": "price_plus_m"}}]},
        }},
    }
    body, headers = signed_webhook(event, webhook_env)

    first = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)
    second = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "deduped": False}
    assert second.json()["deduped"] is True

    async with session_factory() as session:
        row = (await session.execute(
            select(UserSubscription).where(UserSubscription.user_id == "user-1")
        )).scalar_one()
    assert row.plan_code == "plus"
    assert row.stripe_customer_id == "cus_1"


@pytest.mark.asyncio
async def test_stripe_webhook_bad_signature(client, webhook_env):
    body, headers = signed_webhook({"id": "evt_x", "type": "invoice.paid"}, "whsec_wrong")

    response = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_stripe_webhook_rejects_non_event(client, webhook_env):
    body, headers = signed_webhook({"hello": "world"}, webhook_env)

    response = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 400
