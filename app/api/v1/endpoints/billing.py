"""
API endpoints for plans, entitlements and self-service billing.

This module provides REST API endpoints for users to:
- View the plan catalog
- View their effective plan, limits and usage
- Open the Stripe customer portal
- View their invoice history
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from app.core.config import get_app_url
from app.core.dependencies import get_entitlements
from app.schemas.billing import (
    PlanResponse,
    PlanListResponse,
    EntitlementsResponse,
    UsagePeriodResponse,
    UsageStatusResponse,
    PortalRequest,
    PortalResponse,
    InvoiceResponse,
    InvoiceListResponse,
)
from app.services.billing.entitlements import Entitlements, compute_hour_period
from app.services.billing.plan_labels import get_plan_display_name, to_plan_label_code
from app.services.billing.plans import METRIC_WINDOWS, MetricWindow, PlanDefinition, Unlimited, list_plan_definitions
from app.services.billing.stripe_client import create_portal_session, list_invoices

router = APIRouter()

DEFAULT_PORTAL_RETURN_PATH = "/settings/billing"


def _limit_value(limit):
    return limit.value if isinstance(limit, Unlimited) else limit


def serialize_plan(plan: PlanDefinition) -> PlanResponse:
    return PlanResponse(
        code=plan.code.value,
        label_code=to_plan_label_code(plan.code).value,
        interval=plan.interval.value,
        display_name=plan.display_name,
        price_cents=plan.price_cents,
        currency=plan.currency,
        limits={key: _limit_value(value) for key, value in plan.limits.items()},
        features=dict(plan.features),
    )


def build_usage_statuses(entitlements: Entitlements) -> list[UsageStatusResponse]:
    """
    Quota statuses computed from the usage already loaded on the entitlements.
    """
    hour = compute_hour_period(entitlements.resolved_at)
    reset_by_window = {
        MetricWindow.MONTHLY: entitlements.period.end,
        MetricWindow.HOURLY: hour.end,
        MetricWindow.LIFETIME: None,
    }

    statuses = []
    for metric_key, window in METRIC_WINDOWS.items():
        if window == MetricWindow.STATIC:
            continue
        limit = entitlements.plan.limits[metric_key]
        used = entitlements.usage.get(metric_key, 0)
        unlimited = isinstance(limit, Unlimited)
        statuses.append(UsageStatusResponse(
            metric=metric_key,
            window=window.value,
            limit=_limit_value(limit),
            used=used,
            remaining=None if unlimited else max(0, limit - used),
            reset_at=reset_by_window[window],
        ))
    return statuses


def serialize_entitlements(entitlements: Entitlements) -> EntitlementsResponse:
    return EntitlementsResponse(
        plan_code=entitlements.effective_plan_code.value,
        plan_label=to_plan_label_code(entitlements.effective_plan_code).value,
        plan_display_name=get_plan_display_name(entitlements.effective_plan_code),
        interval=entitlements.effective_interval.value,
        billing_state=entitlements.billing_state.value,
        is_paid=entitlements.is_paid,
        has_billing_account=entitlements.has_billing_account,
        cancel_at_period_end=entitlements.cancel_at_period_end,
        period=UsagePeriodResponse(
            start=entitlements.period.start,
            end=entitlements.period.end,
            key=entitlements.period.key,
        ),
        renewal_at=entitlements.renewal_at,
        limits={key: _limit_value(value) for key, value in entitlements.plan.limits.items()},
        features=dict(entitlements.plan.features),
        usage=build_usage_statuses(entitlements),
    )


@router.get("/plans", response_model=PlanListResponse)
async def list_plans():
    """
    Get the plan catalog.

    Public: no authentication required, so pricing pages can render it.

    Returns:
        PlanListResponse: Every registered plan, cheapest first
    """
    return PlanListResponse(plans=[serialize_plan(plan) for plan in list_plan_definitions()])


@router.get("/entitlements", response_model=EntitlementsResponse)
async def get_my_entitlements(entitlements: Entitlements = Depends(get_entitlements)):
    """
    Get the authenticated user's effective plan, limits, features and usage.

    The effective plan may differ from what the user pays for: past-due
    subscriptions keep access, unpaid and canceled ones fall back to Starter.
    """
    return serialize_entitlements(entitlements)


@router.post("/portal", response_model=PortalResponse)
async def open_billing_portal(
    body: Optional[PortalRequest] = None,
    entitlements: Entitlements = Depends(get_entitlements),
):
    """
    Create a Stripe customer portal session.

    Raises:
        NoBillingAccountError 400: If the user never had a Stripe customer
        PaymentProviderError 502: If Stripe rejects the request
    """
    return_path = (body.return_path if body else None) or DEFAULT_PORTAL_RETURN_PATH
    url = await run_in_threadpool(
        create_portal_session,
        entitlements.stripe_customer_id,
        f"{get_app_url()}{return_path}",
    )
    return PortalResponse(url=url)


@router.get("/invoices", response_model=InvoiceListResponse)
async def get_my_invoices(
    limit: int = Query(25, ge=1, le=100),
    entitlements: Entitlements = Depends(get_entitlements),
):
    """
    Get the authenticated user's invoice history, newest first.

    Raises:
        NoBillingAccountError 400: If the user never had a Stripe customer
        PaymentProviderError 502: If Stripe rejects the request
    """
    invoices = await run_in_threadpool(list_invoices, entitlements.stripe_customer_id, limit)
    return InvoiceListResponse(invoices=[InvoiceResponse.model_validate(invoice) for invoice in invoices])
