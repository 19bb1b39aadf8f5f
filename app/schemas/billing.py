from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Union
from datetime import datetime


class PlanResponse(BaseModel):
    """Public view of a catalog plan"""
    code: str
    label_code: str
    interval: str
    display_name: str
    price_cents: int
    currency: str
    limits: Dict[str, Union[int, str]]
    features: Dict[str, bool]


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]


class UsagePeriodResponse(BaseModel):
    start: datetime
    end: datetime
    key: str


class UsageStatusResponse(BaseModel):
    """Quota of one metered metric; limit is 'unlimited' for uncapped metrics"""
    metric: str
    window: str
    limit: Union[int, str]
    used: int
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None


class EntitlementsResponse(BaseModel):
    """Effective plan of the caller right now"""
    plan_code: str
    plan_label: str
    plan_display_name: str
    interval: str
    billing_state: str
    is_paid: bool
    has_billing_account: bool
    cancel_at_period_end: bool
    period: UsagePeriodResponse
    renewal_at: Optional[datetime] = None
    limits: Dict[str, Union[int, str]]
    features: Dict[str, bool]
    usage: List[UsageStatusResponse] = []


class UsageListResponse(BaseModel):
    usage: List[UsageStatusResponse]


class ReservationResponse(BaseModel):
    """Result of a granted reservation; unlimited when the plan has no cap"""
    allowed: bool = True
    metric: str
    unlimited: bool = False
    count: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None


class PortalRequest(BaseModel):
    return_path: Optional[str] = Field(None, max_length=200, pattern=r"^/[A-Za-z0-9/_\-]*$")


class PortalResponse(BaseModel):
    url: str


class InvoiceResponse(BaseModel):
    id: str
    number: Optional[str] = None
    status: Optional[str] = None
    amount_due: int
    amount_paid: int
    currency: str
    created_at: Optional[datetime] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
