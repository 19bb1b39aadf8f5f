from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from app.schemas.billing import EntitlementsResponse


class AdminSubscriptionView(BaseModel):
    """Raw subscription record as stored, next to the effective entitlements"""
    plan_code: str
    plan_interval: str
    status: str
    billing_state: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool

    class Config:
        from_attributes = True


class AdminUserOverview(BaseModel):
    user_id: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    roles: List[str] = []
    subscription: Optional[AdminSubscriptionView] = None
    entitlements: EntitlementsResponse
    open_support_cases: int = 0
