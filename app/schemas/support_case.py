from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from app.services.support_cases import SupportCaseStatus, SupportCasePriority, SupportCaseCategory


class SupportCaseUpdate(BaseModel):
    """Admin patch for a support case; omitted fields are left unchanged"""
    status: Optional[SupportCaseStatus] = None
    priority: Optional[SupportCasePriority] = None
    category: Optional[SupportCaseCategory] = None
    subject: Optional[str] = Field(None, min_length=1, max_length=160)
    summary: Optional[str] = Field(None, min_length=1, max_length=2000)


class SupportCaseResponse(BaseModel):
    id: int
    user_id: str
    status: str
    priority: str
    category: str
    subject: Optional[str] = None
    summary: str
    owner_admin_user_id: Optional[str] = None
    source: str
    closed_at: Optional[datetime] = None
    closed_by_user_id: Optional[str] = None
    reopen_deadline_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SupportCaseUpdateResponse(BaseModel):
    case: SupportCaseResponse
    already_closed: bool = False
    reopened: bool = False
