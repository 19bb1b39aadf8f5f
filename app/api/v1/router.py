# app/api/v1/router.py
from fastapi import APIRouter

from app.api.v1.endpoints import billing, usage, admin, webhooks

api_v1_router = APIRouter()
api_v1_router.include_router(billing.router, prefix="/billing", tags=["billing"])
api_v1_router.include_router(usage.router, prefix="/usage", tags=["usage"])
api_v1_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_v1_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
