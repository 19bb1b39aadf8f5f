"""
Webhook endpoint for Stripe billing events.

Stripe signs every delivery; unsigned or stale deliveries are rejected
before anything is parsed. Processing is idempotent per event id, so Stripe
retries are safe.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_stripe_env_value
from app.core.database import get_db
from app.core.errors import UnauthorizedError
from app.services.billing.stripe_client import verify_stripe_webhook_signature
from app.services.billing.subscription_sync import process_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def handle_stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Handle a Stripe webhook delivery.

    Flow:
    1. Verify the Stripe-Signature header against STRIPE_WEBHOOK_SECRET
    2. Parse the event
    3. Journal it in billing_events (already processed events are deduped)
    4. Apply it to the user's subscription record

    Returns:
        dict: {"received": true, "deduped": bool}

    Raises:
        UnauthorizedError 401: If the signature is missing, invalid or stale
        HTTPException 400: If the body is not a Stripe event
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    secret = get_stripe_env_value("STRIPE_WEBHOOK_SECRET")

    if not secret:
        logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET is not configured")

    if not verify_stripe_webhook_signature(payload, signature, secret):
        raise UnauthorizedError("Invalid Stripe signature", code="INVALID_SIGNATURE")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a Stripe event")

    try:
        return await process_stripe_event(db, event)
    except Exception:
        # Already logged and journaled as failed; a 500 makes Stripe retry
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": False, "error": "Event processing failed"},
        )
