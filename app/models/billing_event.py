from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from sqlalchemy.sql import func
from app.core.database import Base


class BillingEvent(Base):
    """
    Journal of payment-provider webhook events.

    The unique stripe_event_id makes webhook delivery idempotent: a redelivered
    event that was already processed is acknowledged without re-applying it.
    """
    __tablename__ = "billing_events"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Provider event id (evt_...)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)

    # e.g. 'customer.subscription.updated'
    event_type = Column(String(100), nullable=False, index=True)

    # Resolved user, when one could be matched
    user_id = Column(String(36), nullable=True)

    # Raw event
    payload_json = Column(JSON, nullable=False)

    # 'pending', 'processed', 'failed'
    processing_status = Column(String(20), nullable=False, default="pending")
    # When a delivery last took the event for processing
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_text = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self):
        return (
            f"<BillingEvent(stripe_event_id='{self.stripe_event_id}', "
            f"processing_status='{self.processing_status}')>"
        )
