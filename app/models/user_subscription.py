from sqlalchemy import Column, Integer, String, DateTime, Date, ForeignKey, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class UserSubscription(Base):
    """
    Locally cached view of a user's payment-provider subscription.

    Written by the Stripe webhook sync, read by the entitlements resolver.
    Stores the *nominal* plan from the provider; whether it currently grants
    access is decided at read time from billing_state and the period bounds.
    """
    __tablename__ = "user_subscriptions"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign key: one subscription record per user
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )

    # Nominal plan: 'free', 'plus', 'pro'
    plan_code = Column(String(20), nullable=False, default="free")

    # Billing interval: 'none', 'month', 'year'
    plan_interval = Column(String(10), nullable=False, default="none")

    # Raw provider status ('active', 'past_due', 'incomplete', ...)
    status = Column(String(50), nullable=False, default="active")

    # Normalized state: 'active', 'past_due', 'unpaid', 'canceled', 'trialing', 'scheduled_cancel'
    billing_state = Column(String(20), nullable=False, default="active", index=True)

    # Payment provider identifiers
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True)

    # Current billing cycle
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    # Cancellation takes effect at period end
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Day-of-month anchor for usage windows
    plan_anchor_date = Column(Date, nullable=True)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    # Relationships
    user = relationship(
        "User",
        back_populates="subscription",
        lazy="select"
    )

    def __repr__(self):
        return (
            f"<UserSubscription(user_id='{self.user_id}', plan_code='{self.plan_code}', "
            f"billing_state='{self.billing_state}')>"
        )
