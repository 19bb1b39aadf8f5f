from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from app.core.database import Base


class UsageCounter(Base):
    """
    Per-user, per-metric, per-period consumption counter.

    Rows are created with count=0 on the first reservation attempt and only
    ever incremented through the atomic reservation in
    app.services.billing.usage. period_key is a calendar key ('2026-02-01',
    '2026-02-01T13') or 'lifetime' for counters that never reset.
    """
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("user_id", "metric_key", "period_key", name="uq_usage_counters_user_metric_period"),
        CheckConstraint("count >= 0", name="ck_usage_counters_count_non_negative"),
    )

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Owner of the counter
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Metric identifier, e.g. 'ai_today_ai_generations_monthly'
    metric_key = Column(String(100), nullable=False)

    # Window identifier
    period_key = Column(String(32), nullable=False)

    # Window bounds; period_end_at doubles as reset_at
    period_start_at = Column(DateTime(timezone=True), nullable=False)
    period_end_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Consumption within the window
    count = Column(Integer, nullable=False, default=0)

    # Limit in force at the last successful reservation
    limit_snapshot = Column(Integer, nullable=True)

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

    def __repr__(self):
        return (
            f"<UsageCounter(user_id='{self.user_id}', metric_key='{self.metric_key}', "
            f"period_key='{self.period_key}', count={self.count})>"
        )
