from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from app.core.database import Base


class AdminRateLimit(Base):
    """
    Durable fixed-window counter for administrative actions.

    Keyed by (user_id, scope) where scope is the action key, e.g.
    'admin-support-case-update'. Mutated only by
    enforce_admin_rate_limit_durable().
    """
    __tablename__ = "admin_rate_limits"
    __table_args__ = (
        UniqueConstraint("user_id", "scope", name="uq_admin_rate_limits_user_scope"),
        CheckConstraint("count >= 0", name="ck_admin_rate_limits_count_non_negative"),
    )

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Acting admin
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )

    # Action key
    scope = Column(String(100), nullable=False)

    # Actions taken in the current window
    count = Column(Integer, nullable=False, default=0)

    # End of the current window
    reset_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Window length used when the window was opened
    window_seconds = Column(Integer, nullable=False)

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
        return f"<AdminRateLimit(user_id='{self.user_id}', scope='{self.scope}', count={self.count})>"
