from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.core.database import Base


class SupportCase(Base):
    """
    Support case raised for a user and worked by admins.

    closed_at, closed_by_user_id and reopen_deadline_at are set together on
    close and cleared together on reopen.
    """
    __tablename__ = "support_cases"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # User the case is about
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # 'open', 'in_progress', 'closed'
    status = Column(String(20), nullable=False, default="open", index=True)

    # 'low', 'normal', 'high', 'urgent'
    priority = Column(String(20), nullable=False, default="normal")

    # 'billing', 'account', 'bug', 'feature', 'other'
    category = Column(String(20), nullable=False, default="other")

    subject = Column(String(160), nullable=True)
    summary = Column(Text, nullable=False)

    # Admin currently handling the case
    owner_admin_user_id = Column(String(36), nullable=True, index=True)

    # Where the case came from
    source = Column(String(50), nullable=False, default="admin_portal")

    # Close bookkeeping
    closed_at = Column(DateTime(timezone=True), nullable=True)
    closed_by_user_id = Column(String(36), nullable=True)
    reopen_deadline_at = Column(DateTime(timezone=True), nullable=True)

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
        return f"<SupportCase(id={self.id}, user_id='{self.user_id}', status='{self.status}')>"
