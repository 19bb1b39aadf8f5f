from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class User(Base):
    """
    User model synchronized with Supabase Auth.

    Note: Passwords are not stored here - Supabase Auth manages authentication.
    The row exists so billing can anchor free-tier usage windows to the
    account creation date.
    """
    __tablename__ = "users"

    # Supabase Auth UUID (auth.users.id)
    id = Column(String(36), primary_key=True)

    # User email address
    email = Column(String(255), unique=True, index=True, nullable=True)

    # Timestamps: when the user account was created
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    # Relationships: at most one subscription record per user
    subscription = relationship(
        "UserSubscription",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="select"
    )

    def __repr__(self):
        return f"<User(id='{self.id}', email='{self.email}')>"
