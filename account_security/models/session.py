"""Superuser session records (issued elsewhere, flagged here after MFA)."""

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from .base import Base
import uuid


class SuperuserSession(Base):
    """Superuser session model."""
    __tablename__ = "superuser_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(45))  # IPv6 compatible
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True)

    mfa_verified = Column(Boolean, default=False)
    mfa_verified_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_superuser_sessions_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<SuperuserSession(id={self.id}, user_id={self.user_id}, mfa_verified={self.mfa_verified})>"
