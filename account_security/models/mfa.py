"""MFA (Multi-Factor Authentication) database models."""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Integer, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .base import Base
import uuid


class UserMFASecret(Base):
    """Per-subject TOTP shared secret."""
    __tablename__ = "user_mfa_secrets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    secret_key = Column(String, nullable=False)  # Encrypted TOTP secret
    is_enabled = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    last_used_step = Column(Integer, nullable=True)  # TOTP time step of the last accepted code
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationship
    user = relationship("User", back_populates="mfa_secret")

    def __repr__(self):
        return f"<UserMFASecret(id={self.id}, user_id={self.user_id}, enabled={self.is_enabled})>"


class MFAChallenge(Base):
    """A single-use, time-boxed second-factor challenge bound to an action."""
    __tablename__ = "mfa_challenges"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    challenge_type = Column(String(10), nullable=False)  # EMAIL, SMS, TOTP
    code_hash = Column(String(64), nullable=True)  # HMAC of the code; null for TOTP
    action_context = Column(String(100), nullable=True)
    session_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    invalidated = Column(Boolean, nullable=False, default=False)
    invalidated_at = Column(DateTime(timezone=True), nullable=True)
    invalidation_reason = Column(String(50), nullable=True)
    expired = Column(Boolean, nullable=False, default=False)  # set by the sweep only

    user = relationship("User")

    __table_args__ = (
        Index("idx_mfa_challenges_user_context", "user_id", "action_context"),
        Index("idx_mfa_challenges_expires", "expires_at"),
    )

    def __repr__(self):
        return (
            f"<MFAChallenge(id={self.id}, user_id={self.user_id}, type={self.challenge_type}, "
            f"verified={self.verified}, invalidated={self.invalidated})>"
        )
