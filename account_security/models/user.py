from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .base import Base
import uuid


class User(Base):
    """A subject whose credential and second factors are protected by the core.

    The Credential (hash + algorithm parameters) lives on this row; passlib
    encodes the scheme and cost factor inside ``hashed_password`` itself.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=True)
    hashed_password = Column(String, nullable=False)
    password_updated_at = Column(DateTime(timezone=True), server_default=func.now())
    is_active = Column(Boolean, default=True)
    is_superuser = Column(Boolean, default=False)
    require_mfa = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    mfa_secret = relationship("UserMFASecret", back_populates="user", uselist=False, cascade="all, delete-orphan")
    password_history = relationship("PasswordHistory", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("SuperuserSession", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, superuser={self.is_superuser})>"

    @property
    def has_totp_enabled(self) -> bool:
        """Check if user has a confirmed TOTP factor."""
        return self.mfa_secret is not None and self.mfa_secret.is_enabled
