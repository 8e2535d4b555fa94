"""Lockout records keyed by login identifier (subject id, email or address)."""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from .base import Base


class LockoutRecord(Base):
    """Failure counter for one identifier.

    Deliberately not a foreign key to ``users``: unknown emails and network
    addresses are locked out without a subject existing.
    """
    __tablename__ = "lockout_records"

    identifier = Column(String(320), primary_key=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return (
            f"<LockoutRecord(identifier={self.identifier}, "
            f"failed_attempts={self.failed_attempts}, locked_until={self.locked_until})>"
        )
