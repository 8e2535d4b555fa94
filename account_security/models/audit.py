"""Audit trail storage."""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from .base import Base


class AuditLogEntry(Base):
    """One structured security event."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), unique=True, nullable=False)
    category = Column(String(30), nullable=False)  # password, lockout, mfa, storage
    action = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)  # low, medium, high, critical
    subject_id = Column(String, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_audit_log_category_action", "category", "action"),
        Index("idx_audit_log_subject", "subject_id"),
        Index("idx_audit_log_time", "timestamp"),
    )

    def __repr__(self):
        return f"<AuditLogEntry(id={self.id}, action={self.action}, severity={self.severity})>"
