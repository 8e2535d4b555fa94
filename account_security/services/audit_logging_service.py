"""
Audit trail for account security events
Every lockout and MFA transition and every password change attempt emits one event
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.exceptions import StorageUnavailable
from ..core.clock import utcnow, ensure_utc
from ..core.logging import get_logger
from ..models.audit import AuditLogEntry

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    """Audit event categories"""
    PASSWORD = "password"
    LOCKOUT = "lockout"
    MFA = "mfa"
    STORAGE = "storage"


class AuditSeverity(str, Enum):
    """Audit event severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """Audit event types emitted by the security core"""
    # Password events
    PASSWORD_SET = "password_set"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_CHANGE_REJECTED = "password_change_rejected"
    PASSWORD_HISTORY_CHECK_FAILED = "password_history_check_failed"

    # Lockout events
    LOGIN_FAILURE_RECORDED = "login_failure_recorded"
    ACCOUNT_LOCKED = "account_locked"
    LOCKED_ATTEMPT_REJECTED = "locked_attempt_rejected"
    LOCKOUT_CLEARED = "lockout_cleared"

    # MFA events
    MFA_CHALLENGE_ISSUED = "mfa_challenge_issued"
    MFA_CHALLENGE_DELIVERY_FAILED = "mfa_challenge_delivery_failed"
    MFA_CHALLENGE_VERIFIED = "mfa_challenge_verified"
    MFA_CHALLENGE_VERIFICATION_FAILED = "mfa_challenge_verification_failed"
    MFA_CHALLENGE_INVALIDATED = "mfa_challenge_invalidated"
    MFA_CHALLENGE_EXPIRED = "mfa_challenge_expired"
    MFA_REQUIREMENT_LOOKUP_FAILED = "mfa_requirement_lookup_failed"
    MFA_TOTP_ENABLED = "mfa_totp_enabled"

    # Storage events
    STORAGE_ERROR = "storage_error"


# Severity is fixed per event type
SEVERITY_MAPPING: Dict[AuditEventType, AuditSeverity] = {
    AuditEventType.PASSWORD_SET: AuditSeverity.LOW,
    AuditEventType.PASSWORD_CHANGED: AuditSeverity.MEDIUM,
    AuditEventType.PASSWORD_CHANGE_REJECTED: AuditSeverity.MEDIUM,
    AuditEventType.PASSWORD_HISTORY_CHECK_FAILED: AuditSeverity.HIGH,
    AuditEventType.LOGIN_FAILURE_RECORDED: AuditSeverity.MEDIUM,
    AuditEventType.ACCOUNT_LOCKED: AuditSeverity.HIGH,
    AuditEventType.LOCKED_ATTEMPT_REJECTED: AuditSeverity.MEDIUM,
    AuditEventType.LOCKOUT_CLEARED: AuditSeverity.LOW,
    AuditEventType.MFA_CHALLENGE_ISSUED: AuditSeverity.MEDIUM,
    AuditEventType.MFA_CHALLENGE_DELIVERY_FAILED: AuditSeverity.HIGH,
    AuditEventType.MFA_CHALLENGE_VERIFIED: AuditSeverity.MEDIUM,
    AuditEventType.MFA_CHALLENGE_VERIFICATION_FAILED: AuditSeverity.MEDIUM,
    AuditEventType.MFA_CHALLENGE_INVALIDATED: AuditSeverity.LOW,
    AuditEventType.MFA_CHALLENGE_EXPIRED: AuditSeverity.LOW,
    AuditEventType.MFA_REQUIREMENT_LOOKUP_FAILED: AuditSeverity.HIGH,
    AuditEventType.MFA_TOTP_ENABLED: AuditSeverity.MEDIUM,
    AuditEventType.STORAGE_ERROR: AuditSeverity.HIGH,
}

CATEGORY_MAPPING: Dict[AuditEventType, AuditCategory] = {
    AuditEventType.PASSWORD_SET: AuditCategory.PASSWORD,
    AuditEventType.PASSWORD_CHANGED: AuditCategory.PASSWORD,
    AuditEventType.PASSWORD_CHANGE_REJECTED: AuditCategory.PASSWORD,
    AuditEventType.PASSWORD_HISTORY_CHECK_FAILED: AuditCategory.PASSWORD,
    AuditEventType.LOGIN_FAILURE_RECORDED: AuditCategory.LOCKOUT,
    AuditEventType.ACCOUNT_LOCKED: AuditCategory.LOCKOUT,
    AuditEventType.LOCKED_ATTEMPT_REJECTED: AuditCategory.LOCKOUT,
    AuditEventType.LOCKOUT_CLEARED: AuditCategory.LOCKOUT,
    AuditEventType.MFA_CHALLENGE_ISSUED: AuditCategory.MFA,
    AuditEventType.MFA_CHALLENGE_DELIVERY_FAILED: AuditCategory.MFA,
    AuditEventType.MFA_CHALLENGE_VERIFIED: AuditCategory.MFA,
    AuditEventType.MFA_CHALLENGE_VERIFICATION_FAILED: AuditCategory.MFA,
    AuditEventType.MFA_CHALLENGE_INVALIDATED: AuditCategory.MFA,
    AuditEventType.MFA_CHALLENGE_EXPIRED: AuditCategory.MFA,
    AuditEventType.MFA_REQUIREMENT_LOOKUP_FAILED: AuditCategory.MFA,
    AuditEventType.MFA_TOTP_ENABLED: AuditCategory.MFA,
    AuditEventType.STORAGE_ERROR: AuditCategory.STORAGE,
}


@dataclass
class AuditEvent:
    """Audit event data structure"""
    category: AuditCategory
    action: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    subject_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def create(
        cls,
        action: AuditEventType,
        subject_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "AuditEvent":
        """Build an event with the fixed category and severity of its type"""
        return cls(
            category=CATEGORY_MAPPING[action],
            action=action,
            severity=SEVERITY_MAPPING[action],
            timestamp=timestamp or utcnow(),
            subject_id=subject_id,
            metadata=dict(metadata or {}),
        )


class AuditLoggingService:
    """
    Persists audit events in their own transaction so a rolled-back security
    operation still leaves its audit record behind
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(self, event: AuditEvent) -> str:
        """
        Store one audit event

        Returns:
            Audit event ID

        Raises:
            StorageUnavailable: the audit store rejected the write
        """
        db = self.session_factory()
        try:
            db.add(AuditLogEntry(
                event_id=event.event_id,
                category=event.category.value,
                action=event.action.value,
                severity=event.severity.value,
                subject_id=event.subject_id,
                event_metadata=event.metadata,
                timestamp=event.timestamp,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store audit event: {str(e)}", {"action": event.action.value})
            raise StorageUnavailable("Audit store unavailable") from e
        finally:
            db.close()

        logger.info(
            f"Audit event logged: {event.action.value}",
            {"event_id": event.event_id, "severity": event.severity.value, "subject_id": event.subject_id},
        )
        return event.event_id

    def query_events(
        self,
        subject_id: Optional[str] = None,
        category: Optional[AuditCategory] = None,
        action: Optional[AuditEventType] = None,
        severity: Optional[AuditSeverity] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Query audit events, newest first

        Args:
            subject_id: Filter by subject
            category: Filter by category
            action: Filter by event type
            severity: Filter by severity
            since: Only events at or after this time
            limit: Maximum number of events to return
        """
        stmt = select(AuditLogEntry)
        if subject_id:
            stmt = stmt.where(AuditLogEntry.subject_id == subject_id)
        if category:
            stmt = stmt.where(AuditLogEntry.category == category.value)
        if action:
            stmt = stmt.where(AuditLogEntry.action == action.value)
        if severity:
            stmt = stmt.where(AuditLogEntry.severity == severity.value)
        if since:
            stmt = stmt.where(AuditLogEntry.timestamp >= since)
        stmt = stmt.order_by(desc(AuditLogEntry.timestamp), desc(AuditLogEntry.id)).limit(limit)

        db = self.session_factory()
        try:
            entries = db.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to query audit events: {str(e)}")
            raise StorageUnavailable("Audit store unavailable") from e
        finally:
            db.close()

        return [
            {
                "event_id": entry.event_id,
                "category": entry.category,
                "action": entry.action,
                "severity": entry.severity,
                "subject_id": entry.subject_id,
                "metadata": entry.event_metadata or {},
                "timestamp": ensure_utc(entry.timestamp).isoformat(),
            }
            for entry in entries
        ]


def record_audit_event(
    audit_trail,
    action: AuditEventType,
    subject_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> None:
    """
    Emit an event after the state change it describes has been committed

    A failing audit store is logged and never undoes the committed transition.
    """
    event = AuditEvent.create(action, subject_id=subject_id, metadata=metadata, timestamp=timestamp)
    try:
        audit_trail.append(event)
    except Exception as e:
        logger.error(
            f"Failed to log audit event: {str(e)}",
            {"action": action.value, "subject_id": subject_id},
        )
