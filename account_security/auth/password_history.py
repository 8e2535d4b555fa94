"""Bounded per-subject password history enforcing non-reuse."""
from typing import List, Optional

from sqlalchemy import select, delete, desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.security_config import HistoryPolicy
from ..core.clock import Clock, utcnow
from ..core.logging import get_logger
from ..models.password_history import PasswordHistory
from ..models.user import User
from ..services.audit_logging_service import AuditEventType, record_audit_event
from .exceptions import HistoryCheckUnavailable, StorageUnavailable
from .security import PasswordHasher, get_password_hasher

logger = get_logger(__name__)


class PasswordHistoryStore:
    """Keeps the K most recent password hashes of each subject.

    Works on the caller's session, so ``append`` commits together with any
    credential update the caller made on the same session.
    """

    def __init__(
        self,
        db: Session,
        hasher: Optional[PasswordHasher] = None,
        policy: Optional[HistoryPolicy] = None,
        audit_trail=None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.hasher = hasher or get_password_hasher()
        self.policy = policy or HistoryPolicy()
        self.audit_trail = audit_trail
        self.clock = clock

    def _ordered(self, subject_id: str):
        return (
            select(PasswordHistory)
            .where(PasswordHistory.user_id == subject_id)
            .order_by(desc(PasswordHistory.created_at), desc(PasswordHistory.id))
        )

    def append(self, subject_id: str, password_hash: str) -> None:
        """Insert a hash and trim the subject's history to K in one transaction."""
        try:
            # Serialise appends per subject on the owning user row
            self.db.execute(select(User.id).where(User.id == subject_id).with_for_update())

            self.db.add(PasswordHistory(
                user_id=subject_id,
                password_hash=password_hash,
                created_at=self.clock(),
            ))
            self.db.flush()

            stale_ids = self.db.execute(
                select(PasswordHistory.id)
                .where(PasswordHistory.user_id == subject_id)
                .order_by(desc(PasswordHistory.created_at), desc(PasswordHistory.id))
                .offset(self.policy.depth)
            ).scalars().all()
            if stale_ids:
                self.db.execute(delete(PasswordHistory).where(PasswordHistory.id.in_(stale_ids)))

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self._storage_error("append", subject_id, e)
            raise StorageUnavailable("Password history unavailable") from e

        logger.info("Password history appended", {"subject_id": subject_id, "pruned": len(stale_ids)})

    def is_reused(self, subject_id: str, candidate_password: str, fail_closed: bool = True) -> bool:
        """
        Check a candidate against the stored hashes, newest first.

        With ``fail_closed`` a storage error raises HistoryCheckUnavailable;
        otherwise it is audited and the candidate is treated as not reused.
        """
        try:
            hashes = self.db.execute(
                select(PasswordHistory.password_hash)
                .where(PasswordHistory.user_id == subject_id)
                .order_by(desc(PasswordHistory.created_at), desc(PasswordHistory.id))
                .limit(self.policy.depth)
            ).scalars().all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Password history lookup failed: {str(e)}", {"subject_id": subject_id})
            if self.audit_trail is not None:
                record_audit_event(
                    self.audit_trail,
                    AuditEventType.PASSWORD_HISTORY_CHECK_FAILED,
                    subject_id=subject_id,
                    metadata={"fail_closed": fail_closed, "error": type(e).__name__},
                    timestamp=self.clock(),
                )
            if fail_closed:
                raise HistoryCheckUnavailable("Password history could not be checked") from e
            return False

        for stored_hash in hashes:
            if self.hasher.verify(candidate_password, stored_hash):
                return True
        return False

    def entries(self, subject_id: str) -> List[PasswordHistory]:
        """History entries of a subject, newest first."""
        return list(self.db.execute(self._ordered(subject_id)).scalars().all())

    def count(self, subject_id: str) -> int:
        return self.db.execute(
            select(func.count(PasswordHistory.id)).where(PasswordHistory.user_id == subject_id)
        ).scalar_one()

    def _storage_error(self, operation: str, subject_id: str, error: Exception) -> None:
        logger.error(f"Password history {operation} failed: {str(error)}", {"subject_id": subject_id})
        if self.audit_trail is not None:
            record_audit_event(
                self.audit_trail,
                AuditEventType.STORAGE_ERROR,
                subject_id=subject_id,
                metadata={"component": "password_history", "operation": operation, "error": type(error).__name__},
                timestamp=self.clock(),
            )
