"""Superuser session bookkeeping touched by the security core."""

from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.exceptions import StorageUnavailable
from ..config.security_config import SUPERUSER_SESSION_TIMEOUT_MINUTES
from ..core.clock import Clock, utcnow, ensure_utc
from ..core.logging import get_logger
from ..models.session import SuperuserSession

logger = get_logger(__name__)


class SuperuserSessionService:
    """Looks up sessions and flags them once a second factor has been verified.

    Sessions expire after ``timeout`` of inactivity; every successful lookup
    pushes the expiry forward.
    """

    def __init__(self, db: Session, clock: Clock = utcnow, timeout: Optional[timedelta] = None):
        self.db = db
        self.clock = clock
        self.timeout = timeout if timeout is not None else timedelta(minutes=SUPERUSER_SESSION_TIMEOUT_MINUTES)

    def get_active_session(self, session_id: str) -> Optional[SuperuserSession]:
        """Active, unexpired session by ID; slides its expiry on success."""
        session = self.db.execute(
            select(SuperuserSession).where(
                SuperuserSession.id == session_id,
                SuperuserSession.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if session is None:
            return None
        now = self.clock()
        expires_at = ensure_utc(session.expires_at)
        if expires_at is not None and expires_at <= now:
            logger.info("Superuser session expired", {"session_id": session_id})
            return None

        try:
            session.expires_at = now + self.timeout
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to extend session: {str(e)}", {"session_id": session_id})
            raise StorageUnavailable("Session store unavailable") from e
        return session

    def create_session(self, user_id: str, ip_address: Optional[str] = None, expires_at=None) -> SuperuserSession:
        now = self.clock()
        session = SuperuserSession(
            user_id=user_id,
            ip_address=ip_address,
            created_at=now,
            expires_at=expires_at if expires_at is not None else now + self.timeout,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session

    def mark_mfa_verified(self, session_id: str) -> bool:
        """
        Flag a session as having passed MFA

        Returns:
            False when no such session exists
        """
        try:
            result = self.db.execute(
                update(SuperuserSession)
                .where(SuperuserSession.id == session_id)
                .values(mfa_verified=True, mfa_verified_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to mark session MFA-verified: {str(e)}", {"session_id": session_id})
            raise StorageUnavailable("Session store unavailable") from e

        if result.rowcount == 0:
            logger.warning("MFA verification for unknown session", {"session_id": session_id})
            return False
        return True
