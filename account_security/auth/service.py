from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import Clock, utcnow
from ..core.logging import get_logger
from ..models.user import User
from ..services.audit_logging_service import AuditEventType, record_audit_event
from .exceptions import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    PasswordReused,
    PasswordTooLong,
    PasswordTooShort,
    StorageUnavailable,
    WeakPassword,
)
from .lockout import AccountLockoutTracker
from .password_history import PasswordHistoryStore
from .password_policy import MIN_LENGTH_ERROR, PasswordStrengthValidator, PasswordValidationResult
from .security import PasswordHasher, get_password_hasher

logger = get_logger(__name__)


def lockout_identifier(email: str) -> str:
    """Lockout key for a login identifier; unknown emails are tracked too."""
    return f"email:{email.strip().lower()}"


@dataclass
class AuthenticationResult:
    user: User
    mfa_required: bool
    password_rehashed: bool = False


class AuthService:
    """Registration, login and password change over the security components."""

    def __init__(
        self,
        db: Session,
        lockout: AccountLockoutTracker,
        history: PasswordHistoryStore,
        validator: Optional[PasswordStrengthValidator] = None,
        hasher: Optional[PasswordHasher] = None,
        audit_trail=None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.lockout = lockout
        self.history = history
        self.validator = validator or PasswordStrengthValidator()
        self.hasher = hasher or get_password_hasher()
        self.audit_trail = audit_trail
        self.clock = clock

    def _audit(self, action: AuditEventType, subject_id: Optional[str], metadata: Optional[dict] = None) -> None:
        if self.audit_trail is not None:
            record_audit_event(self.audit_trail, action, subject_id=subject_id, metadata=metadata, timestamp=self.clock())

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.db.execute(
            select(User).where(User.id == user_id)
        ).scalar_one_or_none()

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self.db.execute(
            select(User).where(User.email == email.strip().lower())
        ).scalar_one_or_none()

    def check_password_strength(self, password: str) -> PasswordValidationResult:
        return self.validator.validate(password)

    def _enforce_policy(self, password: str) -> PasswordValidationResult:
        """Validate a new password and raise the matching error kind on violation."""
        if not isinstance(password, str) or not password:
            raise InvalidInput("Password must be a non-empty string")
        result = self.validator.validate(password)
        if result.valid:
            return result
        if result.has_length_error:
            too_short = MIN_LENGTH_ERROR.format(self.validator.policy.min_length) in result.errors
            error_cls = PasswordTooShort if too_short else PasswordTooLong
            raise error_cls("; ".join(result.errors))
        raise WeakPassword(result.errors)

    def register_subject(
        self,
        email: str,
        password: str,
        phone: Optional[str] = None,
        require_mfa: bool = False,
        is_superuser: bool = False,
    ) -> User:
        """Create a subject with a policy-compliant password and seed its history."""
        email = email.strip().lower()
        if self.get_user_by_email(email) is not None:
            raise InvalidInput("Email already registered")

        self._enforce_policy(password)
        hashed_password = self.hasher.hash(password)

        now = self.clock()
        user = User(
            email=email,
            phone=phone,
            hashed_password=hashed_password,
            password_updated_at=now,
            require_mfa=require_mfa,
            is_superuser=is_superuser,
        )
        try:
            self.db.add(user)
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create subject: {str(e)}")
            raise StorageUnavailable("User store unavailable") from e

        # Commits the new user together with its first history entry
        self.history.append(user.id, hashed_password)
        self.db.refresh(user)

        self._audit(AuditEventType.PASSWORD_SET, user.id, {"reason": "registration"})
        logger.info("Subject registered", {"user_id": user.id})
        return user

    def _record_failure(self, identifier: str) -> None:
        result = self.lockout.record_failure(identifier)
        if result.locked:
            raise AccountLocked(result.locked_until, now=self.clock())
        raise InvalidCredentials()

    def authenticate(self, email: str, password: str) -> AuthenticationResult:
        """
        Check a password login

        Locked identifiers are rejected before any password work. Unknown
        emails cost one dummy verification and count toward the lockout
        exactly like wrong passwords.

        Raises:
            AccountLocked: the identifier is (or just became) locked
            InvalidCredentials: unknown email, inactive subject or wrong password
        """
        identifier = lockout_identifier(email)
        self.lockout.ensure_not_locked(identifier)

        user = self.get_user_by_email(email)
        if user is None:
            self.hasher.verify_dummy(password)
            self._record_failure(identifier)
        if not self.hasher.verify(password, user.hashed_password) or not user.is_active:
            self._record_failure(identifier)

        self.lockout.clear(identifier)

        rehashed = False
        if self.hasher.needs_update(user.hashed_password):
            user.hashed_password = self.hasher.hash(password)
            self.db.commit()
            rehashed = True
            logger.info("Password hash upgraded", {"user_id": user.id})

        return AuthenticationResult(
            user=user,
            mfa_required=bool(user.require_mfa or user.has_totp_enabled),
            password_rehashed=rehashed,
        )

    def change_password(self, user_id: str, current_password: str, new_password: str) -> PasswordValidationResult:
        """
        Replace a subject's password

        Order: lockout, current password, strength policy, history reuse
        (fail closed), then hash and store together with the history entry.
        """
        user = self.get_user_by_id(user_id)
        if user is None:
            raise InvalidCredentials()
        identifier = lockout_identifier(user.email)
        self.lockout.ensure_not_locked(identifier)

        try:
            current_ok = self.hasher.verify(current_password, user.hashed_password)
        except InvalidInput as e:
            self._audit(AuditEventType.PASSWORD_CHANGE_REJECTED, user.id, {"reason": e.code})
            raise
        if not current_ok:
            self._audit(AuditEventType.PASSWORD_CHANGE_REJECTED, user.id, {"reason": "wrong_current_password"})
            self._record_failure(identifier)
        self.lockout.clear(identifier)

        try:
            result = self._enforce_policy(new_password)
        except (InvalidInput, WeakPassword) as e:
            self._audit(AuditEventType.PASSWORD_CHANGE_REJECTED, user.id, {"reason": e.code})
            raise

        # Raises HistoryCheckUnavailable, already audited by the history store
        reused = self.history.is_reused(user.id, new_password, fail_closed=True)
        if reused:
            self._audit(AuditEventType.PASSWORD_CHANGE_REJECTED, user.id, {"reason": PasswordReused.code})
            raise PasswordReused()

        new_hash = self.hasher.hash(new_password)
        user.hashed_password = new_hash
        user.password_updated_at = self.clock()
        self.history.append(user.id, new_hash)

        self._audit(AuditEventType.PASSWORD_CHANGED, user.id, {"score": result.score})
        logger.info("Password changed", {"user_id": user.id})
        return result
