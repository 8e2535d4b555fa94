"""MFA (Multi-Factor Authentication) challenge engine and TOTP enrolment."""
import io
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple

import pyotp
import qrcode
from pyotp.utils import strings_equal
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.security_config import ChallengePolicy, MFA_TOTP_ISSUER
from ..core.clock import Clock, utcnow, ensure_utc
from ..core.logging import get_logger
from ..models.mfa import MFAChallenge, UserMFASecret
from ..models.user import User
from ..services.audit_logging_service import AuditEventType, record_audit_event
from .exceptions import (
    ChallengeDeliveryFailed,
    InvalidInput,
    InvalidOrExpiredChallenge,
    StorageUnavailable,
)
from .security import (
    challenge_code_matches,
    decrypt_sensitive_data,
    encrypt_sensitive_data,
    hash_challenge_code,
)

logger = get_logger(__name__)

# Actions that always require a second factor, whatever the subject's own flag says
CRITICAL_ACTIONS = frozenset({
    "delete_user",
    "assign_superuser_role",
    "system_configuration_change",
    "backup_restore",
    "security_policy_change",
})

# Invalidation reasons
REASON_OPERATOR = "operator"
REASON_SUPERSEDED = "superseded"
REASON_DELIVERY_FAILED = "delivery_failed"
REASON_TOO_MANY_ATTEMPTS = "too_many_attempts"


class ChallengeType(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    TOTP = "TOTP"


@dataclass
class VerificationResult:
    """Outcome of a verification call that did not raise"""
    challenge_id: str
    success: bool
    verified: bool
    failed_attempts: int = 0


def _generate_code() -> str:
    """Six digits, uniform over 100000-999999."""
    return str(secrets.randbelow(900000) + 100000)


class TOTPService:
    """Per-subject TOTP secrets: enrolment, QR provisioning and code checks."""

    def __init__(self, db: Session, audit_trail=None, clock: Clock = utcnow, issuer: str = MFA_TOTP_ISSUER):
        self.db = db
        self.audit_trail = audit_trail
        self.clock = clock
        self.issuer = issuer

    def _get_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise InvalidInput("Unknown subject")
        return user

    def _get_secret(self, user_id: str) -> Optional[UserMFASecret]:
        return self.db.execute(
            select(UserMFASecret).where(UserMFASecret.user_id == user_id)
        ).scalar_one_or_none()

    def setup_totp(self, user_id: str) -> Tuple[str, str]:
        """
        Create (or rotate, while not yet enabled) the subject's TOTP secret

        Returns:
            (secret, provisioning_uri)
        """
        user = self._get_user(user_id)
        existing = self._get_secret(user_id)
        if existing is not None and existing.is_enabled:
            raise InvalidInput("TOTP is already enabled")

        secret = pyotp.random_base32()
        secret_encrypted = encrypt_sensitive_data(secret)
        if existing is not None:
            existing.secret_key = secret_encrypted
            existing.updated_at = self.clock()
        else:
            self.db.add(UserMFASecret(user_id=user_id, secret_key=secret_encrypted, is_enabled=False))
        self.db.commit()

        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        logger.info("TOTP secret provisioned", {"user_id": user_id})
        return secret, uri

    def generate_qr_code(self, user_id: str) -> bytes:
        """PNG QR code of the provisioning URI."""
        user = self._get_user(user_id)
        mfa_secret = self._get_secret(user_id)
        if mfa_secret is None:
            raise InvalidInput("TOTP is not set up for this subject")

        secret = decrypt_sensitive_data(mfa_secret.secret_key)
        if not secret:
            raise StorageUnavailable("Failed to decrypt TOTP secret")

        provisioning_uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)

        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        img_buffer = io.BytesIO()
        img.save(img_buffer, format="PNG")
        img_buffer.seek(0)
        return img_buffer.read()

    def verify_code(self, user_id: str, code: str, require_enabled: bool = True, consume: bool = True) -> bool:
        """
        Check a code against the subject's secret, allowing one step of drift

        An accepted code consumes its time step: that step and every earlier
        one are refused afterwards. With ``consume=False`` the code is only
        matched, which lets an already verified challenge be confirmed again.
        """
        mfa_secret = self._get_secret(user_id)
        if mfa_secret is None or (require_enabled and not mfa_secret.is_enabled):
            return False
        secret = decrypt_sensitive_data(mfa_secret.secret_key)
        if not secret:
            logger.error("TOTP secret could not be decrypted", {"user_id": user_id})
            return False

        now = self.clock()
        totp = pyotp.TOTP(secret)
        code = code.strip()
        step = next(
            (
                totp.timecode(now) + offset
                for offset in (1, 0, -1)
                if strings_equal(code, totp.at(now, counter_offset=offset))
            ),
            None,
        )
        if step is None:
            return False
        if not consume:
            return True

        try:
            result = self.db.execute(
                update(UserMFASecret)
                .where(
                    UserMFASecret.id == mfa_secret.id,
                    or_(UserMFASecret.last_used_step.is_(None), UserMFASecret.last_used_step < step),
                )
                .values(last_used_step=step, last_used_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record TOTP use: {str(e)}", {"user_id": user_id})
            raise StorageUnavailable("TOTP store unavailable") from e

        if result.rowcount == 0:
            logger.warning("TOTP code for a consumed time step refused", {"user_id": user_id})
            return False
        return True

    def enable_totp(self, user_id: str, code: str) -> bool:
        """Enable TOTP once the subject proves possession of the secret."""
        mfa_secret = self._get_secret(user_id)
        if mfa_secret is None:
            raise InvalidInput("TOTP is not set up for this subject")
        if mfa_secret.is_enabled:
            return True
        if not self.verify_code(user_id, code, require_enabled=False):
            return False

        mfa_secret.is_enabled = True
        mfa_secret.updated_at = self.clock()
        self.db.commit()

        if self.audit_trail is not None:
            record_audit_event(
                self.audit_trail,
                AuditEventType.MFA_TOTP_ENABLED,
                subject_id=user_id,
                timestamp=self.clock(),
            )
        logger.info("TOTP enabled", {"user_id": user_id})
        return True


class MFAChallengeEngine:
    """
    Issues, delivers and verifies one-time challenges bound to an action context

    State machine: Issued -> Verified | Expired | Invalidated, all terminal.
    Expiry is checked live on every verification; the sweep only records it.
    """

    def __init__(
        self,
        db: Session,
        delivery=None,
        session_notifier=None,
        audit_trail=None,
        policy: Optional[ChallengePolicy] = None,
        clock: Clock = utcnow,
        totp: Optional[TOTPService] = None,
    ):
        self.db = db
        self.delivery = delivery
        self.session_notifier = session_notifier
        self.audit_trail = audit_trail
        self.policy = policy or ChallengePolicy()
        self.clock = clock
        self.totp = totp or TOTPService(db, audit_trail=audit_trail, clock=clock)

    # Helpers

    def _audit(self, action: AuditEventType, subject_id: Optional[str], metadata: dict) -> None:
        if self.audit_trail is not None:
            record_audit_event(self.audit_trail, action, subject_id=subject_id, metadata=metadata, timestamp=self.clock())

    def _get(self, challenge_id: str) -> Optional[MFAChallenge]:
        return self.db.execute(
            select(MFAChallenge)
            .where(MFAChallenge.id == challenge_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _storage_error(self, operation: str, subject_id: Optional[str], error: Exception) -> StorageUnavailable:
        self.db.rollback()
        logger.error(f"MFA challenge {operation} failed: {str(error)}", {"subject_id": subject_id})
        self._audit(
            AuditEventType.STORAGE_ERROR,
            subject_id,
            {"component": "mfa", "operation": operation, "error": type(error).__name__},
        )
        return StorageUnavailable("Challenge store unavailable")

    @staticmethod
    def _parse_type(challenge_type) -> ChallengeType:
        try:
            return ChallengeType(challenge_type.upper() if isinstance(challenge_type, str) else challenge_type)
        except ValueError:
            raise InvalidInput(f"Unsupported challenge type: {challenge_type}")

    def _destination(self, user: User, challenge_type: ChallengeType) -> Optional[str]:
        if challenge_type == ChallengeType.EMAIL:
            return user.email
        if challenge_type == ChallengeType.SMS:
            if not user.phone:
                raise InvalidInput("No phone number on file for SMS delivery")
            return user.phone
        if not user.has_totp_enabled:
            raise InvalidInput("TOTP is not enabled for this subject")
        return None

    def _code_matches(self, challenge: MFAChallenge, code: str) -> bool:
        if challenge.challenge_type == ChallengeType.TOTP.value:
            # Re-confirming a verified challenge must not spend another time step
            return self.totp.verify_code(challenge.user_id, code, consume=not challenge.verified)
        return challenge.code_hash is not None and challenge_code_matches(code, challenge.code_hash)

    def _notify_session(self, challenge: MFAChallenge) -> None:
        if challenge.session_id and self.session_notifier is not None:
            self.session_notifier.mark_mfa_verified(challenge.session_id)

    def _reject(self, challenge: Optional[MFAChallenge], challenge_id: str, reason: str) -> InvalidOrExpiredChallenge:
        """Audit the specific reason; the caller only ever sees the generic error."""
        self._audit(
            AuditEventType.MFA_CHALLENGE_VERIFICATION_FAILED,
            challenge.user_id if challenge is not None else None,
            {"challenge_id": challenge_id, "reason": reason},
        )
        return InvalidOrExpiredChallenge(reason)

    def _mark_invalidated(self, challenge_ids: List[str], now: datetime, reason: str) -> int:
        if not challenge_ids:
            return 0
        result = self.db.execute(
            update(MFAChallenge)
            .where(
                MFAChallenge.id.in_(challenge_ids),
                MFAChallenge.verified.is_(False),
                MFAChallenge.invalidated.is_(False),
            )
            .values(invalidated=True, invalidated_at=now, invalidation_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # Operations

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        return self._get(challenge_id)

    def issue(
        self,
        subject_id: str,
        challenge_type,
        action_context: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> MFAChallenge:
        """
        Create a challenge and dispatch its code

        Any pending challenge of the subject in the same action context is
        invalidated first, so at most one is live per context.

        Raises:
            InvalidInput: unknown subject, unsupported type or no destination
            ChallengeDeliveryFailed: the code could not be dispatched; the
                challenge has already been invalidated
        """
        kind = self._parse_type(challenge_type)
        user = self.db.get(User, subject_id)
        if user is None:
            raise InvalidInput("Unknown subject")
        destination = self._destination(user, kind)

        now = self.clock()
        code = None if kind == ChallengeType.TOTP else _generate_code()

        try:
            context_filter = (
                MFAChallenge.action_context.is_(None)
                if action_context is None
                else MFAChallenge.action_context == action_context
            )
            pending_ids = self.db.execute(
                select(MFAChallenge.id).where(
                    MFAChallenge.user_id == subject_id,
                    context_filter,
                    MFAChallenge.verified.is_(False),
                    MFAChallenge.invalidated.is_(False),
                    MFAChallenge.expires_at > now,
                )
            ).scalars().all()
            superseded = self._mark_invalidated(list(pending_ids), now, REASON_SUPERSEDED)

            challenge = MFAChallenge(
                user_id=subject_id,
                challenge_type=kind.value,
                code_hash=hash_challenge_code(code) if code else None,
                action_context=action_context,
                session_id=session_id,
                created_at=now,
                expires_at=now + self.policy.ttl,
                verified=False,
                failed_attempts=0,
                invalidated=False,
                expired=False,
            )
            self.db.add(challenge)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("issue", subject_id, e) from e

        if superseded:
            for pending_id in pending_ids:
                self._audit(
                    AuditEventType.MFA_CHALLENGE_INVALIDATED,
                    subject_id,
                    {"challenge_id": pending_id, "reason": REASON_SUPERSEDED},
                )

        if code is not None:
            self._dispatch(challenge, destination, code)

        self._audit(
            AuditEventType.MFA_CHALLENGE_ISSUED,
            subject_id,
            {
                "challenge_id": challenge.id,
                "type": kind.value,
                "action_context": action_context,
                "expires_at": ensure_utc(challenge.expires_at).isoformat(),
            },
        )
        logger.info("MFA challenge issued", {"challenge_id": challenge.id, "type": kind.value})
        return challenge

    def _dispatch(self, challenge: MFAChallenge, destination: str, code: str) -> None:
        delivered = False
        error = None
        if self.delivery is None:
            error = "no delivery channel configured"
        else:
            try:
                delivered = bool(self.delivery.send(challenge.challenge_type, destination, code, challenge.action_context))
            except Exception as e:
                error = type(e).__name__
                logger.error(f"Delivery channel raised: {str(e)}", {"challenge_id": challenge.id})

        if delivered:
            return

        # An undeliverable challenge must not stay live
        now = self.clock()
        try:
            self._mark_invalidated([challenge.id], now, REASON_DELIVERY_FAILED)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("invalidate", challenge.user_id, e) from e

        self._audit(
            AuditEventType.MFA_CHALLENGE_DELIVERY_FAILED,
            challenge.user_id,
            {"challenge_id": challenge.id, "type": challenge.challenge_type, "error": error},
        )
        raise ChallengeDeliveryFailed(f"Challenge {challenge.id} could not be delivered")

    def verify(self, challenge_id: str, code: str) -> VerificationResult:
        """
        Verify a code against a challenge

        A wrong code counts against the challenge and returns ``success=False``.
        Repeating the right code on an already verified challenge succeeds
        again without counting anything.

        Raises:
            InvalidInput: code missing or not a string
            InvalidOrExpiredChallenge: unknown, invalidated or expired challenge
        """
        if not isinstance(code, str) or not code.strip():
            raise InvalidInput("Code must be a non-empty string")

        now = self.clock()
        challenge = self._get(challenge_id)
        if challenge is None:
            raise self._reject(None, challenge_id, "unknown")
        if challenge.invalidated:
            raise self._reject(challenge, challenge_id, "invalidated")
        if now >= ensure_utc(challenge.expires_at):
            raise self._reject(challenge, challenge_id, "expired")

        matches = self._code_matches(challenge, code)

        if challenge.verified:
            if not matches:
                raise self._reject(challenge, challenge_id, "already_verified")
            self._notify_session(challenge)
            return VerificationResult(challenge_id, success=True, verified=True, failed_attempts=challenge.failed_attempts)

        if matches:
            return self._accept(challenge, now)
        return self._count_failure(challenge, now)

    def _accept(self, challenge: MFAChallenge, now: datetime) -> VerificationResult:
        try:
            result = self.db.execute(
                update(MFAChallenge)
                .where(
                    MFAChallenge.id == challenge.id,
                    MFAChallenge.verified.is_(False),
                    MFAChallenge.invalidated.is_(False),
                )
                .values(verified=True, verified_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("verify", challenge.user_id, e) from e

        current = self._get(challenge.id)
        if result.rowcount == 0:
            # Lost the race: a concurrent verification or invalidation committed first
            if current is not None and current.verified:
                self._notify_session(current)
                return VerificationResult(challenge.id, success=True, verified=True, failed_attempts=current.failed_attempts)
            raise self._reject(current, challenge.id, "invalidated")

        self._notify_session(current)
        self._audit(
            AuditEventType.MFA_CHALLENGE_VERIFIED,
            current.user_id,
            {"challenge_id": current.id, "type": current.challenge_type, "action_context": current.action_context},
        )
        logger.info("MFA challenge verified", {"challenge_id": current.id})
        return VerificationResult(current.id, success=True, verified=True, failed_attempts=current.failed_attempts)

    def _count_failure(self, challenge: MFAChallenge, now: datetime) -> VerificationResult:
        cap = self.policy.max_failed_attempts
        try:
            result = self.db.execute(
                update(MFAChallenge)
                .where(
                    MFAChallenge.id == challenge.id,
                    MFAChallenge.verified.is_(False),
                    MFAChallenge.invalidated.is_(False),
                )
                .values(failed_attempts=MFAChallenge.failed_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            capped = 0
            if result.rowcount == 1 and cap is not None:
                capped = self.db.execute(
                    update(MFAChallenge)
                    .where(
                        MFAChallenge.id == challenge.id,
                        MFAChallenge.invalidated.is_(False),
                        MFAChallenge.failed_attempts >= cap,
                    )
                    .values(invalidated=True, invalidated_at=now, invalidation_reason=REASON_TOO_MANY_ATTEMPTS)
                    .execution_options(synchronize_session=False)
                ).rowcount
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("verify", challenge.user_id, e) from e

        current = self._get(challenge.id)
        if result.rowcount == 0:
            raise self._reject(current, challenge.id, "already_verified" if current.verified else "invalidated")

        self._audit(
            AuditEventType.MFA_CHALLENGE_VERIFICATION_FAILED,
            current.user_id,
            {"challenge_id": current.id, "reason": "wrong_code", "failed_attempts": current.failed_attempts},
        )
        if capped:
            logger.warning("MFA challenge invalidated after repeated wrong codes", {"challenge_id": current.id})
            self._audit(
                AuditEventType.MFA_CHALLENGE_INVALIDATED,
                current.user_id,
                {"challenge_id": current.id, "reason": REASON_TOO_MANY_ATTEMPTS},
            )
        return VerificationResult(current.id, success=False, verified=False, failed_attempts=current.failed_attempts)

    def invalidate(self, challenge_id: str, reason: str = REASON_OPERATOR) -> bool:
        """
        Move a challenge to Invalidated

        Returns:
            False when it was already terminal (verified or invalidated)
        """
        challenge = self._get(challenge_id)
        if challenge is None:
            raise InvalidOrExpiredChallenge("unknown")
        try:
            changed = self._mark_invalidated([challenge_id], self.clock(), reason)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("invalidate", challenge.user_id, e) from e

        if changed:
            self._audit(
                AuditEventType.MFA_CHALLENGE_INVALIDATED,
                challenge.user_id,
                {"challenge_id": challenge_id, "reason": reason},
            )
        return bool(changed)

    def is_required(self, action: str, subject_policy: Any = None) -> bool:
        """
        Whether an action needs a verified second factor

        ``subject_policy`` is the subject's own setting: a bool, a mapping or
        object with ``require_mfa``, or a callable returning one of those.
        Any error while resolving it means MFA is required.
        """
        if action in CRITICAL_ACTIONS:
            return True
        try:
            return _subject_requires_mfa(subject_policy)
        except Exception as e:
            logger.warning(f"MFA policy lookup failed: {type(e).__name__}", {"action": action})
            self._audit(
                AuditEventType.MFA_REQUIREMENT_LOOKUP_FAILED,
                None,
                {"action": action, "error": type(e).__name__},
            )
            return True

    def sweep_expired(self) -> int:
        """Record expiry on lapsed, unresolved challenges; returns how many."""
        now = self.clock()
        try:
            expired_rows = self.db.execute(
                select(MFAChallenge.id, MFAChallenge.user_id).where(
                    MFAChallenge.verified.is_(False),
                    MFAChallenge.invalidated.is_(False),
                    MFAChallenge.expired.is_(False),
                    MFAChallenge.expires_at <= now,
                )
            ).all()
            if expired_rows:
                self.db.execute(
                    update(MFAChallenge)
                    .where(
                        MFAChallenge.id.in_([row.id for row in expired_rows]),
                        MFAChallenge.verified.is_(False),
                    )
                    .values(expired=True)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("sweep", None, e) from e

        for row in expired_rows:
            self._audit(AuditEventType.MFA_CHALLENGE_EXPIRED, row.user_id, {"challenge_id": row.id})
        if expired_rows:
            logger.info(f"Marked {len(expired_rows)} MFA challenges expired")
        return len(expired_rows)


def _subject_requires_mfa(subject_policy: Any) -> bool:
    if callable(subject_policy):
        subject_policy = subject_policy()
    if subject_policy is None:
        return False
    if isinstance(subject_policy, bool):
        return subject_policy
    if isinstance(subject_policy, Mapping):
        return bool(subject_policy["require_mfa"])
    return bool(getattr(subject_policy, "require_mfa"))
