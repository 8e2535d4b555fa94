"""
Account lockout after repeated authentication failures

State machine per identifier:
    Unlocked(0) -> Unlocked(n < MAX) -> Locked(until = now + LOCKOUT_DURATION)

While locked, failures are rejected without touching the counter, so probing
cannot extend the lock. Once the lock has lapsed the next failure starts a
fresh window at 1. Every increment is one atomic operation in the backing
store; there is no read-then-write pair for concurrent attempts to race past.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis
from sqlalchemy import select, update, delete, case, literal
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.redis_config import RedisKeyBuilder
from ..config.security_config import LockoutPolicy
from ..core.clock import Clock, utcnow, ensure_utc
from ..core.logging import get_logger
from ..models.lockout import LockoutRecord
from ..services.audit_logging_service import AuditEventType, record_audit_event
from .exceptions import AccountLocked, InvalidInput, StorageUnavailable

logger = get_logger(__name__)

# Concurrent first failures may race on the insert; one retry settles it
_INSERT_RETRIES = 3


@dataclass
class LockoutState:
    """Snapshot of a lockout record right after a store operation"""
    identifier: str
    failed_attempts: int
    locked_until: Optional[datetime]
    last_attempt_at: Optional[datetime]
    incremented: bool = True

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class LockoutResult:
    """Outcome of ``record_failure``"""
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


@dataclass
class LockoutStatus:
    """Outcome of ``is_locked``"""
    locked: bool
    locked_until: Optional[datetime] = None
    failed_attempts: int = 0


class SQLLockoutStore:
    """Lockout records in the relational database, one row per identifier"""

    def __init__(self, db: Session):
        self.db = db

    def increment_failure(
        self,
        identifier: str,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> LockoutState:
        until = now + lockout_duration
        for attempt in range(_INSERT_RETRIES):
            try:
                return self._increment(identifier, now, until, max_attempts)
            except IntegrityError:
                # Another caller inserted the first row; the retry updates it
                self.db.rollback()
                if attempt == _INSERT_RETRIES - 1:
                    raise StorageUnavailable("Lockout store contention")
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Lockout increment failed: {str(e)}", {"identifier": identifier})
                raise StorageUnavailable("Lockout store unavailable") from e
        raise StorageUnavailable("Lockout store contention")

    def _increment(self, identifier: str, now: datetime, until: datetime, max_attempts: int) -> LockoutState:
        record = LockoutRecord.__table__.c

        # A lapsed lock is reset, not merely unlocked
        self.db.execute(
            update(LockoutRecord)
            .where(
                LockoutRecord.identifier == identifier,
                LockoutRecord.locked_until.is_not(None),
                LockoutRecord.locked_until <= now,
            )
            .values(failed_attempts=0, locked_until=None)
            .execution_options(synchronize_session=False)
        )

        result = self.db.execute(
            update(LockoutRecord)
            .where(
                LockoutRecord.identifier == identifier,
                LockoutRecord.locked_until.is_(None),
            )
            .values(
                failed_attempts=LockoutRecord.failed_attempts + 1,
                last_attempt_at=now,
                locked_until=case(
                    (LockoutRecord.failed_attempts + 1 >= max_attempts, literal(until, record.locked_until.type)),
                    else_=None,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        incremented = result.rowcount == 1

        if not incremented:
            exists = self.db.execute(
                select(LockoutRecord.identifier).where(LockoutRecord.identifier == identifier)
            ).first()
            if exists is None:
                self.db.add(LockoutRecord(
                    identifier=identifier,
                    failed_attempts=1,
                    last_attempt_at=now,
                    locked_until=until if max_attempts <= 1 else None,
                ))
                self.db.flush()
                incremented = True

        row = self.db.execute(
            select(LockoutRecord)
            .where(LockoutRecord.identifier == identifier)
            .execution_options(populate_existing=True)
        ).scalar_one()
        state = LockoutState(
            identifier=identifier,
            failed_attempts=row.failed_attempts,
            locked_until=ensure_utc(row.locked_until),
            last_attempt_at=ensure_utc(row.last_attempt_at),
            incremented=incremented,
        )
        self.db.commit()
        return state

    def get(self, identifier: str) -> Optional[LockoutState]:
        try:
            row = self.db.execute(
                select(LockoutRecord)
                .where(LockoutRecord.identifier == identifier)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Lockout lookup failed: {str(e)}", {"identifier": identifier})
            raise StorageUnavailable("Lockout store unavailable") from e
        if row is None:
            return None
        return LockoutState(
            identifier=identifier,
            failed_attempts=row.failed_attempts,
            locked_until=ensure_utc(row.locked_until),
            last_attempt_at=ensure_utc(row.last_attempt_at),
            incremented=False,
        )

    def clear(self, identifier: str) -> bool:
        try:
            result = self.db.execute(
                delete(LockoutRecord)
                .where(LockoutRecord.identifier == identifier)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Lockout clear failed: {str(e)}", {"identifier": identifier})
            raise StorageUnavailable("Lockout store unavailable") from e
        return result.rowcount > 0


def _to_timestamp(value: Optional[datetime]) -> str:
    return repr(value.timestamp()) if value else ""


def _from_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisLockoutStore:
    """Lockout records as Redis hashes, updated under WATCH/MULTI"""

    def __init__(self, client: redis.Redis):
        self.client = client

    def increment_failure(
        self,
        identifier: str,
        now: datetime,
        max_attempts: int,
        lockout_duration: timedelta,
    ) -> LockoutState:
        key = RedisKeyBuilder.lockout_key(identifier)

        def _apply(pipe) -> LockoutState:
            current = pipe.hgetall(key)
            failed = int(current.get("failed_attempts", 0) or 0)
            locked_until = _from_timestamp(current.get("locked_until"))
            last_attempt_at = _from_timestamp(current.get("last_attempt_at"))

            if locked_until is not None and now < locked_until:
                return LockoutState(identifier, failed, locked_until, last_attempt_at, incremented=False)
            if locked_until is not None:
                failed = 0

            failed += 1
            new_until = now + lockout_duration if failed >= max_attempts else None
            pipe.multi()
            pipe.hset(key, mapping={
                "failed_attempts": failed,
                "last_attempt_at": _to_timestamp(now),
                "locked_until": _to_timestamp(new_until),
            })
            return LockoutState(identifier, failed, new_until, now, incremented=True)

        try:
            return self.client.transaction(_apply, key, value_from_callable=True)
        except redis.RedisError as e:
            logger.error(f"Lockout increment failed: {str(e)}", {"identifier": identifier})
            raise StorageUnavailable("Lockout store unavailable") from e

    def get(self, identifier: str) -> Optional[LockoutState]:
        try:
            current = self.client.hgetall(RedisKeyBuilder.lockout_key(identifier))
        except redis.RedisError as e:
            logger.error(f"Lockout lookup failed: {str(e)}", {"identifier": identifier})
            raise StorageUnavailable("Lockout store unavailable") from e
        if not current:
            return None
        return LockoutState(
            identifier=identifier,
            failed_attempts=int(current.get("failed_attempts", 0) or 0),
            locked_until=_from_timestamp(current.get("locked_until")),
            last_attempt_at=_from_timestamp(current.get("last_attempt_at")),
            incremented=False,
        )

    def clear(self, identifier: str) -> bool:
        try:
            return self.client.delete(RedisKeyBuilder.lockout_key(identifier)) > 0
        except redis.RedisError as e:
            logger.error(f"Lockout clear failed: {str(e)}", {"identifier": identifier})
            raise StorageUnavailable("Lockout store unavailable") from e


class AccountLockoutTracker:
    """
    Failure counting and lockout windows over a pluggable store

    MAX and LOCKOUT_DURATION come from the injected ``LockoutPolicy``.
    """

    def __init__(self, store, policy: Optional[LockoutPolicy] = None, audit_trail=None, clock: Clock = utcnow):
        self.store = store
        self.policy = policy or LockoutPolicy()
        self.audit_trail = audit_trail
        self.clock = clock

    @staticmethod
    def _check_identifier(identifier: str) -> None:
        if not isinstance(identifier, str) or not identifier.strip():
            raise InvalidInput("Lockout identifier must be a non-empty string")

    def _audit(self, action: AuditEventType, identifier: str, metadata: dict, now: datetime) -> None:
        if self.audit_trail is not None:
            record_audit_event(
                self.audit_trail,
                action,
                metadata={"identifier": identifier, **metadata},
                timestamp=now,
            )

    def record_failure(self, identifier: str) -> LockoutResult:
        """
        Record one failed attempt atomically

        Returns:
            LockoutResult; while locked, the unchanged ``locked_until``
        """
        self._check_identifier(identifier)
        now = self.clock()
        try:
            state = self.store.increment_failure(
                identifier, now, self.policy.max_attempts, self.policy.lockout_duration
            )
        except StorageUnavailable as e:
            self._audit(AuditEventType.STORAGE_ERROR, identifier, {"component": "lockout", "error": str(e)}, now)
            raise

        locked = state.is_locked_at(now)
        remaining = max(0, self.policy.max_attempts - state.failed_attempts)
        metadata = {"failed_attempts": state.failed_attempts, "attempts_remaining": remaining}

        if not state.incremented:
            logger.warning("Attempt rejected while locked", {"identifier": identifier})
            self._audit(
                AuditEventType.LOCKED_ATTEMPT_REJECTED,
                identifier,
                {**metadata, "locked_until": state.locked_until.isoformat()},
                now,
            )
        elif locked:
            logger.warning(
                f"Identifier locked after {state.failed_attempts} failures",
                {"identifier": identifier, "locked_until": state.locked_until.isoformat()},
            )
            self._audit(
                AuditEventType.ACCOUNT_LOCKED,
                identifier,
                {**metadata, "locked_until": state.locked_until.isoformat()},
                now,
            )
        else:
            logger.info("Authentication failure recorded", {"identifier": identifier, **metadata})
            self._audit(AuditEventType.LOGIN_FAILURE_RECORDED, identifier, metadata, now)

        return LockoutResult(
            locked=locked,
            attempts_remaining=0 if locked else remaining,
            locked_until=state.locked_until if locked else None,
        )

    def is_locked(self, identifier: str) -> LockoutStatus:
        """Report lock state; a lapsed lock reads as unlocked"""
        self._check_identifier(identifier)
        now = self.clock()
        state = self.store.get(identifier)
        if state is None:
            return LockoutStatus(locked=False)
        if state.is_locked_at(now):
            return LockoutStatus(locked=True, locked_until=state.locked_until, failed_attempts=state.failed_attempts)
        # Lapsed locks carry a stale counter that the next failure resets
        attempts = 0 if state.locked_until is not None else state.failed_attempts
        return LockoutStatus(locked=False, failed_attempts=attempts)

    def ensure_not_locked(self, identifier: str) -> None:
        """Raise AccountLocked when the identifier is inside its lockout window"""
        status = self.is_locked(identifier)
        if status.locked:
            raise AccountLocked(status.locked_until, now=self.clock())

    def clear(self, identifier: str) -> None:
        """Remove any lockout state; clearing an absent record is a no-op"""
        self._check_identifier(identifier)
        now = self.clock()
        try:
            removed = self.store.clear(identifier)
        except StorageUnavailable as e:
            self._audit(AuditEventType.STORAGE_ERROR, identifier, {"component": "lockout", "error": str(e)}, now)
            raise
        if removed:
            logger.info("Lockout state cleared", {"identifier": identifier})
            self._audit(AuditEventType.LOCKOUT_CLEARED, identifier, {}, now)
