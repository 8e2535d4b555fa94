from fastapi import Depends, HTTPException, status, Header
from sqlalchemy.orm import Session
from typing import Optional

from ..config.redis_config import get_redis_client
from ..config.security_config import (
    LOCKOUT_BACKEND,
    ChallengePolicy,
    HistoryPolicy,
    LockoutPolicy,
    PasswordPolicy,
)
from ..core.clock import Clock, utcnow
from ..database import get_db, get_session_factory
from ..models.session import SuperuserSession
from ..services.audit_logging_service import AuditLoggingService
from ..services.delivery_service import get_delivery_channel
from ..services.session_service import SuperuserSessionService
from .lockout import AccountLockoutTracker, RedisLockoutStore, SQLLockoutStore
from .mfa_service import MFAChallengeEngine
from .password_history import PasswordHistoryStore
from .password_policy import PasswordStrengthValidator
from .security import get_password_hasher
from .service import AuthService

# Policies are read once from the environment
password_policy = PasswordPolicy.from_env()
lockout_policy = LockoutPolicy.from_env()
history_policy = HistoryPolicy.from_env()
challenge_policy = ChallengePolicy.from_env()


def get_clock() -> Clock:
    """Time source; tests override it to move time forward."""
    return utcnow


def get_audit_trail() -> AuditLoggingService:
    return AuditLoggingService(get_session_factory())


def get_lockout_tracker(
    db: Session = Depends(get_db),
    audit_trail: AuditLoggingService = Depends(get_audit_trail),
    clock: Clock = Depends(get_clock),
) -> AccountLockoutTracker:
    """Lockout tracker on the configured backend (sql or redis)."""
    if LOCKOUT_BACKEND == "redis":
        store = RedisLockoutStore(get_redis_client())
    else:
        store = SQLLockoutStore(db)
    return AccountLockoutTracker(store, lockout_policy, audit_trail=audit_trail, clock=clock)


def get_history_store(
    db: Session = Depends(get_db),
    audit_trail: AuditLoggingService = Depends(get_audit_trail),
    clock: Clock = Depends(get_clock),
) -> PasswordHistoryStore:
    return PasswordHistoryStore(db, get_password_hasher(), history_policy, audit_trail=audit_trail, clock=clock)


def get_auth_service(
    db: Session = Depends(get_db),
    lockout: AccountLockoutTracker = Depends(get_lockout_tracker),
    history: PasswordHistoryStore = Depends(get_history_store),
    audit_trail: AuditLoggingService = Depends(get_audit_trail),
    clock: Clock = Depends(get_clock),
) -> AuthService:
    return AuthService(
        db,
        lockout,
        history,
        validator=PasswordStrengthValidator(password_policy),
        hasher=get_password_hasher(),
        audit_trail=audit_trail,
        clock=clock,
    )


def get_delivery():
    return get_delivery_channel(timeout=challenge_policy.delivery_timeout_seconds)


def get_mfa_engine(
    db: Session = Depends(get_db),
    delivery=Depends(get_delivery),
    audit_trail: AuditLoggingService = Depends(get_audit_trail),
    clock: Clock = Depends(get_clock),
) -> MFAChallengeEngine:
    return MFAChallengeEngine(
        db,
        delivery=delivery,
        session_notifier=SuperuserSessionService(db, clock=clock),
        audit_trail=audit_trail,
        policy=challenge_policy,
        clock=clock,
    )


def get_current_session(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    x_superuser_session: Optional[str] = Header(None, alias="X-Superuser-Session"),
) -> SuperuserSession:
    """Resolve the caller from its superuser session header."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate session",
    )
    if not x_superuser_session:
        raise credentials_exception

    session = SuperuserSessionService(db, clock=clock).get_active_session(x_superuser_session)
    if session is None or session.user is None or not session.user.is_active:
        raise credentials_exception
    return session


def get_current_superuser(
    session: SuperuserSession = Depends(get_current_session),
) -> SuperuserSession:
    """Operator endpoints need a superuser session that passed MFA."""
    if not session.user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Superuser privileges required")
    if not session.mfa_verified:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="MFA verification required")
    return session
