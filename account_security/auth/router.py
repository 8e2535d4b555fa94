from fastapi import APIRouter, Depends, Request, Response, status
from typing import List, Optional
from datetime import datetime

from .schemas import (
    UserCreate, UserLogin, UserResponse, LoginResponse, PasswordChangeRequest,
    PasswordChangeResponse, PasswordStrengthRequest, PasswordStrengthResponse,
    LockoutStatusResponse
)
from .service import AuthService
from .lockout import AccountLockoutTracker
from .dependencies import (
    get_auth_service, get_audit_trail, get_clock, get_current_session,
    get_current_superuser, get_lockout_tracker
)
from .router_mfa import router as mfa_router
from ..models.session import SuperuserSession
from ..services.audit_logging_service import AuditLoggingService, AuditCategory
from ..services.session_service import SuperuserSessionService

router = APIRouter(prefix="/auth", tags=["authentication"])

# Include MFA routes
router.include_router(mfa_router)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register_user(
    user_data: UserCreate,
    auth_service: AuthService = Depends(get_auth_service)
):
    """Register a new subject."""
    return auth_service.register_subject(
        user_data.email,
        user_data.password,
        phone=user_data.phone,
        require_mfa=user_data.require_mfa
    )


@router.post("/login", response_model=LoginResponse)
def login_user(
    login_data: UserLogin,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
    clock=Depends(get_clock)
):
    """
    Check a password login.

    Locked identifiers get 429 with a Retry-After header; any other failure
    is a generic 401. Superusers get a session that still has to pass MFA
    before operator endpoints accept it.
    """
    result = auth_service.authenticate(login_data.email, login_data.password)

    session_id: Optional[str] = None
    if result.user.is_superuser:
        ip_address = request.client.host if request.client else None
        session = SuperuserSessionService(auth_service.db, clock=clock).create_session(
            result.user.id, ip_address=ip_address
        )
        session_id = session.id

    return LoginResponse(
        user_id=result.user.id,
        mfa_required=result.mfa_required or result.user.is_superuser,
        password_rehashed=result.password_rehashed,
        session_id=session_id
    )


@router.post("/password/strength", response_model=PasswordStrengthResponse)
def check_password_strength(
    request: PasswordStrengthRequest,
    auth_service: AuthService = Depends(get_auth_service)
):
    """Score a candidate password without storing anything."""
    result = auth_service.check_password_strength(request.password)
    return PasswordStrengthResponse(valid=result.valid, errors=result.errors, score=result.score)


@router.post("/password/change", response_model=PasswordChangeResponse)
def change_password(
    request: PasswordChangeRequest,
    session: SuperuserSession = Depends(get_current_session),
    auth_service: AuthService = Depends(get_auth_service)
):
    """Change the current subject's password."""
    result = auth_service.change_password(session.user_id, request.current_password, request.new_password)
    return PasswordChangeResponse(message="Password changed", score=result.score)


@router.get("/lockout/{identifier}", response_model=LockoutStatusResponse)
def get_lockout_status(
    identifier: str,
    session: SuperuserSession = Depends(get_current_superuser),
    tracker: AccountLockoutTracker = Depends(get_lockout_tracker)
):
    """Lockout state of an identifier (operator tool)."""
    lockout_status = tracker.is_locked(identifier)
    return LockoutStatusResponse(
        identifier=identifier,
        locked=lockout_status.locked,
        locked_until=lockout_status.locked_until,
        failed_attempts=lockout_status.failed_attempts
    )


@router.post("/lockout/{identifier}/clear", status_code=status.HTTP_204_NO_CONTENT)
def clear_lockout(
    identifier: str,
    session: SuperuserSession = Depends(get_current_superuser),
    tracker: AccountLockoutTracker = Depends(get_lockout_tracker)
):
    """Remove lockout state of an identifier (operator tool)."""
    tracker.clear(identifier)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/audit/events", response_model=List[dict])
def list_audit_events(
    subject_id: Optional[str] = None,
    category: Optional[AuditCategory] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
    session: SuperuserSession = Depends(get_current_superuser),
    audit_trail: AuditLoggingService = Depends(get_audit_trail)
):
    """Recent audit events, newest first (operator tool)."""
    return audit_trail.query_events(
        subject_id=subject_id,
        category=category,
        since=since,
        limit=min(max(limit, 1), 500)
    )
