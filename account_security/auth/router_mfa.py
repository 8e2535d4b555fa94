"""MFA (Multi-Factor Authentication) router implementation."""
from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
import io

from .schemas_mfa import (
    ChallengeIssueRequest, ChallengeResponse, ChallengeVerifyRequest, ChallengeVerifyResponse,
    ChallengeInvalidateResponse, MFARequiredRequest, MFARequiredResponse,
    TOTPSetupResponse, TOTPEnableRequest
)
from .dependencies import get_current_session, get_current_superuser, get_mfa_engine
from .exceptions import InvalidOrExpiredChallenge
from .mfa_service import MFAChallengeEngine
from ..models.mfa import MFAChallenge
from ..models.session import SuperuserSession

router = APIRouter(prefix="/mfa", tags=["mfa"])


def _owned_challenge(engine: MFAChallengeEngine, challenge_id: str, session: SuperuserSession) -> MFAChallenge:
    """Challenges of other subjects look exactly like unknown ones."""
    challenge = engine.get_challenge(challenge_id)
    if challenge is None or challenge.user_id != session.user_id:
        raise InvalidOrExpiredChallenge("unknown")
    return challenge


@router.post("/challenges", response_model=ChallengeResponse, status_code=status.HTTP_201_CREATED)
def issue_challenge(
    request: ChallengeIssueRequest,
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """
    Issue a challenge for the current subject.

    EMAIL and SMS challenges dispatch a 6-digit code; TOTP challenges are
    answered from the subject's authenticator app. A new challenge supersedes
    any pending one for the same action context.
    """
    return engine.issue(
        session.user_id,
        request.challenge_type,
        action_context=request.action_context,
        session_id=session.id,
    )


@router.post("/challenges/{challenge_id}/verify", response_model=ChallengeVerifyResponse)
def verify_challenge(
    challenge_id: str,
    request: ChallengeVerifyRequest,
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """
    Verify a challenge code.

    A wrong code returns `success: false` and counts against the challenge.
    On success the session that issued the challenge is marked MFA-verified.
    """
    _owned_challenge(engine, challenge_id, session)
    result = engine.verify(challenge_id, request.code)
    return ChallengeVerifyResponse(
        challenge_id=result.challenge_id,
        success=result.success,
        verified=result.verified
    )


@router.post("/challenges/{challenge_id}/invalidate", response_model=ChallengeInvalidateResponse)
def invalidate_challenge(
    challenge_id: str,
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """Invalidate a pending challenge of the current subject (idempotent)."""
    _owned_challenge(engine, challenge_id, session)
    changed = engine.invalidate(challenge_id)
    return ChallengeInvalidateResponse(challenge_id=challenge_id, invalidated=changed)


@router.post("/challenges/sweep")
def sweep_expired_challenges(
    session: SuperuserSession = Depends(get_current_superuser),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """Record expiry on lapsed challenges (operator maintenance)."""
    return {"expired": engine.sweep_expired()}


@router.post("/required", response_model=MFARequiredResponse)
def is_mfa_required(
    request: MFARequiredRequest,
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """Whether the given action needs a verified second factor for the current subject."""
    return MFARequiredResponse(
        action=request.action,
        mfa_required=engine.is_required(request.action, lambda: session.user)
    )


@router.post("/totp/setup", response_model=TOTPSetupResponse)
def setup_totp(
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """
    Start TOTP enrolment for the current subject.

    The subject must confirm with `/mfa/totp/enable` before TOTP challenges
    can be issued.
    """
    secret, uri = engine.totp.setup_totp(session.user_id)
    return TOTPSetupResponse(
        secret_key=secret,
        provisioning_uri=uri,
        qr_code_url="/auth/mfa/totp/qr-code"
    )


@router.get("/totp/qr-code")
def get_qr_code(
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """
    Get QR code image for TOTP setup.

    Returns a PNG image that can be scanned by authenticator apps.
    """
    qr_code_data = engine.totp.generate_qr_code(session.user_id)

    return StreamingResponse(
        io.BytesIO(qr_code_data),
        media_type="image/png",
        headers={"Content-Disposition": "inline; filename=mfa_qr_code.png"}
    )


@router.post("/totp/enable")
def enable_totp(
    request: TOTPEnableRequest,
    session: SuperuserSession = Depends(get_current_session),
    engine: MFAChallengeEngine = Depends(get_mfa_engine)
):
    """Enable TOTP after the subject proves possession of the secret."""
    if not engine.totp.enable_totp(session.user_id, request.token):
        raise InvalidOrExpiredChallenge("totp_enable_rejected")
    return {"message": "TOTP enabled"}
