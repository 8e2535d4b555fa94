"""MFA (Multi-Factor Authentication) Pydantic schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


class ChallengeIssueRequest(BaseModel):
    """Request a new challenge for the current subject."""
    challenge_type: str = Field(..., description="EMAIL, SMS or TOTP")
    action_context: Optional[str] = Field(None, max_length=100, description="Action the challenge authorises")

    @field_validator('challenge_type')
    @classmethod
    def validate_challenge_type(cls, v):
        """Validate challenge type."""
        v = v.strip().upper()
        if v not in ("EMAIL", "SMS", "TOTP"):
            raise ValueError('Challenge type must be EMAIL, SMS or TOTP')
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "challenge_type": "EMAIL",
                "action_context": "delete_user"
            }
        }


class ChallengeResponse(BaseModel):
    """Issued challenge; the code itself is never returned."""
    id: str
    challenge_type: str
    action_context: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class ChallengeVerifyRequest(BaseModel):
    """Request to verify a challenge code."""
    code: str = Field(..., min_length=6, max_length=6, description="6-digit code")

    @field_validator('code')
    @classmethod
    def validate_code(cls, v):
        """Validate code format."""
        if not v.isdigit():
            raise ValueError('Code must contain only digits')
        return v


class ChallengeVerifyResponse(BaseModel):
    challenge_id: str
    success: bool
    verified: bool


class ChallengeInvalidateResponse(BaseModel):
    challenge_id: str
    invalidated: bool


class MFARequiredRequest(BaseModel):
    action: str = Field(..., max_length=100)


class MFARequiredResponse(BaseModel):
    action: str
    mfa_required: bool


class TOTPSetupResponse(BaseModel):
    """Response after TOTP setup initiation."""
    secret_key: str = Field(..., description="Base32 encoded secret key for TOTP")
    provisioning_uri: str = Field(..., description="otpauth:// URI for authenticator apps")
    qr_code_url: str = Field(..., description="URL for QR code generation")

    class Config:
        json_schema_extra = {
            "example": {
                "secret_key": "JBSWY3DPEHPK3PXP",
                "provisioning_uri": "otpauth://totp/Loft%20Algerie:manager%40example.com?secret=JBSWY3DPEHPK3PXP&issuer=Loft%20Algerie",
                "qr_code_url": "/auth/mfa/totp/qr-code"
            }
        }


class TOTPEnableRequest(BaseModel):
    """Request to enable TOTP after verification."""
    token: str = Field(..., min_length=6, max_length=6, description="6-digit TOTP token for confirmation")

    @field_validator('token')
    @classmethod
    def validate_token(cls, v):
        """Validate token format."""
        if not v.isdigit():
            raise ValueError('Token must contain only digits')
        return v
