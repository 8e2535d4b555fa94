from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


def _normalize_email(v: str) -> str:
    v = v.strip().lower()
    if "@" not in v or v.startswith("@") or v.endswith("@"):
        raise ValueError("Invalid email address")
    return v


class UserCreate(BaseModel):
    email: str = Field(..., max_length=320)
    password: str
    phone: Optional[str] = Field(None, max_length=32)
    require_mfa: bool = False

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _normalize_email(v)

    class Config:
        json_schema_extra = {
            "example": {
                "email": "manager@example.com",
                "password": "Tr7#mK9$qLp2",
                "phone": "+213555000000",
                "require_mfa": True
            }
        }


class UserLogin(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _normalize_email(v)


class UserResponse(BaseModel):
    id: str
    email: str
    phone: Optional[str] = None
    is_active: bool
    is_superuser: bool
    require_mfa: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    """Result of a successful password check."""
    user_id: str
    mfa_required: bool
    password_rehashed: bool = False
    session_id: Optional[str] = Field(None, description="Superuser session to present as X-Superuser-Session")


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordChangeResponse(BaseModel):
    message: str
    score: int = Field(..., ge=0, le=10, description="Strength score of the new password")


class PasswordStrengthRequest(BaseModel):
    password: str


class PasswordStrengthResponse(BaseModel):
    valid: bool
    errors: List[str]
    score: int = Field(..., ge=0, le=10)

    class Config:
        json_schema_extra = {
            "example": {
                "valid": False,
                "errors": ["Password contains a common weak pattern"],
                "score": 6
            }
        }


class LockoutStatusResponse(BaseModel):
    identifier: str
    locked: bool
    locked_until: Optional[datetime] = None
    failed_attempts: int = 0
