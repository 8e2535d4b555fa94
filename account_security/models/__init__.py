from .base import Base
from .user import User
from .password_history import PasswordHistory
from .lockout import LockoutRecord
from .mfa import UserMFASecret, MFAChallenge
from .session import SuperuserSession
from .audit import AuditLogEntry

__all__ = [
    "Base",
    "User",
    "PasswordHistory",
    "LockoutRecord",
    "UserMFASecret",
    "MFAChallenge",
    "SuperuserSession",
    "AuditLogEntry",
]
