from .exceptions import (
    AccountSecurityError,
    InvalidInput,
    PasswordTooLong,
    PasswordTooShort,
    WeakPassword,
    PasswordReused,
    InvalidCredentials,
    AccountLocked,
    InvalidOrExpiredChallenge,
    ChallengeDeliveryFailed,
    HistoryCheckUnavailable,
    StorageUnavailable,
)
from .security import PasswordHasher, verify_password, get_password_hash
from .password_policy import PasswordStrengthValidator, PasswordValidationResult, validate_password

__all__ = [
    "AccountSecurityError",
    "InvalidInput",
    "PasswordTooLong",
    "PasswordTooShort",
    "WeakPassword",
    "PasswordReused",
    "InvalidCredentials",
    "AccountLocked",
    "InvalidOrExpiredChallenge",
    "ChallengeDeliveryFailed",
    "HistoryCheckUnavailable",
    "StorageUnavailable",
    "PasswordHasher",
    "PasswordStrengthValidator",
    "PasswordValidationResult",
    "validate_password",
    "verify_password",
    "get_password_hash",
]
