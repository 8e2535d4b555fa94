"""Error taxonomy of the account security core.

Every error carries a stable ``code``, the HTTP status the API maps it to and a
``public_message`` that is safe to return to an unauthenticated caller. The
specific reason belongs in the audit trail, not in the response.
"""
import math
from datetime import datetime
from typing import List, Optional


class AccountSecurityError(Exception):
    """Base class for all account security errors."""

    code = "account_security_error"
    status_code = 400
    public_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class InvalidInput(AccountSecurityError):
    """Malformed password or code."""

    code = "invalid_input"
    status_code = 422
    public_message = "Invalid input"


class PasswordTooLong(InvalidInput):
    code = "password_too_long"
    public_message = "Password is too long"


class PasswordTooShort(InvalidInput):
    code = "password_too_short"
    public_message = "Password is too short"


class WeakPassword(AccountSecurityError):
    """Password violates the strength policy."""

    code = "weak_password"
    status_code = 422
    public_message = "Password does not meet the security policy"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or "; ".join(self.errors) or self.public_message)


class PasswordReused(AccountSecurityError):
    code = "password_reused"
    status_code = 422
    public_message = "Password was used recently and cannot be reused"


class InvalidCredentials(AccountSecurityError):
    code = "invalid_credentials"
    status_code = 401
    public_message = "Invalid credentials"


class AccountLocked(AccountSecurityError):
    """Identifier is locked out until ``locked_until``."""

    code = "account_locked"
    status_code = 429
    public_message = "Too many attempts. Try again later"

    def __init__(self, locked_until: datetime, message: Optional[str] = None, now: Optional[datetime] = None):
        self.locked_until = locked_until
        # Seconds until the lock lapses, measured on the clock that raised it
        self.retry_after = None
        if locked_until is not None and now is not None:
            self.retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
        super().__init__(message)


class InvalidOrExpiredChallenge(AccountSecurityError):
    code = "invalid_or_expired_challenge"
    status_code = 400
    public_message = "Invalid code"


class ChallengeDeliveryFailed(AccountSecurityError):
    code = "challenge_delivery_failed"
    status_code = 502
    public_message = "Verification code could not be delivered"


class HistoryCheckUnavailable(AccountSecurityError):
    code = "history_check_unavailable"
    status_code = 503
    public_message = "Password change is temporarily unavailable"


class StorageUnavailable(AccountSecurityError):
    code = "storage_unavailable"
    status_code = 503
    public_message = "Service temporarily unavailable"
