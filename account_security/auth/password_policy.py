"""Password strength validation.

Pure and deterministic: the same password and policy always produce the same
result, nothing is read from or written to storage.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..config.security_config import PasswordPolicy

# Case-insensitive substrings that make a password trivially guessable
WEAK_PATTERNS = (
    "password",
    "passw0rd",
    "qwerty",
    "azerty",
    "admin",
    "123456",
    "654321",
    "letmein",
    "welcome",
    "iloveyou",
    "abc123",
    "111111",
    "000000",
    "superuser",
)

_REPEATED_CHARACTERS = re.compile(r"(.)\1\1")

MIN_LENGTH_ERROR = "Password must be at least {} characters long"
MAX_LENGTH_ERROR = "Password must be at most {} characters long"
UPPER_ERROR = "Password must contain at least one uppercase letter"
LOWER_ERROR = "Password must contain at least one lowercase letter"
DIGIT_ERROR = "Password must contain at least one digit"
SYMBOL_ERROR = "Password must contain at least one special character"
WEAK_PATTERN_ERROR = "Password contains a common weak pattern"
REPEATED_ERROR = "Password must not repeat the same character three times in a row"


@dataclass
class PasswordValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0

    @property
    def has_length_error(self) -> bool:
        return any(err.startswith("Password must be at") for err in self.errors)


def _is_symbol(ch: str) -> bool:
    return not ch.isalnum() and not ch.isspace()


class PasswordStrengthValidator:
    """Scores a candidate password (0-10) and lists every policy violation.

    Scoring: meeting the minimum length is worth 2, each character class
    present is worth 1, and four bonuses are worth 1 each (length >= 12, two
    or more uppercase letters, digits, symbols). A weak pattern costs 2 and a
    run of three identical characters costs 1.
    """

    def __init__(self, policy: Optional[PasswordPolicy] = None):
        self.policy = policy or PasswordPolicy()

    def validate(self, password: str, policy: Optional[PasswordPolicy] = None) -> PasswordValidationResult:
        policy = policy or self.policy
        if not isinstance(password, str):
            return PasswordValidationResult(valid=False, errors=["Password must be a string"], score=0)

        errors: List[str] = []
        score = 0

        length = len(password)
        if length < policy.min_length:
            errors.append(MIN_LENGTH_ERROR.format(policy.min_length))
        elif length > policy.max_length:
            errors.append(MAX_LENGTH_ERROR.format(policy.max_length))
        else:
            score += 2

        uppers = sum(1 for ch in password if ch.isupper())
        lowers = sum(1 for ch in password if ch.islower())
        digits = sum(1 for ch in password if ch.isdigit())
        symbols = sum(1 for ch in password if _is_symbol(ch))

        for count, required, message in (
            (uppers, policy.require_upper, UPPER_ERROR),
            (lowers, policy.require_lower, LOWER_ERROR),
            (digits, policy.require_digit, DIGIT_ERROR),
            (symbols, policy.require_symbol, SYMBOL_ERROR),
        ):
            if count:
                score += 1
            elif required:
                errors.append(message)

        if length >= 12:
            score += 1
        if uppers >= 2:
            score += 1
        if digits >= 2:
            score += 1
        if symbols >= 2:
            score += 1

        lowered = password.lower()
        if any(pattern in lowered for pattern in WEAK_PATTERNS):
            errors.append(WEAK_PATTERN_ERROR)
            score = max(0, score - 2)

        if _REPEATED_CHARACTERS.search(password):
            errors.append(REPEATED_ERROR)
            score = max(0, score - 1)

        score = min(10, max(0, score))
        return PasswordValidationResult(valid=not errors, errors=errors, score=score)


def validate_password(password: str, policy: Optional[PasswordPolicy] = None) -> PasswordValidationResult:
    """Validate with the given (or default) policy."""
    return PasswordStrengthValidator(policy).validate(password)
