"""Security policy configuration loaded from the environment."""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# Secrets
SECRET_KEY = os.getenv("SECRET_KEY", "change-this-secret-key-in-production")
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

# Hashing
PASSWORD_HASH_ROUNDS = _env_int("PASSWORD_HASH_ROUNDS", 12)
PASSWORD_ABSOLUTE_MAX_LENGTH = 128  # code points, enforced before hashing

# Lockout backend: "sql" or "redis"
LOCKOUT_BACKEND = os.getenv("LOCKOUT_BACKEND", "sql").lower()

# MFA delivery
MFA_DELIVERY_WEBHOOK_URL = os.getenv("MFA_DELIVERY_WEBHOOK_URL")
MFA_TOTP_ISSUER = os.getenv("MFA_TOTP_ISSUER", "Loft Algerie")

# Superuser sessions expire after this much inactivity
SUPERUSER_SESSION_TIMEOUT_MINUTES = _env_int("SUPERUSER_SESSION_TIMEOUT_MINUTES", 30)


@dataclass(frozen=True)
class PasswordPolicy:
    """Password strength policy"""
    min_length: int = 8
    max_length: int = 128
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = True

    @classmethod
    def from_env(cls) -> "PasswordPolicy":
        return cls(
            min_length=_env_int("PASSWORD_MIN_LENGTH", 8),
            max_length=_env_int("PASSWORD_MAX_LENGTH", 128),
            require_upper=_env_bool("PASSWORD_REQUIRE_UPPER", True),
            require_lower=_env_bool("PASSWORD_REQUIRE_LOWER", True),
            require_digit=_env_bool("PASSWORD_REQUIRE_DIGIT", True),
            require_symbol=_env_bool("PASSWORD_REQUIRE_SYMBOL", True),
        )


@dataclass(frozen=True)
class LockoutPolicy:
    """Brute-force lockout thresholds"""
    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)

    @classmethod
    def from_env(cls) -> "LockoutPolicy":
        return cls(
            max_attempts=_env_int("LOCKOUT_MAX_ATTEMPTS", 5),
            lockout_duration=timedelta(minutes=_env_int("LOCKOUT_DURATION_MINUTES", 30)),
        )


@dataclass(frozen=True)
class HistoryPolicy:
    """Password history depth (K)"""
    depth: int = 5

    @classmethod
    def from_env(cls) -> "HistoryPolicy":
        return cls(depth=_env_int("PASSWORD_HISTORY_DEPTH", 5))


@dataclass(frozen=True)
class ChallengePolicy:
    """MFA challenge lifetime, wrong-code cap and delivery timeout"""
    ttl: timedelta = timedelta(minutes=10)
    max_failed_attempts: Optional[int] = 5  # None disables the cap
    delivery_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ChallengePolicy":
        cap = _env_int("MFA_MAX_FAILED_ATTEMPTS", 5)
        return cls(
            ttl=timedelta(minutes=_env_int("MFA_CHALLENGE_TTL_MINUTES", 10)),
            max_failed_attempts=cap if cap > 0 else None,
            delivery_timeout_seconds=float(os.getenv("MFA_DELIVERY_TIMEOUT_SECONDS", "5")),
        )
