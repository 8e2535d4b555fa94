import base64
import hashlib
import hmac
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from ..config.security_config import (
    ENCRYPTION_KEY as CONFIGURED_ENCRYPTION_KEY,
    PASSWORD_ABSOLUTE_MAX_LENGTH,
    PASSWORD_HASH_ROUNDS,
    SECRET_KEY,
)
from .exceptions import InvalidInput, PasswordTooLong

# Encryption key for sensitive data (in production, this should be stored securely)
ENCRYPTION_KEY = CONFIGURED_ENCRYPTION_KEY
if not ENCRYPTION_KEY:
    # Generate a key if not provided (for development only)
    ENCRYPTION_KEY = base64.urlsafe_b64encode(os.urandom(32)).decode()

# Encryption context for sensitive data
fernet = Fernet(ENCRYPTION_KEY.encode() if len(ENCRYPTION_KEY) == 44 else base64.urlsafe_b64encode(ENCRYPTION_KEY.encode()[:32].ljust(32, b"\0")))


class PasswordHasher:
    """Adaptive, salted one-way password hashing.

    ``bcrypt_sha256`` pre-hashes with SHA-256 so the whole password counts,
    not only bcrypt's first 72 bytes. Plain ``bcrypt`` hashes still verify and
    are reported by ``needs_update`` so they can be upgraded on next login.
    """

    def __init__(self, rounds: int = PASSWORD_HASH_ROUNDS, max_length: int = PASSWORD_ABSOLUTE_MAX_LENGTH):
        self.max_length = max_length
        self.context = CryptContext(
            schemes=["bcrypt_sha256", "bcrypt"],
            deprecated=["bcrypt"],
            bcrypt_sha256__rounds=rounds,
            bcrypt__rounds=rounds,
        )
        self._dummy_hash: Optional[str] = None

    def _check_input(self, password) -> None:
        if not isinstance(password, str) or password == "":
            raise InvalidInput("Password must be a non-empty string")
        # Length in code points, checked before any hashing work
        if len(password) > self.max_length:
            raise PasswordTooLong(f"Password exceeds {self.max_length} characters")

    def hash(self, password: str) -> str:
        """Hash a password with the configured work factor."""
        self._check_input(password)
        return self.context.hash(password)

    def verify(self, password: str, hashed_password: str) -> bool:
        """Verify a plain password against its hash."""
        self._check_input(password)
        if not isinstance(hashed_password, str) or not hashed_password:
            raise InvalidInput("Stored hash is missing")
        try:
            return self.context.verify(password, hashed_password)
        except ValueError as exc:
            raise InvalidInput("Stored hash is not recognised") from exc

    def needs_update(self, hashed_password: str) -> bool:
        """Whether the hash uses a deprecated scheme or outdated cost."""
        return self.context.needs_update(hashed_password)

    def verify_dummy(self, password: str) -> bool:
        """Spend one verification on a throwaway hash (unknown subjects).

        Keeps the response time of "no such account" in line with "wrong
        password". Always returns False.
        """
        self._check_input(password)
        if self._dummy_hash is None:
            self._dummy_hash = self.context.hash(base64.b64encode(os.urandom(24)).decode())
        self.context.verify(password, self._dummy_hash)
        return False


# Default hasher shared by the module-level helpers
_default_hasher = PasswordHasher()


def get_password_hasher() -> PasswordHasher:
    """Default password hasher (stateless apart from the cached dummy hash)."""
    return _default_hasher


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against its hash."""
    return _default_hasher.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generate password hash."""
    return _default_hasher.hash(password)


def hash_challenge_code(code: str) -> str:
    """Keyed digest of a one-time code; codes compare case-insensitively."""
    normalized = code.strip().lower()
    return hmac.new(SECRET_KEY.encode(), normalized.encode(), hashlib.sha256).hexdigest()


def challenge_code_matches(code: str, code_hash: str) -> bool:
    """Constant-time comparison of a submitted code against the stored digest."""
    return hmac.compare_digest(hash_challenge_code(code), code_hash)


def encrypt_sensitive_data(data: str) -> str:
    """Encrypt sensitive data using Fernet encryption."""
    if not data:
        return data
    return fernet.encrypt(data.encode()).decode()


def decrypt_sensitive_data(encrypted_data: str) -> str:
    """Decrypt sensitive data using Fernet encryption."""
    if not encrypted_data:
        return encrypted_data
    try:
        return fernet.decrypt(encrypted_data.encode()).decode()
    except InvalidToken:
        # Return empty string if decryption fails
        return ""
