"""
auth/passwords.py -- Password hashing, strength rules and secure random tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The cost factor is injected
       (12 in production) so verification stays expensive for an offline
       attacker. bcrypt only reads the first 72 bytes and bcrypt 5.x raises on
       longer input, so both hash() and verify() truncate to 72 bytes first.

  verify() never raises. A malformed stored hash is a soft failure: it is
       logged and treated as a mismatch.

  Reset / verification tokens: secrets.token_hex(32) gives 256 bits of
       entropy. Only their SHA-256 digest is persisted, so a leaked users
       table cannot be replayed against /reset-password. bcrypt's slowness is
       unnecessary for values with that much entropy.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass

import bcrypt

from auth.errors import HashingError

logger = logging.getLogger("storefront.auth")

MIN_PASSWORD_LENGTH = 6
_BCRYPT_MAX_BYTES = 72

_STRENGTH_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
]


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


@dataclass(frozen=True)
class StrengthResult:
    valid: bool
    errors: list[str]


class CredentialHasher:
    """One-way password hashing plus the random tokens used by reset flows.

    Usage:
        hasher = CredentialHasher(rounds=12)
        stored = hasher.hash("S3cretPass")
        hasher.verify("S3cretPass", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash. Raises HashingError on internal failure."""
        try:
            return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except (ValueError, TypeError) as exc:
            logger.error("Password hashing failed: %s", type(exc).__name__)
            raise HashingError() from exc

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed. Malformed hashes yield False."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            logger.warning("Password comparison failed on malformed hash: %s", exc)
            return False

    @staticmethod
    def generate_secure_token() -> str:
        """256 bits of randomness, hex-encoded (64 chars)."""
        return secrets.token_hex(32)

    @staticmethod
    def digest_token(raw_token: str) -> str:
        """SHA-256 digest used to persist reset and verification tokens."""
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @staticmethod
    def validate_strength(password: str) -> StrengthResult:
        """Check every rule and report all violations at once."""
        errors: list[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        for pattern, message in _STRENGTH_RULES:
            if not pattern.search(password):
                errors.append(message)
        return StrengthResult(valid=not errors, errors=errors)
