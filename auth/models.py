"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores and the orchestrator do the
work. The few derived values (full name, lock state, age) are plain functions
over a User so nothing computed is ever persisted.

PublicUser is the only shape that leaves the orchestrator. It is built from a
whitelist of fields, so secrets can never ride along by accident.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Role(str, Enum):
    customer = "customer"
    admin = "admin"


@dataclass
class AuditEntry:
    """One security-relevant action on an identity (append-only, bounded)."""

    action: str  # "Registered", "LoggedIn", "PasswordChanged", ...
    timestamp: datetime
    origin: str = "unknown"
    user_agent: str | None = None


@dataclass
class User:
    """The authoritative identity record.

    email is always stored lower-cased and stripped. password_hash and the
    *_token_hash fields never leave the orchestrator -- use PublicUser.

    refresh_tokens is most-recent-first. It and audit_trail are only populated
    when the store is asked to load them (get_by_id(..., with_sessions=True)).
    """

    email: str
    first_name: str
    last_name: str
    password_hash: str
    role: Role = Role.customer
    id: int | None = None
    profile_image: str | None = None
    phone_number: str | None = None
    date_of_birth: date | None = None

    is_active: bool = True
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    is_email_verified: bool = False
    email_verification_token_hash: str | None = None
    email_verification_expires_at: datetime | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires_at: datetime | None = None

    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_origin: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None

    refresh_tokens: list[str] = field(default_factory=list)
    audit_trail: list[AuditEntry] = field(default_factory=list)


@dataclass(frozen=True)
class PublicUser:
    """Sanitized user projection returned to callers."""

    id: int
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: Role
    is_active: bool
    is_email_verified: bool
    profile_image: str | None = None
    phone_number: str | None = None
    date_of_birth: date | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "PublicUser":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=full_name(user),
            role=Role(user.role),
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            profile_image=user.profile_image,
            phone_number=user.phone_number,
            date_of_birth=user.date_of_birth,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # seconds until the access token expires


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register/login: the caller's identity plus a fresh token pair."""

    user: PublicUser
    tokens: TokenPair


@dataclass(frozen=True)
class RequestContext:
    """Per-call origin details passed explicitly into every orchestrator operation.

    Replaces ambient logger state: nothing here is shared between requests.
    """

    origin: str = "unknown"
    user_agent: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class UserPage:
    users: list[PublicUser]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


def full_name(user: User) -> str:
    return f"{user.first_name} {user.last_name}".strip()


def is_locked(user: User, now: datetime) -> bool:
    """True while a lockout is in force. An elapsed lock counts as unlocked."""
    return user.locked_until is not None and user.locked_until > now


def age(user: User, today: date) -> int | None:
    if user.date_of_birth is None:
        return None
    born = user.date_of_birth
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return years


@dataclass(frozen=True)
class RegistrationInput:
    """Everything a caller supplies to create an account. Role is never caller-chosen."""

    email: str
    password: str
    confirm_password: str
    first_name: str
    last_name: str
    phone_number: str | None = None
    date_of_birth: date | None = None
