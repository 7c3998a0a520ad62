"""
auth/service.py -- Auth orchestrator: the only writer of identity and session state.

Every public coroutine takes an explicit RequestContext (origin, user agent,
request id) instead of reading ambient request state, and every return path
yields PublicUser / TokenPair, never the raw User.

Concurrency:
  Store calls are blocking SQLAlchemy calls. They run in a worker thread via
  asyncio.to_thread under asyncio.wait_for(store_timeout). A timeout or any
  SQLAlchemyError becomes TransientError and is never retried here -- callers
  may retry reads, but must not blindly retry register/login.

  bcrypt is CPU-bound and equally offloaded with asyncio.to_thread.

  Per-identity atomicity lives in the store (see auth/store.py): the unique
  index decides duplicate registrations, record_failed_login is one UPDATE,
  refresh rotation is a compare-and-delete, password swaps are conditional.

Security:
  [C1] login() always runs bcrypt, against a dummy hash when the email is
       unknown, so response time does not reveal which emails exist.
  [M4] set_user_status() / soft_delete() refuse self-deactivation,
       self-deletion and removing the last active admin.
  Notifier failures are logged and swallowed: the account change they
       report on is already committed.
  forgot_password() answers the same way for known and unknown emails; the
       raw reset token only ever goes to the Notifier.
  Audit-trail writes are best effort: a failure is logged, the operation
       still succeeds.

Layer rule: no imports from api/ or core/. Configuration is injected.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AccountLocked,
    EmailInUse,
    ForbiddenAction,
    IncorrectCurrentPassword,
    InvalidCredentials,
    InvalidInput,
    InvalidRefreshToken,
    InvalidResetToken,
    PasswordMismatch,
    TokenError,
    TransientError,
    UserNotFound,
    WeakPassword,
)
from auth.models import (
    AuditEntry,
    AuthResult,
    PublicUser,
    RegistrationInput,
    RequestContext,
    Role,
    TokenPair,
    User,
    UserPage,
    is_locked,
)
from auth.passwords import CredentialHasher
from auth.store import UserStore
from auth.tokens import TokenIssuer, token_claims_for

logger = logging.getLogger("storefront.auth")

_NAME_MAX_LENGTH = 50
_PROFILE_FIELDS = frozenset({"first_name", "last_name", "profile_image", "phone_number", "date_of_birth"})
_MARKUP = re.compile(r"[<>]")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: str | None) -> str | None:
    """Strip surrounding whitespace and angle brackets from free text."""
    if value is None:
        return None
    return _MARKUP.sub("", value).strip()


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _redact_email(email: str) -> str:
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class LogNotifier:
    """Stand-in for outbound email. Records that a token was issued.

    The token itself is never logged. Swap in a real mailer by passing any
    object with the same two methods to AuthService.
    """

    def send_password_reset(self, email: str, token: str) -> None:
        logger.info("Password reset token issued for %s", _redact_email(email))

    def send_email_verification(self, email: str, token: str) -> None:
        logger.info("Email verification token issued for %s", _redact_email(email))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AuthService:
    """Composes hasher, token issuer and store into the account lifecycle.

    Usage:
        service = AuthService(store, CredentialHasher(12), issuer)
        result = await service.login("a@b.co", "S3cretPass", RequestContext(origin="10.0.0.1"))
        result.tokens.access_token
    """

    def __init__(
        self,
        store: UserStore,
        hasher: CredentialHasher,
        issuer: TokenIssuer,
        *,
        lockout_threshold: int = 5,
        lockout_seconds: int = 15 * 60,
        refresh_token_cap: int = 5,
        audit_trail_cap: int = 50,
        password_reset_ttl_seconds: int = 3600,
        email_verification_ttl_seconds: int = 24 * 3600,
        store_timeout_seconds: float = 5.0,
        notifier=None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._issuer = issuer
        self._lockout_threshold = lockout_threshold
        self._lockout_seconds = lockout_seconds
        self._refresh_token_cap = refresh_token_cap
        self._audit_trail_cap = audit_trail_cap
        self._reset_ttl = password_reset_ttl_seconds
        self._verification_ttl = email_verification_ttl_seconds
        self._store_timeout = store_timeout_seconds
        self._notifier = notifier or LogNotifier()
        self._clock = clock
        # Timing equalization dummy hash [C1]. Same cost factor as real hashes.
        self._dummy_hash = hasher.hash(hasher.generate_secure_token())

    @classmethod
    def from_settings(cls, settings, store: UserStore, notifier=None) -> "AuthService":
        """Build a service from a core.config.Settings instance."""
        issuer = TokenIssuer(
            settings.access_token_secret,
            settings.refresh_token_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_expire_seconds=settings.access_token_expire_seconds,
            refresh_expire_seconds=settings.refresh_token_expire_seconds,
        )
        return cls(
            store,
            CredentialHasher(settings.bcrypt_rounds),
            issuer,
            lockout_threshold=settings.lockout_threshold,
            lockout_seconds=settings.lockout_seconds,
            refresh_token_cap=settings.refresh_token_cap,
            audit_trail_cap=settings.audit_trail_cap,
            password_reset_ttl_seconds=settings.password_reset_ttl_seconds,
            email_verification_ttl_seconds=settings.email_verification_ttl_seconds,
            store_timeout_seconds=settings.store_timeout_seconds,
            notifier=notifier,
        )

    @property
    def issuer(self) -> TokenIssuer:
        return self._issuer

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(self, data: RegistrationInput, ctx: RequestContext) -> AuthResult:
        """Create a customer account and sign it in.

        Raises PasswordMismatch, WeakPassword, InvalidInput or EmailInUse.
        """
        email = _normalize_email(data.email)
        first_name = _clean(data.first_name)
        last_name = _clean(data.last_name)
        if not email or "@" not in email:
            raise InvalidInput("A valid email address is required.")
        self._check_name(first_name, "First name")
        self._check_name(last_name, "Last name")
        self._check_new_password(data.password, data.confirm_password)

        password_hash = await self._hash(data.password)
        verification_token = self._hasher.generate_secure_token()
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            role=Role.customer,
            phone_number=_clean(data.phone_number) or None,
            date_of_birth=data.date_of_birth,
            email_verification_token_hash=self._hasher.digest_token(verification_token),
            email_verification_expires_at=self._clock() + timedelta(seconds=self._verification_ttl),
        )
        try:
            user_id = await self._call_store(self._store.create_user, user)
        except IntegrityError as exc:
            logger.info("Registration rejected: email already in use request_id=%s", ctx.request_id)
            raise EmailInUse() from exc

        stored = await self._call_store(self._store.get_by_id, user_id)
        if stored is None:
            raise TransientError()
        tokens = await self._issue_pair(stored)
        await self._audit(user_id, "Registered", ctx)
        await self._notify(self._notifier.send_email_verification, email, verification_token)
        logger.info("User registered user_id=%s origin=%s request_id=%s", user_id, ctx.origin, ctx.request_id)
        return AuthResult(user=PublicUser.from_user(stored), tokens=tokens)

    async def login(self, email: str, password: str, ctx: RequestContext) -> AuthResult:
        """Authenticate with email and password.

        Lock state is checked before the password. A wrong password bumps the
        failure counter atomically; reaching the threshold locks the account.
        Raises InvalidCredentials (generic) or AccountLocked.
        """
        user = await self._call_store(self._store.get_by_email, _normalize_email(email))
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            await self._verify(password, self._dummy_hash)
            logger.info("Login failed: unknown email origin=%s request_id=%s", ctx.origin, ctx.request_id)
            raise InvalidCredentials()

        now = self._clock()
        if is_locked(user, now):
            logger.warning("Login refused: account locked user_id=%s origin=%s", user.id, ctx.origin)
            raise AccountLocked()

        if not await self._verify(password, user.password_hash):
            attempts, locked_until = await self._call_store(
                self._store.record_failed_login,
                user.id,
                self._lockout_threshold,
                now + timedelta(seconds=self._lockout_seconds),
            )
            await self._audit(user.id, "LoginFailed", ctx)
            if locked_until is not None and locked_until > now:
                logger.warning("Account locked user_id=%s attempts=%d origin=%s", user.id, attempts, ctx.origin)
            else:
                logger.info("Login failed user_id=%s attempts=%d origin=%s", user.id, attempts, ctx.origin)
            raise InvalidCredentials()

        if not user.is_active:
            logger.info("Login refused: inactive user_id=%s", user.id)
            raise InvalidCredentials()

        await self._call_store(
            self._store.reset_login_failures, user.id, last_login_at=now, last_login_origin=ctx.origin
        )
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        user.last_login_origin = ctx.origin
        tokens = await self._issue_pair(user)
        await self._audit(user.id, "LoggedIn", ctx)
        logger.info("Login succeeded user_id=%s origin=%s request_id=%s", user.id, ctx.origin, ctx.request_id)
        return AuthResult(user=PublicUser.from_user(user), tokens=tokens)

    async def refresh(self, refresh_token: str, ctx: RequestContext) -> TokenPair:
        """Rotate a refresh token: the presented one is consumed, a new pair is issued.

        Each refresh token is single use. The store removes it with a
        compare-and-delete, so of two concurrent calls only one gets a pair.
        """
        try:
            claims = self._issuer.verify(refresh_token, is_refresh=True)
            user_id = int(claims["sub"])
        except (TokenError, ValueError) as exc:
            logger.info("Refresh rejected: %s origin=%s", type(exc).__name__, ctx.origin)
            raise InvalidRefreshToken() from exc

        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None or not user.is_active:
            raise InvalidRefreshToken()

        if not await self._call_store(self._store.pull_refresh_token, user_id, refresh_token):
            logger.warning("Refresh token not recognised (reused or revoked) user_id=%s origin=%s", user_id, ctx.origin)
            raise InvalidRefreshToken()

        return await self._issue_pair(user)

    async def logout(self, user_id: int, refresh_token: str | None, ctx: RequestContext) -> None:
        """Revoke one refresh token, or every one the user holds when none is given."""
        if refresh_token:
            await self._call_store(self._store.pull_refresh_token, user_id, refresh_token)
        else:
            await self._call_store(self._store.purge_refresh_tokens, user_id)
        await self._audit(user_id, "LoggedOut", ctx)

    # ------------------------------------------------------------------
    # Password governance
    # ------------------------------------------------------------------

    async def change_password(
        self, user_id: int, current_password: str, new_password: str, confirm_password: str, ctx: RequestContext
    ) -> bool:
        """Replace the password after verifying the current one. Revokes all refresh tokens."""
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None:
            raise UserNotFound()
        if not await self._verify(current_password, user.password_hash):
            raise IncorrectCurrentPassword()
        self._check_new_password(new_password, confirm_password)

        new_hash = await self._hash(new_password)
        replaced = await self._call_store(
            self._store.replace_password, user_id, new_hash, expected_hash=user.password_hash
        )
        if not replaced:
            # The hash changed between verification and swap.
            logger.warning("Password change lost a race user_id=%s", user_id)
            raise IncorrectCurrentPassword()
        await self._audit(user_id, "PasswordChanged", ctx)
        logger.info("Password changed user_id=%s request_id=%s", user_id, ctx.request_id)
        return True

    async def forgot_password(self, email: str, ctx: RequestContext) -> str | None:
        """Issue a one-hour reset token and hand it to the notifier.

        Returns the raw token (for the notifier's caller), or None when no
        active account holds the email. Callers must answer identically in
        both cases.
        """
        user = await self._call_store(self._store.get_by_email, _normalize_email(email))
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown email origin=%s", ctx.origin)
            return None

        token = self._hasher.generate_secure_token()
        await self._call_store(
            self._store.update_fields,
            user.id,
            password_reset_token_hash=self._hasher.digest_token(token),
            password_reset_expires_at=self._clock() + timedelta(seconds=self._reset_ttl),
        )
        await self._notify(self._notifier.send_password_reset, user.email, token)
        return token

    async def reset_password(self, token: str, new_password: str, confirm_password: str, ctx: RequestContext) -> bool:
        """Redeem a reset token. Clears lockout and revokes every refresh token."""
        digest = self._hasher.digest_token(token or "")
        user = await self._call_store(self._store.find_by_reset_token, digest)
        now = self._clock()
        if (
            user is None
            or not user.is_active
            or user.password_reset_expires_at is None
            or user.password_reset_expires_at <= now
        ):
            raise InvalidResetToken()
        self._check_new_password(new_password, confirm_password)

        new_hash = await self._hash(new_password)
        if not await self._call_store(self._store.replace_password, user.id, new_hash, reset_token_hash=digest):
            raise InvalidResetToken()
        await self._audit(user.id, "PasswordReset", ctx)
        logger.info("Password reset completed user_id=%s origin=%s", user.id, ctx.origin)
        return True

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def request_email_verification(self, user_id: int, ctx: RequestContext) -> str:
        """Issue a fresh 24 hour verification token, replacing any earlier one."""
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None:
            raise UserNotFound()
        if user.is_email_verified:
            raise InvalidInput("Email is already verified.")

        token = self._hasher.generate_secure_token()
        await self._call_store(
            self._store.update_fields,
            user_id,
            email_verification_token_hash=self._hasher.digest_token(token),
            email_verification_expires_at=self._clock() + timedelta(seconds=self._verification_ttl),
        )
        await self._notify(self._notifier.send_email_verification, user.email, token)
        return token

    async def verify_email(self, token: str, ctx: RequestContext) -> bool:
        digest = self._hasher.digest_token(token or "")
        user = await self._call_store(self._store.find_by_verification_token, digest)
        if user is None:
            return False
        if user.email_verification_expires_at is None or user.email_verification_expires_at <= self._clock():
            return False
        if not await self._call_store(self._store.mark_email_verified, user.id, digest):
            return False
        await self._audit(user.id, "EmailVerified", ctx)
        return True

    # ------------------------------------------------------------------
    # Profile and lookups
    # ------------------------------------------------------------------

    async def get_by_id(self, user_id: int) -> PublicUser | None:
        """Active, non-deleted user or None. Used by the access guard on every request."""
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None or not user.is_active:
            return None
        return PublicUser.from_user(user)

    async def get_user(self, user_id: int) -> PublicUser:
        """Admin lookup: includes inactive accounts. Raises UserNotFound."""
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None:
            raise UserNotFound()
        return PublicUser.from_user(user)

    async def update_profile(self, user_id: int, fields: dict, ctx: RequestContext) -> PublicUser:
        """Update profile fields only. Credentials, role and lifecycle flags are refused."""
        forbidden = set(fields) - _PROFILE_FIELDS
        if forbidden:
            raise InvalidInput(f"Fields cannot be updated: {', '.join(sorted(forbidden))}")

        changes: dict = {}
        for name, value in fields.items():
            if name == "date_of_birth":
                if value is not None and not isinstance(value, date):
                    raise InvalidInput("Date of birth must be a date.")
                changes[name] = value
                continue
            value = _clean(value)
            if name in ("first_name", "last_name"):
                self._check_name(value, "First name" if name == "first_name" else "Last name")
                changes[name] = value
            else:
                changes[name] = value or None

        if changes:
            updated = await self._call_store(self._store.update_fields, user_id, updated_by=str(user_id), **changes)
            if not updated:
                raise UserNotFound()
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None:
            raise UserNotFound()
        return PublicUser.from_user(user)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def search_users(
        self, term: str | None = None, role: str | None = None, page: int = 1, limit: int = 20
    ) -> UserPage:
        if role is not None:
            try:
                role = Role(role).value
            except ValueError as exc:
                raise InvalidInput("Unknown role.") from exc
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        users, total = await self._call_store(
            self._store.search_users, _clean(term) or None, role, (page - 1) * limit, limit
        )
        return UserPage(users=[PublicUser.from_user(u) for u in users], total=total, page=page, limit=limit)

    async def set_user_status(
        self,
        user_id: int,
        *,
        actor_id: int,
        ctx: RequestContext,
        role: Role | str | None = None,
        is_active: bool | None = None,
    ) -> PublicUser:
        """Change a user's role and/or active flag. Deactivation revokes refresh tokens."""
        target = await self._call_store(self._store.get_by_id, user_id)
        if target is None:
            raise UserNotFound()
        if role is not None:
            try:
                role = Role(role)
            except ValueError as exc:
                raise InvalidInput("Unknown role.") from exc

        loses_admin = target.role == Role.admin and target.is_active and (
            is_active is False or (role is not None and role != Role.admin)
        )
        # [M4] Block self-deactivation and self-demotion
        if user_id == actor_id and (loses_admin or is_active is False):
            raise ForbiddenAction("You cannot deactivate or demote your own account.")
        # [M4] Block removing the last active admin
        if loses_admin and await self._call_store(self._store.count_active_admins) <= 1:
            raise ForbiddenAction("Cannot remove the last active admin.")

        changes: dict = {}
        if role is not None:
            changes["role"] = role
        if is_active is not None:
            changes["is_active"] = is_active
        if changes:
            await self._call_store(self._store.update_fields, user_id, updated_by=str(actor_id), **changes)
            if is_active is False:
                await self._call_store(self._store.purge_refresh_tokens, user_id)
            logger.info(
                "User status changed user_id=%s by=%s changes=%s request_id=%s",
                user_id,
                actor_id,
                sorted(changes),
                ctx.request_id,
            )
        user = await self._call_store(self._store.get_by_id, user_id)
        if user is None:
            raise UserNotFound()
        return PublicUser.from_user(user)

    async def soft_delete(self, user_id: int, deleted_by: str, ctx: RequestContext) -> bool:
        """Mark the user deleted and inactive, and revoke its refresh tokens."""
        # [M4] Block self-deletion, same as self-deactivation
        if str(user_id) == str(deleted_by):
            raise ForbiddenAction("You cannot delete your own account.")
        target = await self._call_store(self._store.get_by_id, user_id)
        if target is None:
            raise UserNotFound()
        if target.role == Role.admin and target.is_active:
            # [M4] never delete the last active admin
            if await self._call_store(self._store.count_active_admins) <= 1:
                raise ForbiddenAction("Cannot remove the last active admin.")
        if not await self._call_store(self._store.soft_delete, user_id, str(deleted_by)):
            raise UserNotFound()
        logger.info("User soft-deleted user_id=%s by=%s request_id=%s", user_id, deleted_by, ctx.request_id)
        return True

    async def bootstrap_admin(self, email: str, password: str) -> PublicUser | None:
        """Create the configured admin account if no live account holds the email."""
        email = _normalize_email(email)
        if not email or not password:
            return None
        if await self._call_store(self._store.get_by_email, email) is not None:
            return None
        strength = self._hasher.validate_strength(password)
        if not strength.valid:
            raise WeakPassword(strength.errors)

        user = User(
            email=email,
            first_name="Admin",
            last_name="User",
            password_hash=await self._hash(password),
            role=Role.admin,
            is_email_verified=True,
        )
        try:
            user_id = await self._call_store(self._store.create_user, user)
        except IntegrityError:
            # Another worker created it first.
            return None
        logger.info("Bootstrap admin created user_id=%s", user_id)
        user.id = user_id
        return PublicUser.from_user(user)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call_store(self, fn, *args, **kwargs):
        """Run a blocking store call off the event loop with a bounded wait.

        IntegrityError passes through untouched (callers translate it to a
        domain conflict). Everything else from SQLAlchemy, and timeouts,
        become TransientError.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self._store_timeout)
        except IntegrityError:
            raise
        except asyncio.TimeoutError as exc:
            logger.error("Store call %s timed out after %.1fs", fn.__name__, self._store_timeout)
            raise TransientError() from exc
        except SQLAlchemyError as exc:
            logger.error("Store call %s failed: %s", fn.__name__, exc)
            raise TransientError() from exc

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def _verify(self, password: str, hashed: str | None) -> bool:
        return await asyncio.to_thread(self._hasher.verify, password or "", hashed)

    async def _issue_pair(self, user: User) -> TokenPair:
        claims = token_claims_for(user.id, user.email, user.role)
        pair = TokenPair(
            access_token=self._issuer.issue_access(claims),
            refresh_token=self._issuer.issue_refresh(claims),
            expires_in=self._issuer.access_expires_in,
        )
        await self._call_store(self._store.push_refresh_token, user.id, pair.refresh_token, self._refresh_token_cap)
        return pair

    async def _audit(self, user_id: int, action: str, ctx: RequestContext) -> None:
        entry = AuditEntry(action=action, timestamp=self._clock(), origin=ctx.origin, user_agent=ctx.user_agent)
        try:
            await self._call_store(self._store.push_audit_entry, user_id, entry, self._audit_trail_cap)
        except (TransientError, SQLAlchemyError) as exc:
            logger.warning("Audit write failed user_id=%s action=%s: %s", user_id, action, exc)

    async def _notify(self, send, email: str, token: str) -> None:
        """Hand a token to the notifier. Delivery failures are logged, never raised."""
        try:
            await asyncio.to_thread(send, email, token)
        except Exception as exc:  # noqa: BLE001 -- the account change is already committed
            logger.warning("Notifier %s failed for %s: %s", send.__name__, _redact_email(email), type(exc).__name__)

    def _check_new_password(self, password: str, confirm: str) -> None:
        if password != confirm:
            raise PasswordMismatch()
        strength = self._hasher.validate_strength(password)
        if not strength.valid:
            raise WeakPassword(strength.errors)

    @staticmethod
    def _check_name(value: str | None, label: str) -> None:
        if not value:
            raise InvalidInput(f"{label} is required.")
        if len(value) > _NAME_MAX_LENGTH:
            raise InvalidInput(f"{label} cannot exceed {_NAME_MAX_LENGTH} characters.")
