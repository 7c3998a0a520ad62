"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_audit_entry are the mappers. The orchestrator never touches SQL.

Atomicity contract (every method is atomic at the single-identity level):
  create_user           -- plain INSERT guarded by a partial unique index on
                           email (live rows only). Two concurrent inserts for
                           the same email: one wins, the other raises
                           IntegrityError. No read-then-write window.
  record_failed_login   -- one UPDATE: counter = counter + 1 and the lock
                           stamp computed from the *same* row value, so
                           concurrent failures never lose an increment.
  pull_refresh_token    -- compare-and-delete. rowcount tells the caller
                           whether it won; a token can be redeemed once.
  push_refresh_token /
  push_audit_entry      -- insert + trim in one transaction (bounded lists).
  replace_password      -- conditional UPDATE on the expected hash (or reset
                           token digest) plus refresh-token purge, one
                           transaction.
  soft_delete           -- flag update plus refresh-token purge, one
                           transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings (same convention as the rest of
the schema); booleans as 0/1 integers for SQLite.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import AuditEntry, Role, User

logger = logging.getLogger("storefront.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'storefront_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.customer.value),
    Column("profile_image", Text),
    Column("phone_number", String(20)),
    Column("date_of_birth", String(10)),  # ISO date
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("deleted_at", String(32)),
    Column("deleted_by", String(64)),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token_hash", String(64)),  # SHA-256 hex
    Column("email_verification_expires_at", String(32)),
    Column("password_reset_token_hash", String(64)),  # SHA-256 hex
    Column("password_reset_expires_at", String(32)),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login_at", String(32)),
    Column("last_login_origin", String(64)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("updated_by", String(64)),
)

# Email is unique among live users only -- a soft-deleted account frees its
# address for a new registration.
Index(
    "ux_users_email_live",
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.is_deleted == 0,
    postgresql_where=_users.c.is_deleted == 0,
)
Index("ix_users_reset_token", _users.c.password_reset_token_hash)
Index("ix_users_verification_token", _users.c.email_verification_token_hash)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_audit_entries = Table(
    "audit_entries",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("timestamp", String(32), nullable=False),
    Column("action", String(50), nullable=False),
    Column("origin", String(64), nullable=False),
    Column("user_agent", Text),
)

# Columns update_fields() may touch. Anything else is a programming error.
_UPDATABLE = frozenset(
    {
        "first_name",
        "last_name",
        "profile_image",
        "phone_number",
        "date_of_birth",
        "role",
        "is_active",
        "is_email_verified",
        "email_verification_token_hash",
        "email_verification_expires_at",
        "password_reset_token_hash",
        "password_reset_expires_at",
        "last_login_at",
        "last_login_origin",
        "updated_by",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_db(name: str, value):
    """Convert a domain value to its column representation."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Role):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records, their refresh tokens and audit trail.

    Usage:
        store = UserStore("sqlite:///auth.db")
        user_id = store.create_user(User(email="a@b.co", first_name="A", last_name="B",
                                         password_hash=hasher.hash("S3cret")))
        user = store.get_by_id(user_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        logger.info("User store ready (dialect=%s)", self.engine.dialect.name)

    def ping(self) -> bool:
        """Cheap liveness check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Users -- reads
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> User | None:
        """Look up a live (not soft-deleted) user by normalized email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.is_deleted == 0))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int, *, with_sessions: bool = False, include_deleted: bool = False) -> User | None:
        """Look up a user by primary key.

        with_sessions also loads the refresh-token list and the audit trail.
        Soft-deleted rows are hidden unless include_deleted is set.
        """
        query = _users.select().where(_users.c.id == user_id)
        if not include_deleted:
            query = query.where(_users.c.is_deleted == 0)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
            if row is None:
                return None
            user = _row_to_user(row)
            if with_sessions:
                user.refresh_tokens = self._refresh_tokens_for(conn, user_id)
                user.audit_trail = self._audit_trail_for(conn, user_id)
        return user

    def find_by_reset_token(self, token_hash: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.password_reset_token_hash == token_hash) & (_users.c.is_deleted == 0)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_verification_token(self, token_hash: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.email_verification_token_hash == token_hash) & (_users.c.is_deleted == 0)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def search_users(
        self, term: str | None = None, role: str | None = None, offset: int = 0, limit: int = 20
    ) -> tuple[list[User], int]:
        """Return one page of live users (newest first) and the total match count."""
        conditions = [_users.c.is_deleted == 0]
        if role:
            conditions.append(_users.c.role == role)
        if term:
            pattern = f"%{_escape_like(term.lower())}%"
            conditions.append(
                or_(
                    func.lower(_users.c.first_name).like(pattern, escape="\\"),
                    func.lower(_users.c.last_name).like(pattern, escape="\\"),
                    _users.c.email.like(pattern, escape="\\"),
                )
            )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users).where(*conditions)).scalar()
            rows = conn.execute(
                _users.select()
                .where(*conditions)
                .order_by(_users.c.created_at.desc(), _users.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
        return [_row_to_user(r) for r in rows], total or 0

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(
                    (_users.c.role == Role.admin.value) & (_users.c.is_active == 1) & (_users.c.is_deleted == 0)
                )
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Users -- writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if a live user already holds the
        email. The unique index is the check, so there is no race window.
        """
        now = _iso(_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    password_hash=user.password_hash,
                    role=_to_db("role", user.role),
                    profile_image=user.profile_image,
                    phone_number=user.phone_number,
                    date_of_birth=_iso(user.date_of_birth),
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    email_verification_token_hash=user.email_verification_token_hash,
                    email_verification_expires_at=_iso(user.email_verification_expires_at),
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def update_fields(self, user_id: int, **fields) -> bool:
        """Set the given columns on a live user in one UPDATE.

        Only columns in _UPDATABLE are accepted -- credentials, lockout state
        and lifecycle flags have dedicated methods. Returns False when the
        user does not exist (or is soft-deleted).
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)!r}")
        values = {name: _to_db(name, value) for name, value in fields.items()}
        values["updated_at"] = _iso(_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where((_users.c.id == user_id) & (_users.c.is_deleted == 0)).values(**values)
            )
        return result.rowcount > 0

    def record_failed_login(self, user_id: int, threshold: int, lock_until: datetime) -> tuple[int, datetime | None]:
        """Atomically bump the failure counter; lock once it reaches threshold.

        Returns (attempts, locked_until) as seen right after the update.
        """
        new_count = _users.c.failed_login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=new_count,
                    locked_until=case((new_count >= threshold, _iso(lock_until)), else_=_users.c.locked_until),
                )
            )
            row = conn.execute(
                select(_users.c.failed_login_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            return 0, None
        return row.failed_login_attempts, _parse_ts(row.locked_until)

    def reset_login_failures(self, user_id: int, **stamp) -> None:
        """Clear the failure counter and any lock. Extra fields (last login) ride along."""
        values = {"failed_login_attempts": 0, "locked_until": None}
        for name, value in stamp.items():
            if name not in _UPDATABLE:
                raise ValueError(f"Field not updatable: {name!r}")
            values[name] = _to_db(name, value)
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**values))

    def replace_password(
        self,
        user_id: int,
        new_hash: str,
        *,
        expected_hash: str | None = None,
        reset_token_hash: str | None = None,
    ) -> bool:
        """Swap the password hash and revoke every refresh token, atomically.

        expected_hash makes the swap conditional on the hash the caller
        verified against (a concurrent change makes this return False).
        reset_token_hash makes it conditional on an unredeemed reset token and
        also clears that token and any lockout (the token is single use).
        """
        query = _users.update().where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
        values = {"password_hash": new_hash, "updated_at": _iso(_now())}
        if expected_hash is not None:
            query = query.where(_users.c.password_hash == expected_hash)
        if reset_token_hash is not None:
            query = query.where(_users.c.password_reset_token_hash == reset_token_hash)
            values.update(
                password_reset_token_hash=None,
                password_reset_expires_at=None,
                failed_login_attempts=0,
                locked_until=None,
            )
        with self.engine.begin() as conn:
            result = conn.execute(query.values(**values))
            if result.rowcount == 0:
                return False
            conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
        logger.info("Password replaced, sessions revoked user_id=%s", user_id)
        return True

    def mark_email_verified(self, user_id: int, token_hash: str) -> bool:
        """Redeem a verification token. False if it was already used or replaced."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.email_verification_token_hash == token_hash)
                    & (_users.c.is_deleted == 0)
                )
                .values(
                    is_email_verified=1,
                    email_verification_token_hash=None,
                    email_verification_expires_at=None,
                    updated_at=_iso(_now()),
                )
            )
        return result.rowcount > 0

    def soft_delete(self, user_id: int, deleted_by: str) -> bool:
        """Flag the user deleted and inactive, and purge its refresh tokens."""
        now = _iso(_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
                .values(is_deleted=1, is_active=0, deleted_at=now, deleted_by=deleted_by, updated_at=now)
            )
            if result.rowcount == 0:
                return False
            conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
        logger.info("User flagged deleted user_id=%s by=%s", user_id, deleted_by)
        return True

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def push_refresh_token(self, user_id: int, token: str, cap: int) -> None:
        """Store a refresh token, keeping only the newest `cap` for the user."""
        self._push_bounded(_refresh_tokens, user_id, {"token": token, "created_at": _iso(_now())}, cap)

    def pull_refresh_token(self, user_id: int, token: str) -> bool:
        """Remove one refresh token. True only for the caller that removed it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(_refresh_tokens).where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token == token)
                )
            )
        return result.rowcount > 0

    def purge_refresh_tokens(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
        logger.debug("Purged %d refresh token(s) user_id=%s", result.rowcount, user_id)
        return result.rowcount

    def get_refresh_tokens(self, user_id: int) -> list[str]:
        """Active refresh tokens, most recent first."""
        with self.engine.connect() as conn:
            return self._refresh_tokens_for(conn, user_id)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def push_audit_entry(self, user_id: int, entry: AuditEntry, cap: int) -> None:
        """Append an audit entry, evicting the oldest beyond `cap` (FIFO)."""
        self._push_bounded(
            _audit_entries,
            user_id,
            {
                "timestamp": _iso(entry.timestamp),
                "action": entry.action,
                "origin": entry.origin,
                "user_agent": entry.user_agent,
            },
            cap,
        )

    def get_audit_trail(self, user_id: int) -> list[AuditEntry]:
        """Audit entries, oldest first."""
        with self.engine.connect() as conn:
            return self._audit_trail_for(conn, user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _push_bounded(self, table: Table, user_id: int, values: dict, cap: int) -> None:
        keep = select(table.c.id).where(table.c.user_id == user_id).order_by(table.c.id.desc()).limit(cap)
        with self.engine.begin() as conn:
            conn.execute(table.insert().values(user_id=user_id, **values))
            trimmed = conn.execute(delete(table).where((table.c.user_id == user_id) & (table.c.id.not_in(keep))))
        if trimmed.rowcount:
            logger.debug("Trimmed %d row(s) from %s user_id=%s", trimmed.rowcount, table.name, user_id)

    @staticmethod
    def _refresh_tokens_for(conn, user_id: int) -> list[str]:
        rows = conn.execute(
            select(_refresh_tokens.c.token)
            .where(_refresh_tokens.c.user_id == user_id)
            .order_by(_refresh_tokens.c.id.desc())
        ).fetchall()
        return [r.token for r in rows]

    @staticmethod
    def _audit_trail_for(conn, user_id: int) -> list[AuditEntry]:
        rows = conn.execute(
            _audit_entries.select().where(_audit_entries.c.user_id == user_id).order_by(_audit_entries.c.id)
        ).fetchall()
        return [_row_to_audit_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        password_hash=row.password_hash,
        role=Role(row.role),
        profile_image=row.profile_image,
        phone_number=row.phone_number,
        date_of_birth=date.fromisoformat(row.date_of_birth) if row.date_of_birth else None,
        is_active=bool(row.is_active),
        is_deleted=bool(row.is_deleted),
        deleted_at=_parse_ts(row.deleted_at),
        deleted_by=row.deleted_by,
        is_email_verified=bool(row.is_email_verified),
        email_verification_token_hash=row.email_verification_token_hash,
        email_verification_expires_at=_parse_ts(row.email_verification_expires_at),
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires_at=_parse_ts(row.password_reset_expires_at),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=_parse_ts(row.locked_until),
        last_login_at=_parse_ts(row.last_login_at),
        last_login_origin=row.last_login_origin,
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
        updated_by=row.updated_by,
    )


def _row_to_audit_entry(row) -> AuditEntry:
    return AuditEntry(
        action=row.action,
        timestamp=_parse_ts(row.timestamp),
        origin=row.origin,
        user_agent=row.user_agent,
    )
