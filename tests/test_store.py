"""
tests/test_store.py -- Integration tests for auth.store.UserStore on SQLite.

Coverage:
  - create / lookup, unique live email, soft delete frees the address
  - bounded refresh-token and audit lists (cap, ordering, FIFO eviction)
  - compare-and-delete refresh token removal
  - atomic failure counter and lock stamp
  - conditional password replacement purges refresh tokens
  - single-use email verification
  - search, paging and admin counting
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AuditEntry, Role, User
from auth.store import UserStore


def _user(email: str = "alice@example.com", **overrides) -> User:
    values = {
        "email": email,
        "first_name": "Alice",
        "last_name": "Smith",
        "password_hash": "$2b$04$placeholderplaceholderplaceholderplaceholderplacehol",
    }
    values.update(overrides)
    return User(**values)


class TestUsers:
    def test_create_and_lookup(self, store: UserStore) -> None:
        uid = store.create_user(_user(date_of_birth=date(1990, 5, 17), phone_number="555-0100"))
        by_email = store.get_by_email("alice@example.com")
        by_id = store.get_by_id(uid)
        assert by_email is not None and by_id is not None
        assert by_email.id == by_id.id == uid
        assert by_id.role == Role.customer
        assert by_id.date_of_birth == date(1990, 5, 17)
        assert by_id.is_active is True
        assert by_id.is_email_verified is False
        assert by_id.created_at is not None
        assert by_id.created_at.tzinfo is not None

    def test_unknown_user(self, store: UserStore) -> None:
        assert store.get_by_email("nobody@example.com") is None
        assert store.get_by_id(999) is None

    def test_duplicate_email_rejected(self, store: UserStore) -> None:
        store.create_user(_user())
        with pytest.raises(IntegrityError):
            store.create_user(_user(first_name="Other"))

    def test_soft_delete_frees_email(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.push_refresh_token(uid, "tok", cap=5)
        assert store.soft_delete(uid, deleted_by="7") is True

        assert store.get_by_id(uid) is None
        assert store.get_by_email("alice@example.com") is None
        deleted = store.get_by_id(uid, include_deleted=True)
        assert deleted.is_deleted is True
        assert deleted.is_active is False
        assert deleted.deleted_by == "7"
        assert store.get_refresh_tokens(uid) == []

        assert store.create_user(_user()) != uid

    def test_soft_delete_twice(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        assert store.soft_delete(uid, deleted_by="7") is True
        assert store.soft_delete(uid, deleted_by="7") is False

    def test_update_fields(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        assert store.update_fields(uid, first_name="Alicia", role=Role.admin, is_active=False) is True
        user = store.get_by_id(uid)
        assert user.first_name == "Alicia"
        assert user.role == Role.admin
        assert user.is_active is False

    def test_update_fields_refuses_credentials(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        with pytest.raises(ValueError):
            store.update_fields(uid, password_hash="x")

    def test_update_missing_user(self, store: UserStore) -> None:
        assert store.update_fields(999, first_name="X") is False


class TestBoundedLists:
    def test_refresh_tokens_keep_newest_five(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        for i in range(10):
            store.push_refresh_token(uid, f"token-{i}", cap=5)
        assert store.get_refresh_tokens(uid) == [f"token-{i}" for i in range(9, 4, -1)]

    def test_refresh_lists_are_per_user(self, store: UserStore) -> None:
        a = store.create_user(_user("a@example.com"))
        b = store.create_user(_user("b@example.com"))
        for i in range(5):
            store.push_refresh_token(a, f"a-{i}", cap=5)
        store.push_refresh_token(b, "b-0", cap=5)
        assert len(store.get_refresh_tokens(a)) == 5
        assert store.get_refresh_tokens(b) == ["b-0"]

    def test_audit_trail_fifo(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        start = datetime.now(timezone.utc)
        for i in range(60):
            store.push_audit_entry(
                uid, AuditEntry(action=f"action-{i}", timestamp=start + timedelta(seconds=i)), cap=50
            )
        trail = store.get_audit_trail(uid)
        assert len(trail) == 50
        assert [e.action for e in trail] == [f"action-{i}" for i in range(10, 60)]

    def test_with_sessions_loads_lists(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.push_refresh_token(uid, "tok", cap=5)
        store.push_audit_entry(uid, AuditEntry(action="Registered", timestamp=datetime.now(timezone.utc)), cap=50)
        assert store.get_by_id(uid).refresh_tokens == []
        loaded = store.get_by_id(uid, with_sessions=True)
        assert loaded.refresh_tokens == ["tok"]
        assert [e.action for e in loaded.audit_trail] == ["Registered"]

    def test_pull_is_single_use(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        store.push_refresh_token(uid, "tok", cap=5)
        assert store.pull_refresh_token(uid, "tok") is True
        assert store.pull_refresh_token(uid, "tok") is False

    def test_pull_checks_owner(self, store: UserStore) -> None:
        a = store.create_user(_user("a@example.com"))
        b = store.create_user(_user("b@example.com"))
        store.push_refresh_token(a, "tok", cap=5)
        assert store.pull_refresh_token(b, "tok") is False
        assert store.get_refresh_tokens(a) == ["tok"]


class TestLockout:
    def test_counter_and_lock(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        lock_until = datetime.now(timezone.utc) + timedelta(minutes=15)
        for expected in range(1, 5):
            attempts, locked = store.record_failed_login(uid, 5, lock_until)
            assert attempts == expected
            assert locked is None
        attempts, locked = store.record_failed_login(uid, 5, lock_until)
        assert attempts == 5
        assert locked == lock_until

    def test_reset_clears_counter_and_stamps_login(self, store: UserStore) -> None:
        uid = store.create_user(_user())
        now = datetime.now(timezone.utc)
        for _ in range(5):
            store.record_failed_login(uid, 5, now + timedelta(minutes=15))
        store.reset_login_failures(uid, last_login_at=now, last_login_origin="10.0.0.1")
        user = store.get_by_id(uid)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        assert user.last_login_at == now
        assert user.last_login_origin == "10.0.0.1"


class TestPasswords:
    def test_replace_requires_expected_hash(self, store: UserStore) -> None:
        uid = store.create_user(_user(password_hash="old"))
        store.push_refresh_token(uid, "tok", cap=5)
        assert store.replace_password(uid, "new", expected_hash="stale") is False
        assert store.get_refresh_tokens(uid) == ["tok"]

        assert store.replace_password(uid, "new", expected_hash="old") is True
        assert store.get_by_id(uid).password_hash == "new"
        assert store.get_refresh_tokens(uid) == []

    def test_replace_with_reset_token_is_single_use(self, store: UserStore) -> None:
        uid = store.create_user(_user(password_hash="old"))
        store.update_fields(
            uid,
            password_reset_token_hash="digest",
            password_reset_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        store.record_failed_login(uid, 1, datetime.now(timezone.utc) + timedelta(minutes=15))
        assert store.find_by_reset_token("digest").id == uid

        assert store.replace_password(uid, "new", reset_token_hash="digest") is True
        user = store.get_by_id(uid)
        assert user.password_reset_token_hash is None
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        assert store.find_by_reset_token("digest") is None
        assert store.replace_password(uid, "newer", reset_token_hash="digest") is False

    def test_mark_email_verified_once(self, store: UserStore) -> None:
        uid = store.create_user(_user(email_verification_token_hash="vdigest"))
        assert store.find_by_verification_token("vdigest").id == uid
        assert store.mark_email_verified(uid, "vdigest") is True
        assert store.mark_email_verified(uid, "vdigest") is False
        assert store.get_by_id(uid).is_email_verified is True


class TestSearch:
    def test_term_role_and_paging(self, store: UserStore) -> None:
        store.create_user(_user("alice@example.com"))
        store.create_user(_user("bob@example.com", first_name="Bob", last_name="Jones"))
        store.create_user(_user("carol@example.com", first_name="Carol", role=Role.admin))

        users, total = store.search_users(term="bob")
        assert total == 1 and users[0].email == "bob@example.com"

        users, total = store.search_users(role="admin")
        assert [u.email for u in users] == ["carol@example.com"]

        users, total = store.search_users(offset=0, limit=2)
        assert total == 3 and len(users) == 2

    def test_wildcards_are_literal(self, store: UserStore) -> None:
        store.create_user(_user())
        assert store.search_users(term="%")[1] == 0
        assert store.search_users(term="_")[1] == 0

    def test_count_active_admins(self, store: UserStore) -> None:
        store.create_user(_user("a@example.com", role=Role.admin))
        store.create_user(_user("b@example.com", role=Role.admin, is_active=False))
        store.create_user(_user("c@example.com"))
        assert store.count_active_admins() == 1


def test_ping(store: UserStore) -> None:
    assert store.ping() is True


def test_lifecycle_changes_are_logged(store: UserStore, caplog) -> None:
    uid = store.create_user(_user())
    with caplog.at_level(logging.INFO, logger="storefront.store"):
        store.soft_delete(uid, deleted_by="1")
    records = [r for r in caplog.records if r.name == "storefront.store"]
    assert any("flagged deleted" in r.getMessage() for r in records)
