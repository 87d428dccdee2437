"""Unit tests for auth/store.py -- users and roles.

Covers:
- create_user() / lookup by username or (case-insensitive) email
- ConflictError on duplicate username and duplicate email
- User objects never carry the password hash
- set_active / record_login / update_password_hash
- credential_version bumps on password rotation and deactivation
- Role upsert, lookup (unknown names skipped) and set_roles
"""

import dataclasses

import pytest
from conftest import FrozenClock

from auth.errors import ConflictError
from auth.models import Role, User
from auth.store import UserStore


@pytest.fixture
def store(tmp_path):
    s = UserStore(f"sqlite:///{tmp_path / 'users.db'}", clock=FrozenClock())
    yield s
    s.close()


def test_create_and_find_user(store):
    assert not store.has_users()
    uid = store.create_user(User(username="alice", email="Alice@Example.com", roles=frozenset({"viewer"})), "h1")
    assert store.has_users()

    by_name = store.find_by_username_or_email("alice")
    by_email = store.find_by_username_or_email("ALICE@example.com")
    assert by_name.id == uid
    assert by_email.id == uid
    assert by_name.email == "alice@example.com"
    assert by_name.roles == frozenset({"viewer"})
    assert by_name.is_active
    assert store.find_by_username_or_email("bob") is None


def test_username_lookup_is_case_sensitive(store):
    store.create_user(User(username="alice", email="a@example.com"), "h")
    assert store.find_by_username_or_email("Alice") is None


def test_duplicate_username_conflicts(store):
    store.create_user(User(username="alice", email="a@example.com"), "h")
    with pytest.raises(ConflictError) as exc_info:
        store.create_user(User(username="alice", email="other@example.com"), "h")
    assert exc_info.value.field == "username"


def test_duplicate_email_conflicts(store):
    store.create_user(User(username="alice", email="a@example.com"), "h")
    with pytest.raises(ConflictError) as exc_info:
        store.create_user(User(username="alice2", email="A@example.com"), "h")
    assert exc_info.value.field == "email"


def test_user_has_no_hash_field(store):
    uid = store.create_user(User(username="alice", email="a@example.com"), "$2b$04$secret")
    user = store.get_by_id(uid)
    assert "hashed_password" not in {f.name for f in dataclasses.fields(user)}
    assert "$2b$04$secret" not in repr(user)
    assert store.get_password_hash(uid) == "$2b$04$secret"


def test_update_hash_set_active_record_login(store):
    uid = store.create_user(User(username="alice", email="a@example.com"), "old")
    assert store.update_password_hash(uid, "new")
    assert store.get_password_hash(uid) == "new"

    assert store.set_active(uid, False)
    assert not store.get_by_id(uid).is_active
    assert not store.set_active(9999, False)

    store.record_login(uid, 1234.5)
    assert store.get_by_id(uid).last_login == 1234.5


def test_credential_version(store):
    uid = store.create_user(User(username="alice", email="a@example.com"), "h1")
    assert store.get_credentials(uid) == ("h1", 0)
    assert store.get_credentials(9999) is None

    assert store.rotate_password_hash(uid, "h2")
    assert store.get_credentials(uid) == ("h2", 1)
    assert store.get_by_id(uid).credential_version == 1

    # A cost upgrade computed against version 0 must not clobber the new hash.
    assert not store.update_password_hash(uid, "h1-rehashed", expected_version=0)
    assert store.update_password_hash(uid, "h2-rehashed", expected_version=1)
    assert store.get_credentials(uid) == ("h2-rehashed", 1)

    store.set_active(uid, False)
    assert store.get_credentials(uid)[1] == 2
    store.set_active(uid, True)
    assert store.get_credentials(uid)[1] == 2


def test_roles(store):
    store.upsert_role(Role(name="viewer", permissions=frozenset({"read"})))
    store.upsert_role(Role(name="viewer", permissions=frozenset({"read", "list"})))
    store.upsert_role(Role(name="editor", permissions=frozenset({"write"})))

    roles = store.get_roles({"viewer", "ghost"})
    assert roles == [Role(name="viewer", permissions=frozenset({"read", "list"}))]
    assert store.get_roles(frozenset()) == []
    assert [r.name for r in store.list_roles()] == ["editor", "viewer"]

    uid = store.create_user(User(username="alice", email="a@example.com", roles=frozenset({"viewer"})), "h")
    store.set_roles(uid, {"editor"})
    assert store.get_by_id(uid).roles == frozenset({"editor"})
