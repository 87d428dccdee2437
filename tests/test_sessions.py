"""Unit tests for auth/sessions.py -- server-side sessions and refresh records.

Covers:
- Tokens are opaque and stored only as digests
- Expiry boundary: valid at ttl - 1, gone at ttl
- invalidate() is visible immediately and idempotent
- invalidate_all_for_user() scope
- consume_refresh_record() succeeds exactly once
- sweep_expired() reclaims dead rows
"""

import pytest
from conftest import FrozenClock

from auth.models import ClientMeta, RefreshRecord
from auth.sessions import SessionStore


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sessions(tmp_path, clock):
    s = SessionStore(f"sqlite:///{tmp_path / 'sessions.db'}", digest_key="k" * 32, clock=clock)
    yield s
    s.close()


def test_create_returns_opaque_token(sessions):
    token, session = sessions.create(1, ClientMeta(ip="10.0.0.1", user_agent="pytest"), ttl=100)
    assert len(token) >= 43
    assert session.id != token
    assert session.id == sessions.session_id_for(token)
    found = sessions.get(token)
    assert found.user_id == 1
    assert found.ip == "10.0.0.1"
    assert sessions.get("not-a-real-token") is None


def test_session_keeps_credential_version(sessions):
    token, session = sessions.create(1, ClientMeta(), ttl=100, credential_version=3)
    assert session.credential_version == 3
    assert sessions.get(token).credential_version == 3


def test_expiry_boundary(sessions, clock):
    token, _ = sessions.create(1, ClientMeta(), ttl=100)
    clock.advance(99)
    assert sessions.get(token) is not None
    clock.advance(1)
    assert sessions.get(token) is None


def test_invalidate_is_immediate_and_idempotent(sessions):
    token, _ = sessions.create(1, ClientMeta(), ttl=100)
    assert sessions.invalidate(token) is True
    assert sessions.get(token) is None
    assert sessions.invalidate(token) is False


def test_invalidate_all_for_user(sessions):
    a1, _ = sessions.create(1, ClientMeta(), ttl=100)
    a2, _ = sessions.create(1, ClientMeta(), ttl=100)
    b1, _ = sessions.create(2, ClientMeta(), ttl=100)
    assert sessions.invalidate_all_for_user(1) == 2
    assert sessions.get(a1) is None
    assert sessions.get(a2) is None
    assert sessions.get(b1) is not None


def _record(session_id: str, jti: str = "j1", expires_at: float = 10**10) -> RefreshRecord:
    return RefreshRecord(jti=jti, user_id=1, session_id=session_id, issued_at=0, expires_at=expires_at)


def test_refresh_record_consumed_once(sessions):
    _, session = sessions.create(1, ClientMeta(), ttl=100)
    sessions.create_refresh_record(_record(session.id))
    assert sessions.get_by_id(session.id).refresh_jti == "j1"

    assert sessions.consume_refresh_record("j1", replaced_by="j2") is True
    assert sessions.consume_refresh_record("j1", replaced_by="j3") is False
    record = sessions.get_refresh_record("j1")
    assert record.revoked
    assert record.replaced_by == "j2"


def test_invalidate_revokes_refresh_records(sessions):
    token, session = sessions.create(1, ClientMeta(), ttl=100)
    sessions.create_refresh_record(_record(session.id))
    sessions.invalidate(token)
    assert sessions.get_refresh_record("j1").revoked
    assert sessions.consume_refresh_record("j1") is False


def test_sweep_removes_dead_sessions(sessions, clock):
    live, _ = sessions.create(1, ClientMeta(), ttl=1000)
    dead, dead_session = sessions.create(1, ClientMeta(), ttl=10)
    gone, _ = sessions.create(2, ClientMeta(), ttl=1000)
    sessions.create_refresh_record(_record(dead_session.id))
    sessions.invalidate(gone)
    clock.advance(10)

    assert sessions.sweep_expired() == 2
    assert sessions.get(live) is not None
    assert sessions.get_refresh_record("j1") is None
    assert sessions.sweep_expired() == 0
