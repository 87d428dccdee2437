"""Integration tests for auth/service.py -- the AuthService facade.

Covers:
- The alice scenario: login, wrong password, throttle after N failures
- Unknown user and wrong password are indistinguishable
- Inactive accounts, login state reporting
- Logout is idempotent and immediately effective
- Refresh rotation, replay detection, session expiry
- authorize_request() with session and access tokens, RBAC denial audit
- Fail-closed on storage errors and timeouts
- change_password / set_active revoke sessions; register rules; sweep
- Concurrency: one winner per refresh token, login racing a password change
"""

import threading
import time

import pytest

from auth.errors import AuthError, AuthErrorKind, ConflictError, StorageUnavailable
from auth.models import AuditEventType, ClientMeta, LoginState

CLIENT = ClientMeta(ip="10.0.0.1", user_agent="pytest")


def _login(service, identifier="alice", password="Secret123!"):
    return service.login(identifier, password, CLIENT)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_alice_scenario(self, service, alice):
        ok = _login(service)
        assert ok.ok
        assert ok.session_token
        assert ok.tokens.access_token.count(".") == 2
        assert ok.tokens.expires_in == 900
        assert ok.state is LoginState.COMPLETED
        assert ok.principal.user.username == "alice"

        n = service.settings.login_max_attempts
        for _ in range(n):
            bad = _login(service, password="wrong")
            assert bad.error.kind is AuthErrorKind.INVALID_CREDENTIALS
            assert bad.state is LoginState.CREDENTIAL_VERIFIED
        throttled = _login(service, password="wrong")
        assert throttled.error.kind is AuthErrorKind.THROTTLED
        assert throttled.error.retry_after >= 1
        assert throttled.state is LoginState.RATE_CHECKED

    def test_throttle_applies_even_with_correct_password(self, service, alice):
        for _ in range(service.settings.login_max_attempts):
            _login(service, password="wrong")
        assert _login(service).error.kind is AuthErrorKind.THROTTLED

    def test_throttle_lifts_after_window(self, service, alice, clock):
        for _ in range(service.settings.login_max_attempts):
            _login(service, password="wrong")
        clock.advance(service.settings.login_window_seconds)
        assert _login(service).ok

    def test_login_by_email(self, service, alice):
        assert _login(service, identifier="ALICE@example.com").ok

    def test_unknown_user_matches_wrong_password(self, service, alice):
        unknown = _login(service, identifier="mallory", password="whatever")
        wrong = _login(service, password="whatever")
        assert unknown.error == wrong.error
        assert unknown.error.message == wrong.error.message == "Invalid credentials"

    def test_inactive_account(self, service, alice):
        service.set_active(alice.id, False)
        assert _login(service).error.kind is AuthErrorKind.INACTIVE_ACCOUNT
        # A wrong password on an inactive account reveals nothing more.
        assert _login(service, password="nope").error.kind is AuthErrorKind.INVALID_CREDENTIALS

    def test_login_records_last_login_and_audit(self, service, alice, clock):
        _login(service)
        assert service.users.get_by_id(alice.id).last_login == clock.now()
        kinds = [e.event_type for e in service.recent_audit_events(user_id=alice.id)]
        assert AuditEventType.LOGIN_SUCCESS in kinds

    def test_audit_outage_does_not_break_login(self, service, alice):
        with service.audit.engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE audit_events")
        assert _login(service).ok
        assert _login(service, password="wrong").error.kind is AuthErrorKind.INVALID_CREDENTIALS

    def test_storage_failure_fails_closed(self, service, alice, monkeypatch):
        def boom(identifier):
            raise StorageUnavailable("find")

        monkeypatch.setattr(service.users, "find_by_username_or_email", boom)
        result = _login(service)
        assert result.error.kind is AuthErrorKind.STORAGE_UNAVAILABLE
        assert result.session_token is None

    def test_storage_timeout_fails_closed(self, service, alice, monkeypatch):
        service.timeout = 0.05

        def slow(identifier):
            time.sleep(0.5)

        monkeypatch.setattr(service.users, "find_by_username_or_email", slow)
        assert _login(service).error.kind is AuthErrorKind.STORAGE_UNAVAILABLE

    def test_rehash_on_cost_change(self, service, alice):
        service.hasher.rounds = 5
        assert _login(service).ok
        stored = service.users.get_password_hash(alice.id)
        assert stored.split("$")[2] == "05"


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_session_token_is_immediate_and_idempotent(self, service, alice):
        login = _login(service)
        assert service.current_user(login.session_token).ok

        assert service.logout(login.session_token, CLIENT).ok
        assert service.current_user(login.session_token).error.kind is AuthErrorKind.TOKEN_INVALID
        assert service.logout(login.session_token, CLIENT).ok
        assert service.logout("never-issued", CLIENT).ok

        logouts = [e for e in service.recent_audit_events(alice.id) if e.event_type is AuditEventType.LOGOUT]
        assert len(logouts) == 1

    def test_logout_with_access_token_ends_session(self, service, alice):
        login = _login(service)
        assert service.logout(login.tokens.access_token, CLIENT).ok
        assert service.current_user(login.session_token).error.kind is AuthErrorKind.TOKEN_INVALID
        assert service.refresh(login.tokens.refresh_token, CLIENT).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_logout_ends_access_token_immediately(self, service, alice):
        login = _login(service)
        access = login.tokens.access_token
        assert service.current_user(access).ok
        assert service.logout(login.session_token, CLIENT).ok
        assert service.current_user(access).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_logout_rejects_empty_token(self, service):
        assert service.logout("", CLIENT).error.kind is AuthErrorKind.TOKEN_INVALID


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation(self, service, alice):
        login = _login(service)
        first = service.refresh(login.tokens.refresh_token, CLIENT)
        assert first.ok
        assert first.tokens.refresh_token != login.tokens.refresh_token
        second = service.refresh(first.tokens.refresh_token, CLIENT)
        assert second.ok

    def test_replay_revokes_session(self, service, alice):
        login = _login(service)
        rotated = service.refresh(login.tokens.refresh_token, CLIENT)
        assert rotated.ok

        replay = service.refresh(login.tokens.refresh_token, CLIENT)
        assert replay.error.kind is AuthErrorKind.TOKEN_INVALID
        # The thief's replay also kills the legitimate holder's chain.
        assert service.refresh(rotated.tokens.refresh_token, CLIENT).error.kind is AuthErrorKind.TOKEN_INVALID
        assert service.current_user(login.session_token).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_access_token_is_not_a_refresh_token(self, service, alice):
        login = _login(service)
        assert service.refresh(login.tokens.access_token, CLIENT).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_refresh_fails_after_session_expiry(self, service, alice, clock):
        login = _login(service)
        clock.advance(service.settings.session_ttl_seconds)
        assert not service.refresh(login.tokens.refresh_token, CLIENT).ok

    def test_refresh_for_deactivated_user(self, service, alice):
        login = _login(service)
        service.users.set_active(alice.id, False)
        assert service.refresh(login.tokens.refresh_token, CLIENT).error.kind is AuthErrorKind.INACTIVE_ACCOUNT

    def test_concurrent_refresh_has_one_winner(self, service, alice):
        token = _login(service).tokens.refresh_token
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            result = service.refresh(token, CLIENT)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == workers
        assert sum(1 for r in results if r.ok) == 1
        assert all(r.error.kind is AuthErrorKind.TOKEN_INVALID for r in results if not r.ok)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorize:
    def test_session_token_rbac(self, service, alice):
        token = _login(service).session_token
        assert service.authorize_request(token, {"read"}, CLIENT).ok
        denied = service.authorize_request(token, {"write"}, CLIENT)
        assert denied.error.kind is AuthErrorKind.PERMISSION_DENIED

        events = [e for e in service.recent_audit_events(alice.id) if e.event_type is AuditEventType.PERMISSION_DENIED]
        assert events[0].detail["missing"] == ["write"]

    def test_access_token_rbac(self, service, alice):
        access = _login(service).tokens.access_token
        result = service.authorize_request(access, {"read"}, CLIENT)
        assert result.ok
        assert result.principal.via == "access_token"
        assert service.authorize_request(access, {"write"}, CLIENT).error.kind is AuthErrorKind.PERMISSION_DENIED

    def test_session_token_sees_role_change_immediately(self, service, alice):
        token = _login(service).session_token
        service.users.set_roles(alice.id, {"editor"})
        assert service.authorize_request(token, {"write"}, CLIENT).ok

    def test_access_token_expiry_boundary(self, service, alice, clock):
        access = _login(service).tokens.access_token
        clock.advance(service.settings.access_token_ttl_seconds - 1)
        assert service.current_user(access).ok
        clock.advance(2)
        assert service.current_user(access).error.kind is AuthErrorKind.TOKEN_EXPIRED

    def test_session_expiry_boundary(self, service, alice, clock):
        token = _login(service).session_token
        clock.advance(service.settings.session_ttl_seconds - 1)
        assert service.current_user(token).ok
        clock.advance(2)
        assert service.current_user(token).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_inactive_user_is_rejected(self, service, alice):
        access = _login(service).tokens.access_token
        service.users.set_active(alice.id, False)
        assert service.current_user(access).error.kind is AuthErrorKind.INACTIVE_ACCOUNT

    def test_missing_token(self, service):
        assert service.authorize_request(None, {"read"}).error.kind is AuthErrorKind.TOKEN_INVALID

    def test_storage_failure_denies(self, service, alice, monkeypatch):
        token = _login(service).session_token

        def boom(token):
            raise StorageUnavailable("session.get")

        monkeypatch.setattr(service.sessions, "get", boom)
        result = service.authorize_request(token, {"read"}, CLIENT)
        assert result.error.kind is AuthErrorKind.STORAGE_UNAVAILABLE
        assert result.principal is None

    def test_custom_stage_runs_in_order(self, service, alice):
        calls = []

        def deny_all(request, principal):
            calls.append(principal.user.username)
            return AuthError(AuthErrorKind.PERMISSION_DENIED)

        service.stages = [deny_all] + service.stages
        token = _login(service).session_token
        assert service.authorize_request(token, (), CLIENT).error.kind is AuthErrorKind.PERMISSION_DENIED
        assert calls == ["alice"]


# ---------------------------------------------------------------------------
# Account management and housekeeping
# ---------------------------------------------------------------------------


class TestAccounts:
    def test_register_conflicts(self, service, alice):
        with pytest.raises(ConflictError):
            service.register("alice", "other@example.com", "Secret123!")
        with pytest.raises(ConflictError):
            service.register("alice2", "ALICE@example.com", "Secret123!")

    def test_register_rejects_email_shaped_username(self, service):
        with pytest.raises(ValueError):
            service.register("bob@example.com", "bob@example.com", "Secret123!")

    def test_register_rejects_malformed_email(self, service, alice):
        for email in ("alice", "bob-at-example.com", "bob@localhost", "bob @example.com"):
            with pytest.raises(ValueError):
                service.register("bob", email, "Secret123!")
        assert service.users.find_by_username_or_email("bob") is None
        assert _login(service, identifier="alice").principal.user.id == alice.id

    def test_change_password_revokes_sessions(self, service, alice):
        first = _login(service)
        second = _login(service)
        result = service.change_password(alice.id, "Secret123!", "NewSecret456!", CLIENT)
        assert result.ok
        assert not service.current_user(first.session_token).ok
        assert not service.current_user(second.session_token).ok
        assert _login(service, password="Secret123!").error.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert _login(service, password="NewSecret456!").ok

    def test_password_change_during_login_leaves_no_live_session(self, service, alice, monkeypatch):
        # Hold the login between its password check and session creation
        # while the password changes underneath it.
        checked = threading.Event()
        changed = threading.Event()
        calls = []
        original_verify = service.hasher.verify

        def verify_then_pause(plain, hashed):
            ok = original_verify(plain, hashed)
            calls.append(plain)
            if len(calls) == 1:
                checked.set()
                changed.wait(timeout=5)
            return ok

        monkeypatch.setattr(service.hasher, "verify", verify_then_pause)
        results = {}
        login_thread = threading.Thread(target=lambda: results.update(login=_login(service)))
        login_thread.start()
        assert checked.wait(timeout=5)

        change = service.change_password(alice.id, "Secret123!", "NewSecret456!", CLIENT)
        changed.set()
        login_thread.join(timeout=5)

        assert change.ok
        raced = results["login"]
        assert raced.ok
        assert service.current_user(raced.session_token).error.kind is AuthErrorKind.TOKEN_INVALID
        assert service.current_user(raced.tokens.access_token).error.kind is AuthErrorKind.TOKEN_INVALID
        assert service.refresh(raced.tokens.refresh_token, CLIENT).error.kind is AuthErrorKind.TOKEN_INVALID
        assert _login(service, password="NewSecret456!").ok

    def test_change_password_requires_current(self, service, alice):
        login = _login(service)
        result = service.change_password(alice.id, "wrong", "NewSecret456!", CLIENT)
        assert result.error.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert service.current_user(login.session_token).ok

    def test_deactivate_revokes_sessions(self, service, alice):
        login = _login(service)
        assert service.set_active(alice.id, False, CLIENT)
        service.users.set_active(alice.id, True)
        assert not service.current_user(login.session_token).ok

    def test_sweep(self, service, alice, clock):
        _login(service)
        service.logout(_login(service).session_token)
        clock.advance(service.settings.session_ttl_seconds)
        counts = service.sweep()
        assert counts["sessions"] == 2
        assert counts["rate_limit_keys"] == 0
