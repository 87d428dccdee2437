"""
auth/service.py -- AuthService, the facade HTTP handlers call.

Orchestrates the components in a fixed order:

  login:      rate limiter -> credential store + hasher -> session store +
              token service -> audit
  refresh:    token service -> refresh record (atomic consume) -> token service
  authorize:  session store or token service -> stages (active user, RBAC)

Login state machine (per attempt):
  RECEIVED -> RATE_CHECKED -> CREDENTIAL_VERIFIED -> SESSION_ISSUED -> COMPLETED
  Failure exits: RATE_CHECKED (throttled), CREDENTIAL_VERIFIED (invalid
  credentials, inactive account). Every exit writes an audit record first.
  AuthResult.state is the stage the attempt exited from.

Security:
  [T1] Timing equalization: an unknown identifier still costs one bcrypt
       verification (against the hasher's dummy hash). Unknown user and wrong
       password produce the same error kind and message.
  [T2] A throttled attempt never reaches the credential store.
  [T3] Fail closed: any storage error or timeout during authorization yields
       STORAGE_UNAVAILABLE, which callers must treat as a denial.
  [T4] Refresh rotation: each refresh token works once. Presenting an already
       rotated token is treated as theft and revokes the whole session.

Concurrency:
  Store calls run on a bounded I/O pool and wait at most
  storage_timeout_seconds. bcrypt runs on its own bounded pool so a burst of
  logins cannot starve the I/O pool (or the other way round).
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field

from auth.audit import AuditLogger
from auth.errors import AuthError, AuthErrorKind, StorageUnavailable
from auth.limiter import LoginRateLimiter
from auth.models import (
    EMAIL_PATTERN,
    AuditEvent,
    AuditEventType,
    AuthResult,
    Claims,
    ClientMeta,
    LoginState,
    Principal,
    Session,
    TokenPair,
    TokenType,
    User,
)
from auth.passwords import PasswordHasher
from auth.rbac import authorize
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenService
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("authcore.auth.service")


# ---------------------------------------------------------------------------
# Authorization stages
#
# An ordered list of (request, principal) -> AuthError | None callables. The
# first stage that returns an error short-circuits the rest.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthRequest:
    required: frozenset[str] = frozenset()
    client: ClientMeta = field(default_factory=ClientMeta)


Stage = Callable[[AuthRequest, Principal], "AuthError | None"]


def active_user_stage(request: AuthRequest, principal: Principal) -> AuthError | None:
    if not principal.user.is_active:
        return AuthError(AuthErrorKind.INACTIVE_ACCOUNT)
    return None


def permission_stage(request: AuthRequest, principal: Principal) -> AuthError | None:
    decision = authorize(principal.roles, request.required)
    if not decision.allowed:
        return AuthError(AuthErrorKind.PERMISSION_DENIED, missing=decision.missing)
    return None


DEFAULT_STAGES: tuple[Stage, ...] = (active_user_stage, permission_stage)


def _looks_like_jwt(token: str) -> bool:
    return token.count(".") == 2


def _is_stale(session: Session, user: User) -> bool:
    """True if the user's credentials changed after this session was minted.

    Inactive users are left to active_user_stage so they still get
    INACTIVE_ACCOUNT rather than a generic token error.
    """
    return user.is_active and session.credential_version != user.credential_version


class AuthService:
    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        sessions: SessionStore,
        tokens: TokenService,
        limiter: LoginRateLimiter,
        audit: AuditLogger,
        hasher: PasswordHasher,
        clock: Clock | None = None,
        stages: Iterable[Stage] = DEFAULT_STAGES,
    ) -> None:
        self.settings = settings
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self.limiter = limiter
        self.audit = audit
        self.hasher = hasher
        self.clock = clock or SystemClock()
        self.stages = list(stages)
        self.timeout = settings.storage_timeout_seconds
        self._io = ThreadPoolExecutor(max_workers=settings.io_workers, thread_name_prefix="authcore-io")
        self._hash_pool = ThreadPoolExecutor(max_workers=settings.hash_workers, thread_name_prefix="authcore-hash")

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock | None = None) -> "AuthService":
        """Build the full component graph from settings."""
        clock = clock or SystemClock()
        timeout = settings.storage_timeout_seconds
        users = UserStore(settings.db_url, clock=clock, timeout=timeout)
        sessions = SessionStore(settings.db_url, digest_key=settings.secret_key, clock=clock, timeout=timeout)
        return cls(
            settings=settings,
            users=users,
            sessions=sessions,
            tokens=TokenService(settings, sessions, clock=clock),
            limiter=LoginRateLimiter(
                settings.login_max_attempts,
                settings.login_window_seconds,
                max_keys=settings.rate_limit_max_keys,
                clock=clock,
            ),
            audit=AuditLogger(settings.db_url, clock=clock, timeout=timeout),
            hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Worker pool helpers
    # ------------------------------------------------------------------

    def _call(self, fn, *args, **kwargs):
        """Run a store call on the I/O pool, bounded by the storage timeout."""
        future = self._io.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            logger.error("Storage call %s timed out after %.1fs", getattr(fn, "__name__", fn), self.timeout)
            raise StorageUnavailable(getattr(fn, "__name__", "call")) from None

    def _hash(self, fn, *args):
        return self._hash_pool.submit(fn, *args).result()

    def _record(self, event_type: AuditEventType, user_id: int | None, client: ClientMeta, **detail) -> None:
        """Write an audit event without letting it fail or stall the caller."""
        event = AuditEvent(event_type=event_type, user_id=user_id, timestamp=self.clock.now(), client=client, detail=detail)
        future = self._io.submit(self.audit.record, event)
        try:
            future.result(timeout=self.timeout)
        except FuturesTimeout:
            logger.error("Audit write for %s timed out; continuing", event_type.value)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, client: ClientMeta | None = None) -> AuthResult:
        """Authenticate identifier/password and issue a session plus token pair."""
        client = client or ClientMeta()
        key = self.limiter.key_for(identifier, client.ip)
        state = LoginState.RATE_CHECKED
        decision = self.limiter.check_and_record(key)
        if not decision.allowed:
            self._record(AuditEventType.LOGIN_FAILURE, None, client, reason="throttled", identifier=identifier[:255])
            return AuthResult(error=AuthError(AuthErrorKind.THROTTLED, retry_after=decision.retry_after), state=state)
        state = LoginState.CREDENTIAL_VERIFIED

        try:
            user = self._call(self.users.find_by_username_or_email, identifier)
            credentials = self._call(self.users.get_credentials, user.id) if user is not None else None
        except StorageUnavailable:
            return self._storage_failure(state)

        if user is None or credentials is None:
            self._hash(self.hasher.verify_dummy, password)  # [T1]
            self._record(AuditEventType.LOGIN_FAILURE, None, client, reason="unknown_identifier", identifier=identifier[:255])
            return AuthResult(error=AuthError(AuthErrorKind.INVALID_CREDENTIALS), state=state)

        stored_hash, credential_version = credentials
        if not self._hash(self.hasher.verify, password, stored_hash):
            self._record(AuditEventType.LOGIN_FAILURE, user.id, client, reason="bad_password")
            return AuthResult(error=AuthError(AuthErrorKind.INVALID_CREDENTIALS), state=state)

        if not user.is_active:
            self._record(AuditEventType.LOGIN_FAILURE, user.id, client, reason="inactive")
            return AuthResult(error=AuthError(AuthErrorKind.INACTIVE_ACCOUNT), state=state)
        state = LoginState.SESSION_ISSUED

        try:
            roles = self._call(self.users.get_roles, user.roles)
            # Bound to the version the password was checked against. A password
            # change that lands after the check kills this session on its next use.
            session_token, session = self._call(
                self.sessions.create, user.id, client, self.settings.session_ttl_seconds, credential_version
            )
            pair = self._issue_pair(user, user.roles, session)
            self._call(self.users.record_login, user.id, self.clock.now())
            if self.hasher.needs_rehash(stored_hash):
                new_hash = self._hash(self.hasher.hash, password)
                if self._call(self.users.update_password_hash, user.id, new_hash, credential_version):
                    logger.info("Upgraded password hash cost for user id=%s", user.id)
        except StorageUnavailable:
            return self._storage_failure(state)
        state = LoginState.COMPLETED

        self.limiter.reset(key)
        self._record(AuditEventType.LOGIN_SUCCESS, user.id, client, session_id=session.id[:12])
        principal = Principal(user=user, roles=tuple(roles), via="session", session_id=session.id)
        return AuthResult(principal=principal, tokens=pair, session_token=session_token, state=state)

    def _issue_pair(self, user: User, role_names: frozenset[str], session: Session, refresh_jti: str | None = None) -> TokenPair:
        access_token, _claims = self.tokens.issue_access_token(user, role_names, session.id)
        refresh_token, _jti = self._call(
            self.tokens.issue_refresh_token, user, session.id, session.expires_at, refresh_jti
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_in=self.tokens.access_ttl)

    def _storage_failure(self, state: LoginState = LoginState.COMPLETED) -> AuthResult:
        return AuthResult(error=AuthError(AuthErrorKind.STORAGE_UNAVAILABLE), state=state)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, token: str | None, client: ClientMeta | None = None) -> AuthResult:
        """Invalidate the session behind a session token or access token.

        Idempotent: an unknown, expired or already invalidated token is a
        successful no-op. Only an empty token is rejected (malformed request).
        """
        client = client or ClientMeta()
        if not token:
            return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))

        if _looks_like_jwt(token):
            claims = self.tokens.verify(token, TokenType.ACCESS, allow_expired=True)
            if not isinstance(claims, Claims) or not claims.session_id:
                return AuthResult()
            session_id = claims.session_id
        else:
            session_id = self.sessions.session_id_for(token)

        try:
            session = self._call(self.sessions.get_by_id, session_id)
            if session is None:
                return AuthResult()
            changed = self._call(self.sessions.invalidate_by_id, session_id)
        except StorageUnavailable:
            return self._storage_failure()
        if changed:
            self._record(AuditEventType.LOGOUT, session.user_id, client, session_id=session_id[:12])
        return AuthResult()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None, client: ClientMeta | None = None) -> AuthResult:
        """Exchange a refresh token for a new access token and a new refresh token."""
        client = client or ClientMeta()
        if not refresh_token:
            return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))
        claims = self.tokens.verify(refresh_token, TokenType.REFRESH, check_record=False)
        if isinstance(claims, AuthError):
            return AuthResult(error=claims)

        try:
            record = self._call(self.sessions.get_refresh_record, claims.jti)
            if record is None or record.user_id != claims.subject:
                return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))
            if record.revoked:
                if record.replaced_by:
                    self._handle_reuse(record.session_id, record.user_id, client)
                return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))

            session = self._call(self.sessions.get_by_id, record.session_id)
            user = self._call(self.users.get_by_id, record.user_id)
            if session is None or user is None:
                return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))
            if not user.is_active:
                return AuthResult(error=AuthError(AuthErrorKind.INACTIVE_ACCOUNT))
            if _is_stale(session, user):
                return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))

            new_jti = uuid.uuid4().hex
            if not self._call(self.sessions.consume_refresh_record, record.jti, new_jti):
                # Lost the compare-and-set: someone else used this token first.
                self._handle_reuse(record.session_id, record.user_id, client)
                return AuthResult(error=AuthError(AuthErrorKind.TOKEN_INVALID))

            roles = self._call(self.users.get_roles, user.roles)
            pair = self._issue_pair(user, user.roles, session, refresh_jti=new_jti)
        except StorageUnavailable:
            return self._storage_failure()

        self._record(AuditEventType.TOKEN_REFRESH, user.id, client, session_id=session.id[:12])
        principal = Principal(user=user, roles=tuple(roles), via="session", session_id=session.id)
        return AuthResult(principal=principal, tokens=pair)

    def _handle_reuse(self, session_id: str, user_id: int, client: ClientMeta) -> None:
        """A rotated refresh token came back. Kill the session it belonged to [T4]."""
        logger.warning("Refresh token reuse detected for user id=%s; revoking session", user_id)
        self._call(self.sessions.invalidate_by_id, session_id)
        self._record(AuditEventType.TOKEN_REFRESH, user_id, client, reason="reuse_detected", session_id=session_id[:12])

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize_request(
        self,
        token: str | None,
        required_permissions: Iterable[str] = (),
        client: ClientMeta | None = None,
    ) -> AuthResult:
        """Resolve token to a Principal and run the authorization stages.

        Accepts a session token (roles resolved live) or an access token
        (role snapshot from issue time; staleness bounded by the access TTL).
        Either way the backing session must still be live and minted against
        the user's current credentials.
        """
        request = AuthRequest(required=frozenset(required_permissions), client=client or ClientMeta())
        try:
            resolved = self._resolve_principal(token)
        except StorageUnavailable:
            return self._storage_failure()  # [T3]
        if isinstance(resolved, AuthError):
            return AuthResult(error=resolved)

        for stage in self.stages:
            error = stage(request, resolved)
            if error is not None:
                if error.kind is AuthErrorKind.PERMISSION_DENIED:
                    self._record(
                        AuditEventType.PERMISSION_DENIED,
                        resolved.user.id,
                        request.client,
                        required=sorted(request.required),
                        missing=sorted(error.missing),
                        via=resolved.via,
                    )
                return AuthResult(error=error, principal=resolved)
        return AuthResult(principal=resolved)

    def current_user(self, token: str | None, client: ClientMeta | None = None) -> AuthResult:
        """Resolve the caller with no permission requirement (GET /auth/me)."""
        return self.authorize_request(token, (), client)

    def _resolve_principal(self, token: str | None) -> Principal | AuthError:
        if not token:
            return AuthError(AuthErrorKind.TOKEN_INVALID)

        if _looks_like_jwt(token):
            claims = self.tokens.verify(token, TokenType.ACCESS)
            if isinstance(claims, AuthError):
                return claims
            user = self._call(self.users.get_by_id, claims.subject)
            if user is None:
                return AuthError(AuthErrorKind.TOKEN_INVALID)
            if claims.session_id:
                # Session-bound access tokens die with their session.
                session = self._call(self.sessions.get_by_id, claims.session_id)
                if session is None or session.user_id != user.id or _is_stale(session, user):
                    return AuthError(AuthErrorKind.TOKEN_INVALID)
            roles = self._call(self.users.get_roles, claims.roles)
            return Principal(user=user, roles=tuple(roles), via="access_token", session_id=claims.session_id)

        session = self._call(self.sessions.get, token)
        if session is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        user = self._call(self.users.get_by_id, session.user_id)
        if user is None or _is_stale(session, user):
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        roles = self._call(self.users.get_roles, user.roles)
        return Principal(user=user, roles=tuple(roles), via="session", session_id=session.id)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        roles: Iterable[str] = (),
        client: ClientMeta | None = None,
    ) -> User:
        """Create a user. Raises ConflictError on a duplicate username or email.

        Raises ValueError if the username contains "@" or the email is not
        email-shaped. Identifiers are looked up as username OR email, so the
        two namespaces must never overlap.
        """
        if "@" in username:
            raise ValueError("Username must not contain '@'.")
        if not re.fullmatch(EMAIL_PATTERN, email):
            raise ValueError("Email address is not valid.")
        password_hash = self._hash(self.hasher.hash, password)
        user = User(username=username, email=email, roles=frozenset(roles))
        user_id = self._call(self.users.create_user, user, password_hash)
        self._record(AuditEventType.USER_REGISTERED, user_id, client or ClientMeta())
        created = self._call(self.users.get_by_id, user_id)
        return created

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        client: ClientMeta | None = None,
    ) -> AuthResult:
        """Verify the current password, store the new hash, end every session.

        The hash write bumps the user's credential_version, which is what
        actually ends sessions, including one a concurrent login is about to
        create. invalidate_all_for_user() then marks the existing rows dead.
        """
        client = client or ClientMeta()
        try:
            stored_hash = self._call(self.users.get_password_hash, user_id)
            if not self._hash(self.hasher.verify, current_password, stored_hash):
                self._record(AuditEventType.PASSWORD_CHANGE, user_id, client, result="bad_password")
                return AuthResult(error=AuthError(AuthErrorKind.INVALID_CREDENTIALS))
            new_hash = self._hash(self.hasher.hash, new_password)
            self._call(self.users.rotate_password_hash, user_id, new_hash)
            revoked = self._call(self.sessions.invalidate_all_for_user, user_id)
        except StorageUnavailable:
            return self._storage_failure()
        self._record(AuditEventType.PASSWORD_CHANGE, user_id, client, result="ok", sessions_revoked=revoked)
        return AuthResult()

    def set_active(self, user_id: int, active: bool, client: ClientMeta | None = None) -> bool:
        """Activate or deactivate a user. Deactivation ends every session."""
        found = self._call(self.users.set_active, user_id, active)
        if found and not active:
            revoked = self._call(self.sessions.invalidate_all_for_user, user_id)
            self._record(AuditEventType.SESSIONS_REVOKED, user_id, client or ClientMeta(), reason="deactivated", count=revoked)
        return found

    def recent_audit_events(self, user_id: int | None = None, limit: int = 100) -> list[AuditEvent]:
        return self._call(self.audit.list_events, user_id, limit)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self) -> dict[str, int]:
        """Reclaim expired sessions and stale rate-limit keys."""
        swept = self._call(self.sessions.sweep_expired)
        purged = self.limiter.purge_stale()
        return {"sessions": swept, "rate_limit_keys": purged}

    def close(self) -> None:
        self._io.shutdown(wait=True)
        self._hash_pool.shutdown(wait=True)
        self.users.close()
        self.sessions.close()
        self.audit.close()
