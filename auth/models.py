"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work; these types only own the shape of the data.

User has no password hash field. The hash is only readable via
UserStore.get_password_hash() and flows straight into PasswordHasher.verify().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from auth.errors import AuthError

# Loose shape check only; deliverability is not our concern.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class AuditEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    PERMISSION_DENIED = "permission_denied"
    PASSWORD_CHANGE = "password_change"
    USER_REGISTERED = "user_registered"
    SESSIONS_REVOKED = "sessions_revoked"


class LoginState(str, Enum):
    """Progress of a single login attempt through AuthService.login()."""

    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    CREDENTIAL_VERIFIED = "credential_verified"
    SESSION_ISSUED = "session_issued"
    COMPLETED = "completed"


@dataclass
class User:
    """An account in the credential store.

    roles holds role names only; permissions are resolved through Role records
    at authorization time so unknown names simply grant nothing.

    credential_version increments on every password change and deactivation.
    A session minted against an older version is dead.
    """

    username: str
    email: str
    id: int | None = None
    roles: frozenset[str] = frozenset()
    is_active: bool = True
    created_at: float | None = None
    last_login: float | None = None
    credential_version: int = 0


@dataclass(frozen=True)
class Role:
    name: str
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ClientMeta:
    """Client metadata captured per request (never trusted for auth decisions)."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class Session:
    """Server-side session state.

    id is the HMAC digest of the opaque token handed to the client. The raw
    token is never persisted.
    """

    id: str
    user_id: int
    created_at: float
    expires_at: float
    ip: str | None = None
    user_agent: str | None = None
    is_valid: bool = True
    refresh_jti: str | None = None
    credential_version: int = 0


@dataclass(frozen=True)
class RefreshRecord:
    """Server-side record backing one refresh token, keyed by its jti claim."""

    jti: str
    user_id: int
    session_id: str
    issued_at: float
    expires_at: float
    revoked: bool = False
    replaced_by: str | None = None


@dataclass(frozen=True)
class Claims:
    """Decoded, verified payload of a signed token."""

    subject: int
    token_type: TokenType
    issued_at: int
    expires_at: int
    jti: str
    session_id: str | None = None
    roles: frozenset[str] = frozenset()


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    user_id: int | None = None
    timestamp: float | None = None
    client: ClientMeta = field(default_factory=ClientMeta)
    detail: dict = field(default_factory=dict)
    id: int | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a single request.

    via is "session" when resolved from a session token (roles are live from
    the store) or "access_token" when resolved from a JWT (roles are the
    snapshot taken at issue time).
    """

    user: User
    roles: tuple[Role, ...]
    via: str
    session_id: str | None = None

    @property
    def role_names(self) -> list[str]:
        return sorted(r.name for r in self.roles)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass(frozen=True)
class AuthResult:
    """Outcome of an AuthService operation.

    Exactly one of (error) or (success payload fields) is meaningful. For
    login, state is the stage the attempt exited from: RATE_CHECKED when
    throttled, CREDENTIAL_VERIFIED when credentials were rejected, COMPLETED
    on success.
    """

    error: AuthError | None = None
    principal: Principal | None = None
    tokens: TokenPair | None = None
    session_token: str | None = None
    state: LoginState = LoginState.COMPLETED

    @property
    def ok(self) -> bool:
        return self.error is None
