"""
auth/errors.py -- Error taxonomy for the auth core.

Expected failures (bad password, expired token, missing permission) are NOT
exceptions. They travel as AuthError values inside an AuthResult so callers
branch on .kind instead of wrapping every call in try/except.

Exceptions are reserved for:
  ConflictError       -- duplicate username/email on registration.
  StorageUnavailable  -- a store call failed or timed out. Raised by the
                         stores, caught and translated by AuthService.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INACTIVE_ACCOUNT = "inactive_account"
    THROTTLED = "throttled"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    PERMISSION_DENIED = "permission_denied"
    STORAGE_UNAVAILABLE = "storage_unavailable"


# User-facing messages. Coarse: nothing here distinguishes an
# unknown username from a wrong password.
_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
    AuthErrorKind.INACTIVE_ACCOUNT: "Account inactive",
    AuthErrorKind.THROTTLED: "Too many login attempts",
    AuthErrorKind.TOKEN_EXPIRED: "Token expired",
    AuthErrorKind.TOKEN_INVALID: "Invalid token",
    AuthErrorKind.PERMISSION_DENIED: "Permission denied",
    AuthErrorKind.STORAGE_UNAVAILABLE: "Service unavailable",
}


@dataclass(frozen=True)
class AuthError:
    """A classified, caller-safe failure.

    retry_after is set only for THROTTLED. missing holds the permissions an
    RBAC check lacked; it is used for audit detail, not echoed to clients.
    """

    kind: AuthErrorKind
    retry_after: int | None = None
    missing: frozenset[str] = frozenset()

    @property
    def message(self) -> str:
        return _MESSAGES[self.kind]


class ConflictError(Exception):
    """A user with the same username or email already exists."""

    def __init__(self, field: str) -> None:
        super().__init__(f"A user with that {field} already exists.")
        self.field = field


class StorageUnavailable(Exception):
    """A persistence dependency errored or exceeded its timeout."""
