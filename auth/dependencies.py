"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential carriers are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients. The token may be a
     JWT access token or an opaque session token.
  2. Session cookie (Settings.session_cookie_name) -- browsers, set by
     POST /auth/login.

Both converge on a Principal via AuthService.authorize_request(), so the
cookie and header paths apply exactly the same checks.

get_principal() raises HTTP 401/403/503 when the caller is not authorized.
require_permissions(...) builds a dependency that also runs the RBAC check.

Layer rule: auth/dependencies.py may import from fastapi (for HTTPException and
Request) because this module is part of the FastAPI dependency injection
system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError, AuthErrorKind
from auth.models import ClientMeta, Principal
from auth.service import AuthService

_STATUS = {
    AuthErrorKind.INVALID_CREDENTIALS: 401,
    AuthErrorKind.INACTIVE_ACCOUNT: 403,
    AuthErrorKind.THROTTLED: 429,
    AuthErrorKind.TOKEN_EXPIRED: 401,
    AuthErrorKind.TOKEN_INVALID: 401,
    AuthErrorKind.PERMISSION_DENIED: 403,
    AuthErrorKind.STORAGE_UNAVAILABLE: 503,
}


def status_for(error: AuthError) -> int:
    return _STATUS[error.kind]


def http_error(error: AuthError) -> HTTPException:
    """Translate an AuthError into the HTTPException the API returns.

    The body is always {"message": ...}; throttling adds retryAfterSeconds and
    a Retry-After header. Nothing else about the failure is exposed.
    """
    detail: dict = {"message": error.message}
    headers: dict[str, str] = {"Cache-Control": "no-store"}
    if error.kind is AuthErrorKind.THROTTLED:
        detail["retryAfterSeconds"] = error.retry_after or 1
        headers["Retry-After"] = str(error.retry_after or 1)
    if error.kind in (AuthErrorKind.TOKEN_INVALID, AuthErrorKind.TOKEN_EXPIRED):
        headers["WWW-Authenticate"] = "Bearer"
    return HTTPException(status_code=status_for(error), detail=detail, headers=headers)


def get_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def client_meta(request: Request) -> ClientMeta:
    """Capture caller IP and user agent for sessions and audit records."""
    return ClientMeta(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def extract_token(request: Request) -> str | None:
    """Return the bearer token, else the session cookie, else None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    cookie_name = request.app.state.settings.session_cookie_name
    return request.cookies.get(cookie_name) or None


def get_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 (or 403/503) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_principal)): ...
    """
    result = get_service(request).current_user(extract_token(request), client_meta(request))
    if not result.ok:
        raise http_error(result.error)
    return result.principal


def require_permissions(*permissions: str) -> Callable[[Request], Principal]:
    """Build a dependency that requires every listed permission.

    Use as a FastAPI dependency:
        @router.get("/audit")
        def route(principal: Principal = Depends(require_permissions("audit:read"))): ...
    """

    def dependency(request: Request) -> Principal:
        result = get_service(request).authorize_request(extract_token(request), permissions, client_meta(request))
        if not result.ok:
            raise http_error(result.error)
        return result.principal

    return dependency
