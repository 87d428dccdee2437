"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /auth/login     -- password login; returns token pair, sets session cookie
  POST /auth/refresh   -- rotate refresh token, returns a new token pair
  POST /auth/logout    -- invalidate session (idempotent); clears cookie
  GET  /auth/me        -- current principal (requires auth)
  POST /auth/register  -- self-registration (if enabled)
  POST /auth/password  -- change password; ends every session (requires auth)
  GET  /auth/audit     -- recent audit events (requires audit:read)

Security:
  [H1] POST /login is flood-limited per IP by slowapi and throttled per
       (identifier, ip) by AuthService. The two limits are independent.
  [H2] All credential failures return the same 401 body. Nothing in a
       response distinguishes an unknown user from a wrong password.
  [H3] Cache-Control: no-store on every response carrying tokens.
  [H4] The session cookie is HttpOnly and SameSite=Strict; Secure when
       SECURE_COOKIES=true.

Handlers are sync functions: FastAPI runs them in its thread pool, and
AuthService blocks on its own bounded worker pools.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_http_limit
from api.models import (
    AuditEventResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from auth.dependencies import client_meta, extract_token, get_principal, get_service, http_error, require_permissions
from auth.errors import AuthError, AuthErrorKind, ConflictError
from auth.models import AuthResult, Principal, User
from core.clock import to_iso
from core.config import Settings

# Auth policy:
# - POST /auth/login, /auth/refresh, /auth/logout, /auth/register: public
# - GET  /auth/me, POST /auth/password: requires auth (get_principal)
# - GET  /auth/audit: requires audit:read (require_permissions)
router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [H3]
    return resp


def _token_response(result: AuthResult) -> JSONResponse:
    pair = result.tokens
    body = TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )
    return _no_store(JSONResponse(status_code=200, content=body.model_dump(by_alias=True)))


def _set_session_cookie(resp: JSONResponse, settings: Settings, token: str) -> None:
    resp.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
        path="/",
    )


def _clear_session_cookie(resp: JSONResponse, settings: Settings) -> None:
    resp.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def _user_to_response(user: User) -> MeResponse:
    return MeResponse(id=user.id, username=user.username, roles=sorted(user.roles))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_http_limit)  # [H1] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identifier (username or email) and password."""
    result = get_service(request).login(body.identifier, body.password, client_meta(request))
    if not result.ok:
        raise http_error(result.error)  # [H2]
    resp = _token_response(result)
    _set_session_cookie(resp, _settings(request), result.session_token)
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent."""
    result = get_service(request).refresh(body.refresh_token, client_meta(request))
    if not result.ok:
        if result.error.kind is AuthErrorKind.STORAGE_UNAVAILABLE:
            raise http_error(result.error)
        # Every other refresh failure looks the same to the client.
        raise http_error(AuthError(AuthErrorKind.TOKEN_INVALID))
    return _token_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Invalidate the caller's session. Always 200 for a well-formed request."""
    token = extract_token(request)
    if token is None:
        raise HTTPException(status_code=400, detail={"message": "Missing session or bearer token"})
    result = get_service(request).logout(token, client_meta(request))
    if not result.ok:
        raise http_error(result.error)
    resp = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    _clear_session_cookie(resp, _settings(request))
    return _no_store(resp)


@router.post("/auth/register", response_model=MeResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account with the configured default roles."""
    settings = _settings(request)
    if not settings.self_registration_enabled:
        raise HTTPException(status_code=403, detail={"message": "Registration is disabled"})
    try:
        user = get_service(request).register(
            body.username,
            body.email,
            body.password,
            roles=settings.default_roles,
            client=client_meta(request),
        )
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
    return JSONResponse(status_code=201, content=_user_to_response(user).model_dump())


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_principal)) -> MeResponse:
    """Return identity information for the authenticated caller.

    roles are the roles the request was authorized with: live for session
    tokens, the issue-time snapshot for access tokens.
    """
    return MeResponse(id=principal.user.id, username=principal.user.username, roles=principal.role_names)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal),
) -> JSONResponse:
    """Change the caller's password. Every session, this one included, ends."""
    result = get_service(request).change_password(
        principal.user.id, body.current_password, body.new_password, client_meta(request)
    )
    if not result.ok:
        raise http_error(result.error)
    resp = JSONResponse(content=MessageResponse(message="Password changed").model_dump())
    _clear_session_cookie(resp, _settings(request))
    return _no_store(resp)


@router.get("/auth/audit", response_model=list[AuditEventResponse])
def audit_events(
    request: Request,
    user_id: int | None = None,
    limit: int = 100,
    principal: Principal = Depends(require_permissions("audit:read")),
) -> JSONResponse:
    """Return recent audit events, newest first."""
    limit = max(1, min(limit, 500))
    events = get_service(request).recent_audit_events(user_id=user_id, limit=limit)
    body = [
        AuditEventResponse(
            id=e.id,
            event_type=e.event_type.value,
            user_id=e.user_id,
            timestamp=to_iso(e.timestamp),
            ip=e.client.ip,
            user_agent=e.client.user_agent,
            detail=e.detail,
        ).model_dump(by_alias=True)
        for e in events
    ]
    return JSONResponse(content=body)
