"""
API request and response models for the authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire names are camelCase (accessToken, retryAfterSeconds, ...). Python names
stay snake_case; serialization_alias / alias bridge the two, and responses are
always dumped with by_alias=True.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from auth.models import EMAIL_PATTERN
from auth.passwords import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,150}$"


def _check_password_bytes(value: str) -> str:
    """Reject passwords bcrypt would silently truncate."""
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return value


# Annotated type applied to every password a client chooses (not to login input).
_NewPassword = Annotated[str, Field(min_length=8), AfterValidator(_check_password_bytes)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login. identifier is a username or email."""

    identifier: str = Field(min_length=1, max_length=255)
    # Not length-checked against bcrypt here: a too-long password is simply
    # wrong, and must fail the same way as any other wrong password.
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken", min_length=1, max_length=4096)


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register. Roles are assigned server-side."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: _NewPassword


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1, max_length=1024)
    new_password: _NewPassword = Field(alias="newPassword")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(serialization_alias="accessToken")
    refresh_token: str = Field(serialization_alias="refreshToken")
    expires_in: int = Field(serialization_alias="expiresIn")


class MeResponse(BaseModel):
    """Response for GET /auth/me and POST /auth/register."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    roles: list[str]


class MessageResponse(BaseModel):
    """Body of every plain success message and every error response."""

    model_config = ConfigDict(frozen=True)

    message: str


class ThrottledResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    retry_after_seconds: int = Field(serialization_alias="retryAfterSeconds")


class ValidationErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    detail: Optional[str] = None


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event_type: str = Field(serialization_alias="eventType")
    user_id: Optional[int] = Field(default=None, serialization_alias="userId")
    timestamp: str
    ip: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, serialization_alias="userAgent")
    detail: dict = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
