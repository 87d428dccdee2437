"""
auth/tokens.py -- Signed access and refresh tokens (JWT, HS256).

Security design decisions:
  JWT: python-jose with HS256. Every token carries sub, typ, iat, nbf, exp,
       jti and (for session-bound tokens) sid. The header carries kid so the
       verifier knows which key to try -- exactly one, never "try them all".

  Expiry: python-jose's own time checks are switched off and the claims are
       checked here against the injected Clock, so the service has a single
       notion of "now". exp is strict (now >= exp is expired). iat and nbf get
       clock_skew_leeway seconds of tolerance for tokens minted on a node whose
       clock runs slightly ahead.

  Key rotation: KeyRing holds the current key and any retired keys. A retired
       key verifies tokens until retired_at + overlap, then its kid is unknown.
       New tokens are always signed with the current key.

  Refresh tokens: stateless signature check is not enough. verify() also looks
       up the server-side RefreshRecord and rejects revoked or missing records.

  Access tokens: signature and claims are verified statelessly. The role
       snapshot in the token lags a role change until expiry, so staleness
       is bounded by access_token_ttl_seconds. AuthService still checks the
       bound session on use, so a logout or password change applies at once.

Verification returns an AuthError instead of raising -- callers branch on the
result kind.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from jose import JWTError, jwt

from auth.errors import AuthError, AuthErrorKind
from auth.models import Claims, RefreshRecord, TokenType, User
from auth.sessions import SessionStore
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("authcore.auth.tokens")

_ALGORITHM = "HS256"

# Time claims are checked in _check_times() against the injected clock.
_DECODE_OPTIONS = {
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
    "verify_aud": False,
}

_REQUIRED_CLAIMS = ("sub", "typ", "iat", "exp", "jti")


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str
    retired_at: float | None = None


class KeyRing:
    """The current signing key plus retired keys still inside their overlap window."""

    def __init__(self, current: SigningKey, retired: list[SigningKey], overlap_seconds: int, clock: Clock) -> None:
        self.current = current
        self._retired = {k.kid: k for k in retired}
        self.overlap_seconds = overlap_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock) -> "KeyRing":
        return cls(
            current=SigningKey(kid=settings.secret_key_id, secret=settings.secret_key),
            retired=[SigningKey(kid=k.kid, secret=k.secret, retired_at=k.retired_at) for k in settings.previous_secret_keys],
            overlap_seconds=settings.key_overlap_seconds,
            clock=clock,
        )

    def rotate(self, new_key: SigningKey) -> None:
        """Make new_key current and retire the old one as of now."""
        old = self.current
        self._retired[old.kid] = SigningKey(kid=old.kid, secret=old.secret, retired_at=self.clock.now())
        self._retired.pop(new_key.kid, None)
        self.current = new_key
        logger.info("Signing key rotated: %s -> %s", old.kid, new_key.kid)

    def lookup(self, kid: str | None) -> SigningKey | None:
        """Return the key for kid if it may still verify tokens."""
        if kid == self.current.kid:
            return self.current
        key = self._retired.get(kid or "")
        if key is None or key.retired_at is None:
            return None
        if self.clock.now() >= key.retired_at + self.overlap_seconds:
            return None
        return key


class TokenService:
    """Issue and verify access/refresh tokens.

    Refresh tokens are recorded in the SessionStore's refresh_tokens table at
    issue time; verify() consults that table for every refresh token.
    """

    def __init__(self, settings: Settings, sessions: SessionStore, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.keys = KeyRing.from_settings(settings, self.clock)
        self.sessions = sessions
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds
        self.leeway = settings.clock_skew_leeway_seconds

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _encode(self, claims: Claims) -> str:
        payload = {
            "sub": str(claims.subject),
            "typ": claims.token_type.value,
            "iat": claims.issued_at,
            "nbf": claims.issued_at,
            "exp": claims.expires_at,
            "jti": claims.jti,
        }
        if claims.session_id:
            payload["sid"] = claims.session_id
        if claims.token_type is TokenType.ACCESS:
            payload["roles"] = sorted(claims.roles)
        key = self.keys.current
        return jwt.encode(payload, key.secret, algorithm=_ALGORITHM, headers={"kid": key.kid})

    def issue_access_token(self, user: User, roles: frozenset[str], session_id: str | None = None) -> tuple[str, Claims]:
        """Sign a short-lived access token carrying a snapshot of the user's roles."""
        now = int(self.clock.now())
        claims = Claims(
            subject=user.id,
            token_type=TokenType.ACCESS,
            issued_at=now,
            expires_at=now + self.access_ttl,
            jti=uuid.uuid4().hex,
            session_id=session_id,
            roles=frozenset(roles),
        )
        return self._encode(claims), claims

    def issue_refresh_token(
        self,
        user: User,
        session_id: str,
        expires_at: float | None = None,
        jti: str | None = None,
    ) -> tuple[str, str]:
        """Sign a refresh token, persist its server-side record, return (token, jti).

        expires_at caps the token at the owning session's expiry so a refresh
        token never outlives the session it belongs to. jti may be supplied by a
        caller that already recorded it as the replacement of a rotated token.
        """
        now = int(self.clock.now())
        exp = now + self.refresh_ttl
        if expires_at is not None:
            exp = min(exp, int(expires_at))
        claims = Claims(
            subject=user.id,
            token_type=TokenType.REFRESH,
            issued_at=now,
            expires_at=exp,
            jti=jti or uuid.uuid4().hex,
            session_id=session_id,
        )
        self.sessions.create_refresh_record(
            RefreshRecord(
                jti=claims.jti,
                user_id=user.id,
                session_id=session_id,
                issued_at=now,
                expires_at=exp,
            )
        )
        return self._encode(claims), claims.jti

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(
        self,
        token: str,
        expected_type: TokenType = TokenType.ACCESS,
        *,
        check_record: bool = True,
        allow_expired: bool = False,
    ) -> Claims | AuthError:
        """Return verified Claims, or an AuthError (TOKEN_EXPIRED / TOKEN_INVALID).

        check_record=False skips the refresh-record lookup for callers that
        inspect the record themselves (rotation). allow_expired=True accepts a
        correctly signed token past its exp; logout uses it to find the session
        behind an expired access token.

        May raise StorageUnavailable when checking a refresh record; the facade
        translates that.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        key = self.keys.lookup(header.get("kid"))
        if key is None:
            logger.info("Rejected token with unknown or expired key id")
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        try:
            payload = jwt.decode(token, key.secret, algorithms=[_ALGORITHM], options=_DECODE_OPTIONS)
        except JWTError:
            return AuthError(AuthErrorKind.TOKEN_INVALID)

        claims = _payload_to_claims(payload)
        if claims is None or claims.token_type is not expected_type:
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        error = self._check_times(claims, payload.get("nbf"))
        if error is not None and not (allow_expired and error.kind is AuthErrorKind.TOKEN_EXPIRED):
            return error

        if expected_type is TokenType.REFRESH and check_record:
            record = self.sessions.get_refresh_record(claims.jti)
            if record is None or record.user_id != claims.subject:
                return AuthError(AuthErrorKind.TOKEN_INVALID)
            if record.revoked:
                return AuthError(AuthErrorKind.TOKEN_INVALID)
            if self.clock.now() >= record.expires_at:
                return AuthError(AuthErrorKind.TOKEN_EXPIRED)
        return claims

    def _check_times(self, claims: Claims, nbf) -> AuthError | None:
        now = self.clock.now()
        if now >= claims.expires_at:
            return AuthError(AuthErrorKind.TOKEN_EXPIRED)
        if claims.issued_at > now + self.leeway:
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        if isinstance(nbf, (int, float)) and nbf > now + self.leeway:
            return AuthError(AuthErrorKind.TOKEN_INVALID)
        return None


def _payload_to_claims(payload: dict) -> Claims | None:
    if any(name not in payload for name in _REQUIRED_CLAIMS):
        return None
    try:
        return Claims(
            subject=int(payload["sub"]),
            token_type=TokenType(payload["typ"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            jti=str(payload["jti"]),
            session_id=payload.get("sid"),
            roles=frozenset(payload.get("roles", [])),
        )
    except (TypeError, ValueError):
        return None
