"""
auth/sessions.py -- Server-side sessions and refresh-token records.

Pattern: Repository (same shape as auth/store.py), two tables:

  sessions        one row per login. Keyed by HMAC-SHA256(secret, token); the
                  raw token only ever exists in the client's hands.
  refresh_tokens  one row per issued refresh token (keyed by its jti claim).
                  This is what makes refresh tokens revocable before expiry.

Expiry is checked at read time against the injected clock: a row with
now >= expires_at is treated as absent whether or not sweep_expired() has run.
The sweep only reclaims storage.

Every write commits before returning, so an invalidate() is visible to the
next get() from any thread (read-your-writes). Invalidating a session revokes
its refresh records in the same transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading

from sqlalchemy import Boolean, Column, Float, Integer, String, Table, and_, or_, select
from sqlalchemy.engine import Engine

from auth.db import _metadata, make_engine, storage_errors
from auth.models import ClientMeta, RefreshRecord, Session
from core.clock import Clock, SystemClock

logger = logging.getLogger("authcore.auth.sessions")

# 32 random bytes -> 256 bits of entropy, URL-safe base64 (43 chars).
_TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),  # HMAC-SHA256 hex of the token
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
    Column("ip", String(45)),
    Column("user_agent", String(512)),
    Column("is_valid", Boolean, nullable=False, default=True),
    Column("refresh_jti", String(64)),
    Column("credential_version", Integer, nullable=False, default=0),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("revoked", Boolean, nullable=False, default=False),
    Column("replaced_by", String(64)),
)


class SessionStore:
    """Repository for Session and RefreshRecord entities.

    digest_key keys the HMAC applied to session tokens before storage. Use the
    current signing secret; rotating it logs every session out, which is the
    expected outcome of a key compromise.
    """

    def __init__(
        self,
        db_url: str,
        digest_key: str,
        clock: Clock | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.clock = clock or SystemClock()
        self._digest_key = digest_key.encode("utf-8")
        # Serializes create() against invalidate_all_for_user() so a mass
        # invalidation cannot interleave with a half-written session.
        self._lock = threading.Lock()
        self.engine: Engine = make_engine(db_url, timeout=timeout)
        _metadata.create_all(self.engine, tables=[_sessions, _refresh_tokens])

    def session_id_for(self, token: str) -> str:
        """Return the storage key for a raw session token."""
        return hmac.new(self._digest_key, token.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create(self, user_id: int, meta: ClientMeta, ttl: int, credential_version: int = 0) -> tuple[str, Session]:
        """Create a session and return (raw token, Session).

        The raw token is returned exactly once; only its digest is stored.
        credential_version is the user's version the login was checked
        against; readers compare it with the user's current one.
        """
        token = secrets.token_urlsafe(_TOKEN_BYTES)
        now = self.clock.now()
        session = Session(
            id=self.session_id_for(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            ip=meta.ip,
            user_agent=(meta.user_agent or "")[:512] or None,
            credential_version=credential_version,
        )
        with self._lock, storage_errors("session.create"), self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    ip=session.ip,
                    user_agent=session.user_agent,
                    is_valid=True,
                    credential_version=session.credential_version,
                )
            )
        return token, session

    def get(self, token: str) -> Session | None:
        """Return the live session for token, or None if unknown, invalid or expired."""
        return self.get_by_id(self.session_id_for(token))

    def get_by_id(self, session_id: str) -> Session | None:
        with storage_errors("session.get"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None or not row.is_valid:
            return None
        if self.clock.now() >= row.expires_at:
            return None
        return _row_to_session(row)

    def invalidate(self, token: str) -> bool:
        """Invalidate a session by raw token. Returns False if it was already gone."""
        return self.invalidate_by_id(self.session_id_for(token))

    def invalidate_by_id(self, session_id: str) -> bool:
        with storage_errors("session.invalidate"), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.id == session_id, _sessions.c.is_valid.is_(True)))
                .values(is_valid=False)
            )
            conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.session_id == session_id, _refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
        return result.rowcount > 0

    def invalidate_all_for_user(self, user_id: int) -> int:
        """Invalidate every session (and refresh record) of a user. Returns the session count."""
        with self._lock, storage_errors("session.invalidate_all"), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.is_valid.is_(True)))
                .values(is_valid=False)
            )
            conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.user_id == user_id, _refresh_tokens.c.revoked.is_(False)))
                .values(revoked=True)
            )
        logger.info("Invalidated %d session(s) for user id=%s", result.rowcount, user_id)
        return result.rowcount

    def sweep_expired(self) -> int:
        """Delete expired or invalidated sessions and their refresh records.

        Returns the number of session rows removed. Safe to run at any cadence;
        correctness never depends on it.
        """
        now = self.clock.now()
        with storage_errors("session.sweep"), self.engine.begin() as conn:
            dead = or_(_sessions.c.expires_at <= now, _sessions.c.is_valid.is_(False))
            dead_ids = [r.id for r in conn.execute(select(_sessions.c.id).where(dead)).fetchall()]
            if dead_ids:
                conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.session_id.in_(dead_ids)))
                conn.execute(_sessions.delete().where(_sessions.c.id.in_(dead_ids)))
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now))
        if dead_ids:
            logger.info("Swept %d dead session(s)", len(dead_ids))
        return len(dead_ids)

    # ------------------------------------------------------------------
    # Refresh-token records
    # ------------------------------------------------------------------

    def create_refresh_record(self, record: RefreshRecord) -> None:
        """Persist a refresh record and bind it to its session as the current one."""
        with storage_errors("refresh.create"), self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    jti=record.jti,
                    user_id=record.user_id,
                    session_id=record.session_id,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                    revoked=False,
                )
            )
            conn.execute(
                _sessions.update().where(_sessions.c.id == record.session_id).values(refresh_jti=record.jti)
            )

    def get_refresh_record(self, jti: str) -> RefreshRecord | None:
        with storage_errors("refresh.get"), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def consume_refresh_record(self, jti: str, replaced_by: str | None = None) -> bool:
        """Atomically mark a live refresh record as used.

        Compare-and-set on revoked=False: when two requests race with the same
        refresh token, exactly one sees True.
        """
        now = self.clock.now()
        with storage_errors("refresh.consume"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    and_(
                        _refresh_tokens.c.jti == jti,
                        _refresh_tokens.c.revoked.is_(False),
                        _refresh_tokens.c.expires_at > now,
                    )
                )
                .values(revoked=True, replaced_by=replaced_by)
            )
        return result.rowcount == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        ip=row.ip,
        user_agent=row.user_agent,
        is_valid=bool(row.is_valid),
        refresh_jti=row.refresh_jti,
        credential_version=row.credential_version,
    )


def _row_to_refresh(row) -> RefreshRecord:
    return RefreshRecord(
        jti=row.jti,
        user_id=row.user_id,
        session_id=row.session_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        replaced_by=row.replaced_by,
    )
