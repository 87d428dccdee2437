"""
auth/store.py -- SQLAlchemy Core persistence layer for users and roles.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_role are the mappers. Service and route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The password hash column is only ever read by get_password_hash(). Every
  other query selects an explicit column list that omits it, so a User object
  can be logged or serialized without leaking the hash.

  Username and email uniqueness are UNIQUE constraints, so two concurrent
  registrations for the same name cannot both succeed. Emails are stored
  lowercased; usernames are case-sensitive.

  credential_version is bumped in the same UPDATE that replaces the hash
  (rotate_password_hash) or deactivates the account. get_credentials() reads
  hash and version in one SELECT, so a login always knows which version its
  password check was made against.

Users are never deleted. Deactivation flips is_active.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import _metadata, make_engine, storage_errors
from auth.errors import ConflictError
from auth.models import Role, User
from core.clock import Clock, SystemClock

logger = logging.getLogger("authcore.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(150), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", Float, nullable=False),
    Column("last_login", Float),
    Column("credential_version", Integer, nullable=False, default=0),
)

_roles = Table(
    "roles",
    _metadata,
    Column("name", String(64), primary_key=True),
    Column("permissions", Text, nullable=False, default="[]"),  # JSON list of strings
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    # No FK to roles.name: a role may be assigned before it is defined, and an
    # undefined role simply grants nothing.
    Column("role_name", String(64), primary_key=True),
)

# Public columns -- everything except hashed_password.
_USER_COLUMNS = [c for c in _users.c if c.name != "hashed_password"]


class UserStore:
    """Repository for User and Role entities.

    Usage:
        store = UserStore("sqlite:///authcore.db")
        uid = store.create_user(User(username="alice", email="a@example.com"), hasher.hash("pw"))
        user = store.find_by_username_or_email("alice")
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock | None = None, timeout: float = 5.0) -> None:
        self.clock = clock or SystemClock()
        self.engine: Engine = make_engine(db_url, timeout=timeout)
        _metadata.create_all(self.engine, tables=[_users, _roles, _user_roles])

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with storage_errors("has_users"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User, password_hash: str) -> int:
        """Insert a new user with its role assignments and return the new ID.

        Raises ConflictError if the username or email is already taken. The
        UNIQUE constraints decide, so the check is race-free.
        """
        try:
            with storage_errors("create_user"), self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email.lower(),
                        hashed_password=password_hash,
                        is_active=user.is_active,
                        created_at=self.clock.now(),
                    )
                )
                user_id = result.inserted_primary_key[0]
                for role_name in sorted(user.roles):
                    conn.execute(_user_roles.insert().values(user_id=user_id, role_name=role_name))
        except IntegrityError as exc:
            field = "email" if "email" in str(exc.orig).lower() else "username"
            raise ConflictError(field) from None
        logger.info("Created user id=%s", user_id)
        return user_id

    def find_by_username_or_email(self, identifier: str) -> User | None:
        """Look up a user by exact username or case-insensitive email."""
        with storage_errors("find_by_username_or_email"), self.engine.connect() as conn:
            row = conn.execute(
                select(*_USER_COLUMNS).where(
                    or_(_users.c.username == identifier, _users.c.email == identifier.lower())
                )
            ).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._role_names(conn, row.id))

    def get_by_id(self, user_id: int) -> User | None:
        with storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(select(*_USER_COLUMNS).where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._role_names(conn, row.id))

    def get_password_hash(self, user_id: int) -> str | None:
        """Return the stored hash record. Only for PasswordHasher.verify()."""
        with storage_errors("get_password_hash"), self.engine.connect() as conn:
            return conn.execute(select(_users.c.hashed_password).where(_users.c.id == user_id)).scalar()

    def get_credentials(self, user_id: int) -> tuple[str, int] | None:
        """Return (hash, credential_version) read together, or None if no such user."""
        with storage_errors("get_credentials"), self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.hashed_password, _users.c.credential_version).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            return None
        return row.hashed_password, row.credential_version

    def update_password_hash(self, user_id: int, password_hash: str, expected_version: int | None = None) -> bool:
        """Replace the hash without touching credential_version (cost upgrades).

        With expected_version set, the write only lands if the version is
        unchanged, so an upgrade never overwrites a newer password.
        """
        condition = _users.c.id == user_id
        if expected_version is not None:
            condition = and_(condition, _users.c.credential_version == expected_version)
        with storage_errors("update_password_hash"), self.engine.begin() as conn:
            result = conn.execute(_users.update().where(condition).values(hashed_password=password_hash))
        return result.rowcount > 0

    def rotate_password_hash(self, user_id: int, password_hash: str) -> bool:
        """Store a new password hash and bump credential_version atomically."""
        with storage_errors("rotate_password_hash"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=password_hash, credential_version=_users.c.credential_version + 1)
            )
        return result.rowcount > 0

    def set_active(self, user_id: int, active: bool) -> bool:
        """Activate or soft-deactivate a user. Returns False if not found.

        Deactivation bumps credential_version, so sessions from before it stay
        dead after a later reactivation.
        """
        values = {"is_active": active}
        if not active:
            values["credential_version"] = _users.c.credential_version + 1
        with storage_errors("set_active"), self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def record_login(self, user_id: int, timestamp: float) -> None:
        with storage_errors("record_login"), self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=timestamp))

    def set_roles(self, user_id: int, role_names: set[str] | frozenset[str]) -> None:
        """Replace a user's role assignments in one transaction."""
        with storage_errors("set_roles"), self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            for role_name in sorted(role_names):
                conn.execute(_user_roles.insert().values(user_id=user_id, role_name=role_name))

    # ------------------------------------------------------------------
    # Role queries
    # ------------------------------------------------------------------

    def upsert_role(self, role: Role) -> None:
        """Create a role or replace its permission set."""
        permissions = json.dumps(sorted(role.permissions))
        with storage_errors("upsert_role"), self.engine.begin() as conn:
            result = conn.execute(
                _roles.update().where(_roles.c.name == role.name).values(permissions=permissions)
            )
            if result.rowcount == 0:
                conn.execute(_roles.insert().values(name=role.name, permissions=permissions))

    def get_roles(self, names: set[str] | frozenset[str]) -> list[Role]:
        """Return Role records for the given names. Unknown names are skipped."""
        if not names:
            return []
        with storage_errors("get_roles"), self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.name.in_(sorted(names)))).fetchall()
        return [_row_to_role(r) for r in rows]

    def list_roles(self) -> list[Role]:
        with storage_errors("list_roles"), self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def _role_names(self, conn, user_id: int) -> frozenset[str]:
        rows = conn.execute(select(_user_roles.c.role_name).where(_user_roles.c.user_id == user_id)).fetchall()
        return frozenset(r.role_name for r in rows)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: frozenset[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        roles=roles,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
        credential_version=row.credential_version,
    )


def _row_to_role(row) -> Role:
    return Role(name=row.name, permissions=frozenset(json.loads(row.permissions or "[]")))
