"""
auth/db.py -- Engine construction and error translation shared by the stores.

Every store (UserStore, SessionStore, AuditLogger) defines its tables on the
shared _metadata here and opens its own engine via make_engine(). Any
SQLAlchemy URL works; SQLite gets WAL mode and cross-thread connections,
server databases get a pre-ping pool so dead connections are replaced instead
of surfacing as errors mid-request.

storage_errors() is the single place where raw driver errors are turned into
StorageUnavailable. The full exception is logged here; callers only ever see
the generic type.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StorageUnavailable

logger = logging.getLogger("authcore.auth.db")

_metadata = MetaData()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create an engine for db_url with per-dialect connection settings.

    timeout bounds how long SQLite waits on a locked database (busy timeout)
    and how long a server database may take to accept a connection.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_wal_mode)
        return engine
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args={"connect_timeout": int(max(timeout, 1))},
    )


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver errors raised inside the block into StorageUnavailable.

    IntegrityError passes through untouched: stores turn it into a domain
    error (ConflictError) themselves.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise StorageUnavailable(operation) from exc
