"""
auth/audit.py -- Append-only audit trail of authentication events.

record() is best-effort: a failed write is logged (with traceback) on the
authcore.audit logger and then dropped. An audit outage must never turn a
valid login into an error, or an error into a different error.

Rows are only ever inserted. Retention and rotation belong to whoever operates
the database.

Never put secrets in detail: no passwords, no tokens, no hashes. The service
only passes identifiers and reason codes.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, Float, Integer, String, Table, Text
from sqlalchemy.engine import Engine

from auth.db import _metadata, make_engine, storage_errors
from auth.models import AuditEvent, AuditEventType, ClientMeta
from core.clock import Clock, SystemClock

logger = logging.getLogger("authcore.audit")

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(32), nullable=False, index=True),
    Column("user_id", Integer, index=True),
    Column("timestamp", Float, nullable=False, index=True),
    Column("ip", String(45)),
    Column("user_agent", String(512)),
    Column("detail", Text, nullable=False, default="{}"),
)


class AuditLogger:
    def __init__(self, db_url: str, clock: Clock | None = None, timeout: float = 5.0) -> None:
        self.clock = clock or SystemClock()
        self.engine: Engine = make_engine(db_url, timeout=timeout)
        _metadata.create_all(self.engine, tables=[_audit_events])

    def record(self, event: AuditEvent) -> None:
        """Append event. Never raises."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_events.insert().values(
                        event_type=event.event_type.value,
                        user_id=event.user_id,
                        timestamp=event.timestamp if event.timestamp is not None else self.clock.now(),
                        ip=event.client.ip,
                        user_agent=(event.client.user_agent or "")[:512] or None,
                        detail=json.dumps(event.detail, default=str, sort_keys=True),
                    )
                )
        except Exception:
            logger.exception("Failed to write audit event %s (user_id=%s)", event.event_type.value, event.user_id)
            return
        log = logger.warning if event.event_type in _NOTABLE else logger.info
        log("%s user_id=%s ip=%s", event.event_type.value, event.user_id, event.client.ip)

    def list_events(self, user_id: int | None = None, limit: int = 100) -> list[AuditEvent]:
        """Return the most recent events, newest first."""
        query = _audit_events.select().order_by(_audit_events.c.id.desc()).limit(limit)
        if user_id is not None:
            query = query.where(_audit_events.c.user_id == user_id)
        with storage_errors("audit.list"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


_NOTABLE = {AuditEventType.LOGIN_FAILURE, AuditEventType.PERMISSION_DENIED}


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=AuditEventType(row.event_type),
        user_id=row.user_id,
        timestamp=row.timestamp,
        client=ClientMeta(ip=row.ip, user_agent=row.user_agent),
        detail=json.loads(row.detail or "{}"),
    )
