"""Unit tests for auth/audit.py -- the audit trail.

Covers:
- record() persists events and list_events() returns newest first
- Filtering by user_id
- record() never raises, even when the database is gone
"""

import logging

from conftest import FrozenClock

from auth.audit import AuditLogger
from auth.models import AuditEvent, AuditEventType, ClientMeta


def test_record_and_list(tmp_path):
    audit = AuditLogger(f"sqlite:///{tmp_path / 'audit.db'}", clock=FrozenClock())
    audit.record(AuditEvent(AuditEventType.LOGIN_FAILURE, user_id=None, client=ClientMeta(ip="1.2.3.4")))
    audit.record(AuditEvent(AuditEventType.LOGIN_SUCCESS, user_id=1, detail={"session_id": "abc"}))
    audit.record(AuditEvent(AuditEventType.LOGOUT, user_id=2))

    events = audit.list_events()
    assert [e.event_type for e in events] == [
        AuditEventType.LOGOUT,
        AuditEventType.LOGIN_SUCCESS,
        AuditEventType.LOGIN_FAILURE,
    ]
    assert events[2].client.ip == "1.2.3.4"
    assert events[1].detail == {"session_id": "abc"}

    only_user_1 = audit.list_events(user_id=1)
    assert len(only_user_1) == 1
    assert only_user_1[0].event_type is AuditEventType.LOGIN_SUCCESS
    assert len(audit.list_events(limit=2)) == 2
    audit.close()


def test_record_never_raises(tmp_path, caplog):
    audit = AuditLogger(f"sqlite:///{tmp_path / 'audit.db'}", clock=FrozenClock())
    with audit.engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE audit_events")

    with caplog.at_level(logging.ERROR, logger="authcore.audit"):
        audit.record(AuditEvent(AuditEventType.LOGIN_SUCCESS, user_id=1))
    assert "Failed to write audit event" in caplog.text
    audit.close()
