"""
Tests for the append-only audit log.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DatabaseError

from btguard.audit.database import AuditLog
from btguard.audit.models import AuditEventType


class TestAuditLog:
    """Tests for AuditLog class."""

    def test_create_log(self, temp_dir: Path) -> None:
        """Test audit database creation."""
        db_path = temp_dir / "logs" / "audit.db"
        audit = AuditLog(db_path)

        assert db_path.exists()
        audit.close()

    def test_reopen_existing(self, temp_dir: Path) -> None:
        """Test triggers are not recreated on an existing database."""
        db_path = temp_dir / "audit.db"
        AuditLog(db_path).close()

        audit = AuditLog(db_path)
        audit.log_event(AuditEventType.ALLOWED, "AA")
        assert audit.count_events() == 1
        audit.close()

    def test_log_event(self, audit_log: AuditLog) -> None:
        """Test appending an event."""
        event = audit_log.log_event(
            event_type=AuditEventType.REJECTED,
            identity="AA:BB",
            display_name="Speaker",
            action="reject",
        )

        assert event.id is not None
        assert event.event_type == "rejected"
        assert event.identity == "AA:BB"
        assert event.action == "reject"

    def test_log_event_string_type(self, audit_log: AuditLog) -> None:
        """Test event type may be given as a string."""
        event = audit_log.log_event("ignored", "AA:BB")
        assert event.event_type == "ignored"

    def test_get_events_newest_first(self, audit_log: AuditLog) -> None:
        """Test events are returned newest first."""
        audit_log.log_event(AuditEventType.DEFERRED, "AA")
        audit_log.log_event(AuditEventType.TRUSTED, "AA")

        events = audit_log.get_events()
        assert [e.event_type for e in events] == ["trusted", "deferred"]

    def test_get_events_filtered(self, audit_log: AuditLog) -> None:
        """Test filtering by identity and type."""
        audit_log.log_event(AuditEventType.ALLOWED, "AA")
        audit_log.log_event(AuditEventType.REJECTED, "BB")
        audit_log.log_event(AuditEventType.ALLOWED, "BB")

        assert len(audit_log.get_events(identity="BB")) == 2
        assert len(audit_log.get_events(event_type=AuditEventType.ALLOWED)) == 2
        assert len(audit_log.get_events(identity="BB", event_type="rejected")) == 1

    def test_get_events_since(self, audit_log: AuditLog) -> None:
        """Test filtering by time."""
        audit_log.log_event(AuditEventType.ALLOWED, "AA")

        future = datetime.now(timezone.utc) + timedelta(hours=1)
        assert audit_log.get_events(since=future) == []

    def test_get_events_limit(self, audit_log: AuditLog) -> None:
        """Test result limit."""
        for _ in range(5):
            audit_log.log_event(AuditEventType.ALLOWED, "AA")

        assert len(audit_log.get_events(limit=3)) == 3
        assert audit_log.count_events(identity="AA") == 5

    def test_event_to_dict(self, audit_log: AuditLog) -> None:
        """Test event serialization."""
        event = audit_log.log_event(AuditEventType.BLOCKED, "AA", decision="add_blocked_and_reject")

        data = event.to_dict()
        assert data["event_type"] == "blocked"
        assert data["decision"] == "add_blocked_and_reject"
        assert data["timestamp"] is not None


class TestAppendOnly:
    """Tests for append-only enforcement."""

    def test_update_rejected(self, audit_log: AuditLog) -> None:
        """Test UPDATE is aborted by trigger."""
        audit_log.log_event(AuditEventType.ALLOWED, "AA")

        with pytest.raises(DatabaseError):
            with audit_log.engine.connect() as conn:
                conn.execute(text("UPDATE audit_events SET identity = 'BB'"))
                conn.commit()

        assert audit_log.get_events()[0].identity == "AA"

    def test_delete_rejected(self, audit_log: AuditLog) -> None:
        """Test DELETE is aborted by trigger."""
        audit_log.log_event(AuditEventType.ALLOWED, "AA")

        with pytest.raises(DatabaseError):
            with audit_log.engine.connect() as conn:
                conn.execute(text("DELETE FROM audit_events"))
                conn.commit()

        assert audit_log.count_events() == 1
