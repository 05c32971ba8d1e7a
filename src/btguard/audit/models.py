"""
Audit log models.

SQLAlchemy ORM model for the append-only pairing decision log.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for audit models."""

    pass


class AuditEventType(str, Enum):
    """Event types recorded in the audit log."""

    ALLOWED = "allowed"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    TRUSTED = "trusted"
    BLOCKED = "blocked"
    IGNORED = "ignored"
    REMOVED = "removed"
    CANCEL_FAILED = "cancel_failed"
    MALFORMED = "malformed"
    SAVE_FAILED = "save_failed"


class AuditEvent(Base):
    """
    Audit log event.

    One row per decision or policy change. Append-only: no updates or
    deletes allowed.
    """

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=_utc_now, nullable=False, index=True)
    identity = Column(String(64), nullable=True, index=True)
    display_name = Column(String(256), nullable=True)
    event_type = Column(String(16), nullable=False)
    action = Column(String(16), nullable=True)
    decision = Column(String(32), nullable=True)
    detail = Column(Text, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "identity": self.identity,
            "display_name": self.display_name,
            "event_type": self.event_type,
            "action": self.action,
            "decision": self.decision,
            "detail": self.detail,
        }


# Append-only triggers, one complete statement each
APPEND_ONLY_TRIGGERS = (
    """CREATE TRIGGER IF NOT EXISTS no_delete_audit_events
BEFORE DELETE ON audit_events
BEGIN
    SELECT RAISE(ABORT, 'Deletion not permitted on audit log');
END""",
    """CREATE TRIGGER IF NOT EXISTS no_update_audit_events
BEFORE UPDATE ON audit_events
BEGIN
    SELECT RAISE(ABORT, 'Updates not permitted on audit log');
END""",
)
