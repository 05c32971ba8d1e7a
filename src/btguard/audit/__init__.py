"""
Audit System.

Append-only log of pairing decisions and policy changes.
"""

from btguard.audit.database import AuditLog
from btguard.audit.models import AuditEvent, AuditEventType, Base

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLog",
    "Base",
]
