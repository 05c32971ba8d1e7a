"""
Audit Log Operations.

Append-only recording and querying of pairing decisions.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, func, text
from sqlalchemy.orm import Session, sessionmaker

from btguard.audit.models import APPEND_ONLY_TRIGGERS, AuditEvent, AuditEventType, Base


logger = logging.getLogger(__name__)


class AuditLog:
    """
    High-level interface to the audit log.

    Rows can only be inserted; SQLite triggers reject updates and deletes.
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
    ) -> None:
        """
        Initialize the audit log.

        Args:
            db_path: Path to SQLite database file
            wal_mode: Enable WAL mode for better concurrency
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            pool_pre_ping=True,
        )
        self.Session = sessionmaker(bind=self.engine)
        self._init_schema()

        if wal_mode:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

    def _init_schema(self) -> None:
        """Initialize schema and append-only triggers."""
        Base.metadata.create_all(self.engine)

        with self.engine.connect() as conn:
            for statement in APPEND_ONLY_TRIGGERS:
                conn.execute(text(statement))
            conn.commit()

        logger.debug("Audit schema initialized: %s", self.db_path)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get a database session context manager."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def log_event(
        self,
        event_type: AuditEventType | str,
        identity: str | None = None,
        display_name: str | None = None,
        action: str | None = None,
        decision: str | None = None,
        detail: str | None = None,
    ) -> AuditEvent:
        """
        Append an event to the log.

        Args:
            event_type: Kind of event
            identity: Device hardware address, if known
            display_name: Untrusted device name as reported
            action: Classifier action, if any
            decision: Prompt decision, if any
            detail: Free-form detail (error messages, previous state)

        Returns:
            The stored AuditEvent
        """
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value

        with self.session() as session:
            event = AuditEvent(
                event_type=event_type,
                identity=identity,
                display_name=display_name,
                action=action,
                decision=decision,
                detail=detail,
            )
            session.add(event)
            session.commit()
            session.refresh(event)
            session.expunge(event)

        logger.debug("Audit: %s %s", event_type, identity or "-")
        return event

    def get_events(
        self,
        identity: str | None = None,
        event_type: AuditEventType | str | None = None,
        since: datetime | None = None,
        limit: int | None = 50,
    ) -> list[AuditEvent]:
        """
        Query events, newest first.

        Args:
            identity: Filter by device identity
            event_type: Filter by event type
            since: Only events at or after this time
            limit: Maximum number of results

        Returns:
            List of events
        """
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value

        with self.session() as session:
            query = session.query(AuditEvent)
            if identity is not None:
                query = query.filter(AuditEvent.identity == identity)
            if event_type is not None:
                query = query.filter(AuditEvent.event_type == event_type)
            if since is not None:
                query = query.filter(AuditEvent.timestamp >= since)

            query = query.order_by(AuditEvent.id.desc())
            if limit:
                query = query.limit(limit)

            events = query.all()
            for e in events:
                session.expunge(e)
            return events

    def count_events(
        self,
        identity: str | None = None,
        event_type: AuditEventType | str | None = None,
    ) -> int:
        """Count events matching the filters."""
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value

        with self.session() as session:
            query = session.query(func.count(AuditEvent.id))
            if identity is not None:
                query = query.filter(AuditEvent.identity == identity)
            if event_type is not None:
                query = query.filter(AuditEvent.event_type == event_type)
            return query.scalar()

    def close(self) -> None:
        """Dispose of the connection pool."""
        self.engine.dispose()
