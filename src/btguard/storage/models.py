"""
Preference storage models.

SQLAlchemy ORM model for durable key-value string sets.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for preference models."""

    pass


class Preference(Base):
    """
    A single namespaced preference value.

    String sets are stored as sorted JSON arrays in ``value`` so the
    stored representation is canonical.
    """

    __tablename__ = "preferences"
    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_preference_namespace_key"),
    )

    id = Column(Integer, primary_key=True)
    namespace = Column(String(128), nullable=False, index=True)
    key = Column(String(128), nullable=False)
    value = Column(Text, nullable=False, default="[]")
    updated_at = Column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<Preference {self.namespace}/{self.key}>"
