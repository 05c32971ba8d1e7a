"""
Policy data models.

Defines device classifications, classifier actions, prompt decisions
and the transient pairing attempt value object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Hardware address of a remote peer. Opaque: only compared for equality.
DeviceIdentity = str

UNKNOWN_DEVICE_NAME = "Unknown device"


class Classification(Enum):
    """Policy classification of a device identity."""

    UNCLASSIFIED = "unclassified"
    TRUSTED = "trusted"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value


class Action(Enum):
    """Outcome of classifying a pairing attempt."""

    ALLOW = "allow"
    REJECT = "reject"
    DEFER = "defer"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Allow and Reject resolve an attempt without a prompt."""
        return self is not Action.DEFER


class Decision(Enum):
    """Answer to a deferred pairing attempt."""

    ADD_TRUSTED = "add_trusted"
    ADD_BLOCKED_AND_REJECT = "add_blocked_and_reject"
    IGNORE = "ignore"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> Decision | None:
        """Parse a decision from its value or a short alias."""
        aliases = {
            "trust": cls.ADD_TRUSTED,
            "trusted": cls.ADD_TRUSTED,
            "block": cls.ADD_BLOCKED_AND_REJECT,
            "blocked": cls.ADD_BLOCKED_AND_REJECT,
            "reject": cls.ADD_BLOCKED_AND_REJECT,
            "ignore": cls.IGNORE,
        }
        key = name.strip().lower().replace("-", "_")
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            return None


def normalize_identity(identity: Any) -> DeviceIdentity | None:
    """
    Normalize a raw identity value from the OS.

    Returns None when no usable identity is present.
    """
    if identity is None:
        return None
    if not isinstance(identity, str):
        return None
    identity = identity.strip()
    return identity or None


@dataclass(frozen=True)
class PairingAttempt:
    """
    A single pairing request reported by the OS.

    Created when a notification is received and discarded once a
    terminal action has been applied. Never persisted.
    """

    identity: DeviceIdentity
    display_name: str | None = None
    sequence: int = 0
    received_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    verified: bool = True

    @property
    def label(self) -> str:
        """Name for logs; the display name is untrusted and may be empty."""
        return f"{self.display_name or UNKNOWN_DEVICE_NAME} ({self.identity})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "display_name": self.display_name,
            "sequence": self.sequence,
            "received_at": self.received_at.isoformat(),
            "verified": self.verified,
        }


@dataclass(frozen=True)
class DeviceEntry:
    """Read-only projection of a classified device for presentation."""

    identity: DeviceIdentity
    name: str
    classification: Classification
    is_connected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "name": self.name,
            "classification": self.classification.value,
            "is_connected": self.is_connected,
        }


@dataclass(frozen=True)
class PolicyState:
    """Trusted and blocked identity sets as loaded from storage."""

    trusted: frozenset[DeviceIdentity] = frozenset()
    blocked: frozenset[DeviceIdentity] = frozenset()

    def overlap(self) -> frozenset[DeviceIdentity]:
        return self.trusted & self.blocked

    @property
    def is_empty(self) -> bool:
        return not self.trusted and not self.blocked
