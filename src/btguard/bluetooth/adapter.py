"""
Bluetooth adapter collaborator.

Typed capability surface the engine needs from the host OS wireless
stack. Platform bindings subclass BluetoothAdapter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator


@dataclass(frozen=True)
class PairingNotification:
    """
    Raw pairing-request notification as delivered by the OS.

    The identity may be missing on malformed events; the display name
    is untrusted and often absent.
    """

    identity: str | None
    display_name: str | None = None
    received_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PairingNotification:
        """Create from a dictionary (scripts, API payloads)."""
        return cls(
            identity=data.get("identity") or data.get("address"),
            display_name=data.get("name") or data.get("display_name"),
        )


class BluetoothAdapter(ABC):
    """
    Host wireless stack operations used by the engine.

    Implementations may deliver notifications from their own thread;
    the engine serializes them through its inbox.
    """

    @abstractmethod
    def has_connect_permission(self) -> bool:
        """Whether the process may read device identities and cancel bonds."""

    @abstractmethod
    def list_bonded(self) -> dict[str, str | None]:
        """Currently bonded devices as identity -> display name."""

    @abstractmethod
    def cancel_bonding(self, identity: str) -> bool:
        """
        Cancel an in-progress bonding with a peer.

        Returns False (or raises) when the OS refuses.
        """

    @abstractmethod
    def notifications(self) -> AsyncIterator[PairingNotification]:
        """Async stream of pairing-request notifications."""

    def stop(self) -> None:
        """Release OS resources. Default: nothing to release."""
