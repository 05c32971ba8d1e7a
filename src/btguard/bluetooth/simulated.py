"""
Simulated Bluetooth adapter.

Replays a scripted sequence of pairing requests. Used by the
``simulate`` CLI command and by tests in place of a host binding.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import yaml

from btguard.bluetooth.adapter import BluetoothAdapter, PairingNotification


logger = logging.getLogger(__name__)


class SimulatedAdapter(BluetoothAdapter):
    """
    In-process adapter driven by a script.

    Records every cancel request so callers can inspect what the engine
    asked the OS to do.
    """

    def __init__(
        self,
        bonded: dict[str, str | None] | None = None,
        permission: bool = True,
        events: Iterable[PairingNotification] = (),
        fail_cancel: Iterable[str] = (),
        delay: float = 0.0,
    ) -> None:
        """
        Initialize the simulated adapter.

        Args:
            bonded: Bonded devices as identity -> name
            permission: Whether connect permission is granted
            events: Scripted notifications, delivered in order
            fail_cancel: Identities whose cancel request fails
            delay: Seconds to wait between scripted notifications
        """
        self.bonded = dict(bonded or {})
        self.permission = permission
        self.events = list(events)
        self.fail_cancel = set(fail_cancel)
        self.delay = delay
        self.cancelled: list[str] = []
        self._queue: asyncio.Queue[PairingNotification | None] = asyncio.Queue()
        self._stopped = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimulatedAdapter:
        """Create from a parsed script."""
        events = [
            PairingNotification.from_dict(item)
            for item in data.get("events", []) or []
        ]
        return cls(
            bonded=data.get("bonded") or {},
            permission=data.get("permission", True),
            events=events,
            fail_cancel=data.get("fail_cancel") or [],
            delay=float(data.get("delay", 0.0)),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> SimulatedAdapter:
        """
        Load a YAML script.

        Raises:
            FileNotFoundError: If the script does not exist
            yaml.YAMLError: If the script is invalid YAML
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Simulation script not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def has_connect_permission(self) -> bool:
        return self.permission

    def list_bonded(self) -> dict[str, str | None]:
        if not self.permission:
            return {}
        return dict(self.bonded)

    def cancel_bonding(self, identity: str) -> bool:
        self.cancelled.append(identity)
        if identity in self.fail_cancel:
            logger.debug("Simulated cancel refused for %s", identity)
            return False
        return True

    def push(self, notification: PairingNotification) -> None:
        """Deliver a notification after the scripted ones."""
        self._queue.put_nowait(notification)

    async def notifications(self) -> AsyncIterator[PairingNotification]:
        for notification in self.events:
            if self._stopped:
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            yield notification

        while not self._stopped and not self._queue.empty():
            notification = self._queue.get_nowait()
            if notification is None:
                return
            yield notification

    def stop(self) -> None:
        self._stopped = True
