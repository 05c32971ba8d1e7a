"""
Device Registry.

In-memory working set of the persisted policy. All changes go through
promote(); callers persist immediately afterwards and restore() the
previous classification if the write fails.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from btguard.policy.models import (
    UNKNOWN_DEVICE_NAME,
    Classification,
    DeviceEntry,
    DeviceIdentity,
    PolicyState,
)


logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Trusted/blocked identity sets held by one engine instance.

    Mutations keep the sets disjoint; a device that is somehow in both
    classifies as Blocked.
    """

    def __init__(self, state: PolicyState | None = None) -> None:
        self._trusted: set[DeviceIdentity] = set()
        self._blocked: set[DeviceIdentity] = set()
        if state is not None:
            self.replace(state)

    @property
    def trusted(self) -> frozenset[DeviceIdentity]:
        return frozenset(self._trusted)

    @property
    def blocked(self) -> frozenset[DeviceIdentity]:
        return frozenset(self._blocked)

    def state(self) -> PolicyState:
        """Current sets as an immutable PolicyState."""
        return PolicyState(trusted=self.trusted, blocked=self.blocked)

    def overlap(self) -> frozenset[DeviceIdentity]:
        return frozenset(self._trusted & self._blocked)

    def replace(self, state: PolicyState) -> None:
        """Rebuild the working set from a loaded policy."""
        self._trusted = set(state.trusted)
        self._blocked = set(state.blocked)

    def classify(self, identity: DeviceIdentity) -> Classification:
        """
        Look up an identity. Never fails.

        Args:
            identity: Device hardware address

        Returns:
            Classification (UNCLASSIFIED for unknown identities)
        """
        if identity in self._blocked:
            if identity in self._trusted:
                logger.warning(
                    "Device %s is both trusted and blocked; treating as blocked",
                    identity,
                )
            return Classification.BLOCKED
        if identity in self._trusted:
            return Classification.TRUSTED
        return Classification.UNCLASSIFIED

    def promote(
        self,
        identity: DeviceIdentity,
        classification: Classification,
    ) -> Classification:
        """
        Move an identity into exactly one set.

        Promoting to UNCLASSIFIED removes it from both sets. The caller is
        responsible for persisting and for rolling back on failure.

        Args:
            identity: Device hardware address
            classification: Target classification

        Returns:
            The classification held before the change
        """
        previous = self.classify(identity)

        if classification is Classification.TRUSTED:
            self._blocked.discard(identity)
            self._trusted.add(identity)
        elif classification is Classification.BLOCKED:
            self._trusted.discard(identity)
            self._blocked.add(identity)
        else:
            self._trusted.discard(identity)
            self._blocked.discard(identity)

        if previous is not classification:
            logger.debug("Registry: %s %s -> %s", identity, previous, classification)
        return previous

    def restore(self, identity: DeviceIdentity, classification: Classification) -> None:
        """Undo a promote by reinstating the previous classification."""
        self.promote(identity, classification)
        logger.debug("Registry: rolled back %s to %s", identity, classification)

    def snapshot(
        self,
        bonded: Mapping[DeviceIdentity, str | None] | Iterable[DeviceIdentity] = (),
        classification: Classification | None = None,
    ) -> list[DeviceEntry]:
        """
        Project classified devices for presentation.

        Args:
            bonded: Bonded devices from the OS, as identity -> name mapping
                or a plain set of identities
            classification: Optionally restrict to one classification

        Returns:
            Entries sorted by display name, ties broken by identity
        """
        if isinstance(bonded, Mapping):
            names = dict(bonded)
        else:
            names = {identity: None for identity in bonded}

        entries = []
        for identity in self._trusted | self._blocked:
            current = self.classify(identity)
            if classification is not None and current is not classification:
                continue
            connected = identity in names
            entries.append(DeviceEntry(
                identity=identity,
                name=names.get(identity) or UNKNOWN_DEVICE_NAME,
                classification=current,
                is_connected=connected,
            ))

        entries.sort(key=lambda entry: (entry.name, entry.identity))
        return entries

    def __len__(self) -> int:
        return len(self._trusted | self._blocked)

    def __contains__(self, identity: object) -> bool:
        return identity in self._trusted or identity in self._blocked
