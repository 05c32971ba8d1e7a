"""
Policy Store.

Durable trusted/blocked identity sets. The store is the single source
of truth for policy; the in-memory registry is rebuilt from it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

from btguard.errors import OperationResult, StorageUnavailable, StorageWriteError
from btguard.policy.models import DeviceIdentity, PolicyState

if TYPE_CHECKING:
    from btguard.storage.database import PreferenceDatabase


logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "bluetooth_security_prefs"
TRUSTED_KEY = "trusted"
BLOCKED_KEY = "blocked"


class PolicyStore:
    """
    Load and save the trusted/blocked sets in a fixed namespace.

    Writes are synchronous and atomic: both sets are written in one
    transaction or not at all.
    """

    def __init__(
        self,
        backend: PreferenceDatabase,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        """
        Initialize the store.

        Args:
            backend: Key-value persistence providing atomic string-set I/O
            namespace: Preference namespace holding the policy keys
        """
        self.backend = backend
        self.namespace = namespace
        self._saves = 0
        self._save_failures = 0

    def load(self) -> PolicyState:
        """
        Load the persisted policy.

        Absent keys (first run) load as empty sets.

        Returns:
            PolicyState with trusted and blocked sets

        Raises:
            StorageUnavailable: If the backend cannot be read
        """
        try:
            values = self.backend.get_string_sets(
                self.namespace, [TRUSTED_KEY, BLOCKED_KEY]
            )
        except Exception as e:
            logger.error("Policy storage unavailable: %s", e)
            raise StorageUnavailable(f"Cannot load policy: {e}") from e

        state = PolicyState(
            trusted=frozenset(values.get(TRUSTED_KEY) or ()),
            blocked=frozenset(values.get(BLOCKED_KEY) or ()),
        )

        overlap = state.overlap()
        if overlap:
            logger.warning(
                "Stored policy lists %d device(s) as both trusted and blocked; "
                "treating them as blocked: %s",
                len(overlap), ", ".join(sorted(overlap)),
            )

        logger.info(
            "Loaded policy: %d trusted, %d blocked",
            len(state.trusted), len(state.blocked),
        )
        return state

    def save(
        self,
        trusted: Iterable[DeviceIdentity],
        blocked: Iterable[DeviceIdentity],
    ) -> OperationResult:
        """
        Persist both sets atomically.

        Args:
            trusted: Trusted identities
            blocked: Blocked identities

        Returns:
            OperationResult; on failure the error is a StorageWriteError
        """
        trusted = frozenset(trusted)
        blocked = frozenset(blocked)

        overlap = trusted & blocked
        if overlap:
            self._save_failures += 1
            return OperationResult.failure(StorageWriteError(
                "Refusing to save overlapping policy sets: "
                + ", ".join(sorted(overlap))
            ))

        try:
            self.backend.put_string_sets(
                self.namespace,
                {TRUSTED_KEY: trusted, BLOCKED_KEY: blocked},
            )
        except Exception as e:
            self._save_failures += 1
            logger.error("Failed to save policy: %s", e)
            return OperationResult.failure(
                StorageWriteError(f"Policy was not saved: {e}")
            )

        self._saves += 1
        logger.debug(
            "Saved policy: %d trusted, %d blocked", len(trusted), len(blocked)
        )
        return OperationResult.success(PolicyState(trusted=trusted, blocked=blocked))

    def get_statistics(self) -> dict:
        """Get save statistics."""
        return {
            "saves": self._saves,
            "save_failures": self._save_failures,
        }
