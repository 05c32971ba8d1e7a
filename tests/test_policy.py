"""
Tests for the policy store, device registry and pairing classifier.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from btguard.errors import StorageUnavailable, StorageWriteError
from btguard.policy import (
    UNKNOWN_DEVICE_NAME,
    Action,
    Classification,
    Decision,
    DeviceRegistry,
    PairingAttempt,
    PolicyState,
    PolicyStore,
    classify_attempt,
    normalize_identity,
)
from btguard.storage.database import PreferenceDatabase


HEADSET = "AA:BB:CC:DD:EE:01"
KEYBOARD = "AA:BB:CC:DD:EE:02"
STRANGER = "11:22:33:44:55:66"


# ============================================================================
# Models
# ============================================================================


class TestModels:
    """Tests for policy value types."""

    @pytest.mark.parametrize("name,expected", [
        ("trust", Decision.ADD_TRUSTED),
        ("Block", Decision.ADD_BLOCKED_AND_REJECT),
        ("ignore", Decision.IGNORE),
        ("add-trusted", Decision.ADD_TRUSTED),
        ("add_blocked_and_reject", Decision.ADD_BLOCKED_AND_REJECT),
        ("later", None),
    ])
    def test_decision_from_name(self, name: str, expected: Decision | None) -> None:
        """Test parsing decisions from names and aliases."""
        assert Decision.from_name(name) is expected

    def test_normalize_identity(self) -> None:
        """Test identity normalization."""
        assert normalize_identity("  AA:BB  ") == "AA:BB"
        assert normalize_identity("") is None
        assert normalize_identity("   ") is None
        assert normalize_identity(None) is None
        assert normalize_identity(42) is None

    def test_identity_is_opaque(self) -> None:
        """Test identities are not case-folded."""
        assert normalize_identity("aa:bb") != normalize_identity("AA:BB")

    def test_attempt_label(self) -> None:
        """Test log label falls back to the unknown name."""
        assert PairingAttempt(identity=HEADSET, display_name="Headset").label == (
            f"Headset ({HEADSET})"
        )
        assert UNKNOWN_DEVICE_NAME in PairingAttempt(identity=HEADSET).label

    def test_action_is_terminal(self) -> None:
        """Test only DEFER is non-terminal."""
        assert Action.ALLOW.is_terminal
        assert Action.REJECT.is_terminal
        assert not Action.DEFER.is_terminal


# ============================================================================
# Store
# ============================================================================


class TestPolicyStore:
    """Tests for PolicyStore class."""

    def test_first_run_loads_empty(self, policy_store: PolicyStore) -> None:
        """Test absent keys load as empty sets."""
        state = policy_store.load()

        assert state.is_empty
        assert state == PolicyState()

    def test_save_and_load(self, policy_store: PolicyStore) -> None:
        """Test saved sets are loaded back."""
        result = policy_store.save({HEADSET}, {STRANGER})

        assert result.ok
        state = policy_store.load()
        assert state.trusted == {HEADSET}
        assert state.blocked == {STRANGER}

    def test_save_returns_state(self, policy_store: PolicyStore) -> None:
        """Test successful save carries the saved state."""
        result = policy_store.save([HEADSET], [])

        assert result.value == PolicyState(trusted=frozenset({HEADSET}))

    def test_save_refuses_overlap(self, policy_store: PolicyStore) -> None:
        """Test overlapping sets are never written."""
        result = policy_store.save({HEADSET}, {HEADSET})

        assert not result.ok
        assert isinstance(result.error, StorageWriteError)
        assert policy_store.load().is_empty

    def test_namespace(self, preference_db: PreferenceDatabase) -> None:
        """Test stores in different namespaces are independent."""
        one = PolicyStore(preference_db, namespace="one")
        two = PolicyStore(preference_db, namespace="two")
        one.save({HEADSET}, set())

        assert two.load().is_empty
        assert preference_db.get_string_set("one", "trusted") == {HEADSET}

    def test_load_unavailable(self, unreachable_backend: MagicMock) -> None:
        """Test unreadable storage raises StorageUnavailable."""
        store = PolicyStore(unreachable_backend)

        with pytest.raises(StorageUnavailable):
            store.load()

    def test_save_failure(self, failing_backend: MagicMock) -> None:
        """Test write failure returns StorageWriteError."""
        store = PolicyStore(failing_backend)

        result = store.save({HEADSET}, set())

        assert not result.ok
        assert isinstance(result.error, StorageWriteError)
        assert "disk full" in result.message
        assert store.get_statistics() == {"saves": 0, "save_failures": 1}

    def test_save_of_load_is_byte_identical(
        self,
        policy_store: PolicyStore,
        preference_db: PreferenceDatabase,
    ) -> None:
        """Test saving what was just loaded leaves stored values unchanged."""
        policy_store.save({KEYBOARD, HEADSET}, {STRANGER})
        namespace = policy_store.namespace
        before = (
            preference_db.get_raw(namespace, "trusted"),
            preference_db.get_raw(namespace, "blocked"),
        )

        state = policy_store.load()
        policy_store.save(state.trusted, state.blocked)

        assert (
            preference_db.get_raw(namespace, "trusted"),
            preference_db.get_raw(namespace, "blocked"),
        ) == before

    def test_load_overlap_kept(self, preference_db: PreferenceDatabase) -> None:
        """Test overlapping stored data is loaded as-is for the caller to repair."""
        preference_db.put_string_sets(
            "bluetooth_security_prefs",
            {"trusted": {HEADSET}, "blocked": {HEADSET}},
        )

        state = PolicyStore(preference_db).load()
        assert state.overlap() == {HEADSET}


# ============================================================================
# Registry
# ============================================================================


class TestDeviceRegistry:
    """Tests for DeviceRegistry class."""

    def test_classify_unknown(self) -> None:
        """Test unknown identity is unclassified."""
        assert DeviceRegistry().classify(STRANGER) is Classification.UNCLASSIFIED

    def test_classify_loaded(self) -> None:
        """Test classification from loaded state."""
        registry = DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET}),
            blocked=frozenset({STRANGER}),
        ))

        assert registry.classify(HEADSET) is Classification.TRUSTED
        assert registry.classify(STRANGER) is Classification.BLOCKED

    def test_blocked_wins_overlap(self) -> None:
        """Test an identity in both sets classifies as blocked."""
        registry = DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET}),
            blocked=frozenset({HEADSET}),
        ))

        assert registry.classify(HEADSET) is Classification.BLOCKED

    def test_promote_moves_between_sets(self) -> None:
        """Test promotion keeps the sets disjoint."""
        registry = DeviceRegistry()

        assert registry.promote(HEADSET, Classification.TRUSTED) is Classification.UNCLASSIFIED
        assert registry.promote(HEADSET, Classification.BLOCKED) is Classification.TRUSTED

        assert registry.blocked == {HEADSET}
        assert registry.trusted == frozenset()
        assert not registry.overlap()

    def test_promote_idempotent(self) -> None:
        """Test promoting twice leaves the same state."""
        registry = DeviceRegistry()
        registry.promote(HEADSET, Classification.TRUSTED)
        before = registry.state()

        assert registry.promote(HEADSET, Classification.TRUSTED) is Classification.TRUSTED
        assert registry.state() == before

    def test_promote_unclassified_removes(self) -> None:
        """Test promoting to UNCLASSIFIED removes the identity."""
        registry = DeviceRegistry(PolicyState(blocked=frozenset({STRANGER})))

        registry.promote(STRANGER, Classification.UNCLASSIFIED)

        assert STRANGER not in registry
        assert len(registry) == 0

    def test_promote_repairs_overlap(self) -> None:
        """Test promoting an overlapping identity leaves it in one set."""
        registry = DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET}),
            blocked=frozenset({HEADSET}),
        ))

        registry.promote(HEADSET, Classification.BLOCKED)
        assert not registry.overlap()

    def test_restore(self) -> None:
        """Test rollback reinstates the previous classification."""
        registry = DeviceRegistry(PolicyState(trusted=frozenset({HEADSET})))

        previous = registry.promote(HEADSET, Classification.BLOCKED)
        registry.restore(HEADSET, previous)

        assert registry.classify(HEADSET) is Classification.TRUSTED

    def test_snapshot_sorted_by_name(self) -> None:
        """Test snapshot is sorted by display name, then identity."""
        registry = DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET, KEYBOARD}),
            blocked=frozenset({STRANGER}),
        ))

        entries = registry.snapshot({HEADSET: "Zeta Headset", KEYBOARD: "Alpha Keys"})

        assert [e.identity for e in entries] == [KEYBOARD, STRANGER, HEADSET]
        assert entries[1].name == UNKNOWN_DEVICE_NAME
        assert entries[0].is_connected
        assert not entries[1].is_connected

    def test_snapshot_filter(self) -> None:
        """Test snapshot filtered by classification."""
        registry = DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET}),
            blocked=frozenset({STRANGER}),
        ))

        entries = registry.snapshot(classification=Classification.BLOCKED)

        assert [e.identity for e in entries] == [STRANGER]
        assert entries[0].to_dict()["classification"] == "blocked"

    def test_snapshot_ties_by_identity(self) -> None:
        """Test devices without names are ordered by identity."""
        registry = DeviceRegistry(PolicyState(trusted=frozenset({KEYBOARD, HEADSET})))

        entries = registry.snapshot([HEADSET])

        assert [e.identity for e in entries] == [HEADSET, KEYBOARD]
        assert all(e.name == UNKNOWN_DEVICE_NAME for e in entries)


# ============================================================================
# Classifier
# ============================================================================


class TestClassifier:
    """Tests for classify_attempt."""

    @pytest.fixture
    def registry(self) -> DeviceRegistry:
        return DeviceRegistry(PolicyState(
            trusted=frozenset({HEADSET}),
            blocked=frozenset({STRANGER}),
        ))

    def test_trusted_allowed(self, registry: DeviceRegistry) -> None:
        """Test trusted device is allowed."""
        attempt = PairingAttempt(identity=HEADSET)
        assert classify_attempt(attempt, registry) is Action.ALLOW

    def test_blocked_rejected(self, registry: DeviceRegistry) -> None:
        """Test blocked device is rejected."""
        attempt = PairingAttempt(identity=STRANGER)
        assert classify_attempt(attempt, registry) is Action.REJECT

    def test_unknown_deferred(self, registry: DeviceRegistry) -> None:
        """Test unclassified device is deferred."""
        attempt = PairingAttempt(identity=KEYBOARD)
        assert classify_attempt(attempt, registry) is Action.DEFER

    def test_unverified_always_deferred(self, registry: DeviceRegistry) -> None:
        """Test attempts without verified identity are deferred."""
        assert classify_attempt(
            PairingAttempt(identity=HEADSET, verified=False), registry
        ) is Action.DEFER
        assert classify_attempt(
            PairingAttempt(identity=STRANGER, verified=False), registry
        ) is Action.DEFER

    def test_display_name_ignored(self, registry: DeviceRegistry) -> None:
        """Test a trusted-looking name does not affect the decision."""
        attempt = PairingAttempt(identity=KEYBOARD, display_name=HEADSET)
        assert classify_attempt(attempt, registry) is Action.DEFER
