"""
Pytest configuration and shared fixtures for btguard tests.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
import yaml

from btguard.audit.database import AuditLog
from btguard.bluetooth.simulated import SimulatedAdapter
from btguard.core.engine import TrustEngine
from btguard.policy.store import PolicyStore
from btguard.storage.database import PreferenceDatabase


HEADSET = "AA:BB:CC:DD:EE:01"
KEYBOARD = "AA:BB:CC:DD:EE:02"
STRANGER = "11:22:33:44:55:66"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "btguard.yaml"
    config_data = {
        "daemon": {
            "log_level": "debug",
        },
        "policy": {
            "trust_bonded_on_start": True,
            "session_window": 5,
        },
        "storage": {
            "path": str(temp_dir / "policy.db"),
        },
        "audit": {
            "path": str(temp_dir / "audit.db"),
        },
        "api": {
            "enabled": False,
            "port": 8080,
        },
    }
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def sample_script(temp_dir: Path) -> Path:
    """Create a simulation script."""
    script_path = temp_dir / "script.yaml"
    script = {
        "permission": True,
        "bonded": {HEADSET: "Headset"},
        "events": [
            {"identity": HEADSET, "name": "Headset"},
            {"identity": STRANGER, "name": "Free Speaker"},
            {"address": STRANGER, "name": "Free Speaker"},
            {"name": "No Address"},
        ],
    }
    with open(script_path, "w") as f:
        yaml.dump(script, f)
    return script_path


@pytest.fixture
def preference_db(temp_dir: Path) -> Generator[PreferenceDatabase, None, None]:
    """Create a preference database."""
    db = PreferenceDatabase(temp_dir / "policy.db")
    yield db
    db.close()


@pytest.fixture
def policy_store(preference_db: PreferenceDatabase) -> PolicyStore:
    """Create a policy store over the preference database."""
    return PolicyStore(preference_db)


@pytest.fixture
def audit_log(temp_dir: Path) -> Generator[AuditLog, None, None]:
    """Create an audit log."""
    audit = AuditLog(temp_dir / "audit.db")
    yield audit
    audit.close()


@pytest.fixture
def adapter() -> SimulatedAdapter:
    """Simulated adapter with connect permission and one bonded device."""
    return SimulatedAdapter(bonded={HEADSET: "Headset"})


@pytest.fixture
def engine(
    policy_store: PolicyStore,
    adapter: SimulatedAdapter,
    audit_log: AuditLog,
) -> TrustEngine:
    """Unstarted engine that does not auto-trust bonded devices."""
    return TrustEngine(
        store=policy_store,
        adapter=adapter,
        audit=audit_log,
        trust_bonded_on_start=False,
    )


@pytest.fixture
def failing_backend() -> MagicMock:
    """Preference backend that can be read but not written."""
    backend = MagicMock()
    backend.get_string_sets.return_value = {"trusted": None, "blocked": None}
    backend.put_string_sets.side_effect = OSError("disk full")
    return backend


@pytest.fixture
def unreachable_backend() -> MagicMock:
    """Preference backend that cannot be read."""
    backend = MagicMock()
    backend.get_string_sets.side_effect = OSError("database is locked")
    backend.put_string_sets.side_effect = OSError("database is locked")
    return backend
