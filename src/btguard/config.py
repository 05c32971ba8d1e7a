"""
Configuration management for btguard.

Handles loading, validation, and access to daemon configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/btguard/btguard.yaml")
DEFAULT_DB_PATH = Path("/var/lib/btguard/policy.db")
DEFAULT_AUDIT_PATH = Path("/var/lib/btguard/audit.db")


@dataclass
class DaemonConfig:
    """Daemon general settings."""

    log_level: str = "info"
    log_file: str | None = None


@dataclass
class PolicyConfig:
    """Trust policy settings."""

    namespace: str = "bluetooth_security_prefs"
    trust_bonded_on_start: bool = True
    session_window: float = 10.0


@dataclass
class StorageConfig:
    """Durable policy storage settings."""

    path: str = str(DEFAULT_DB_PATH)
    wal_mode: bool = True


@dataclass
class AuditConfig:
    """Audit log settings."""

    enabled: bool = True
    path: str = str(DEFAULT_AUDIT_PATH)
    wal_mode: bool = True


@dataclass
class PromptConfig:
    """Decision prompt settings."""

    # Answer applied to every prompt without waiting for a human
    auto_decision: str | None = None
    log_prompts: bool = True


@dataclass
class BluetoothConfig:
    """Bluetooth collaborator settings."""

    adapter: str = "simulated"
    script: str | None = None
    inbox_size: int = 1000


@dataclass
class APIConfig:
    """API server settings."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    cors_enabled: bool = True
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )
    auth_mode: str = "api_key"
    api_key: str | None = None

    def __post_init__(self) -> None:
        # Load API key from environment if not set
        if self.api_key is None:
            self.api_key = os.environ.get("BTGUARD_API_KEY")


@dataclass
class BTGuardConfig:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    bluetooth: BluetoothConfig = field(default_factory=BluetoothConfig)
    api: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BTGuardConfig:
        """Create configuration from dictionary."""
        return cls(
            daemon=DaemonConfig(**data.get("daemon", {})),
            policy=PolicyConfig(**data.get("policy", {})),
            storage=StorageConfig(**data.get("storage", {})),
            audit=AuditConfig(**data.get("audit", {})),
            prompt=PromptConfig(**data.get("prompt", {})),
            bluetooth=BluetoothConfig(**data.get("bluetooth", {})),
            api=APIConfig(**data.get("api", {})),
        )


def load_config(path: str | Path | None = None) -> BTGuardConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses default paths.

    Returns:
        BTGuardConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If config file not found and no defaults available.
        yaml.YAMLError: If config file is invalid YAML.
    """
    if path is None:
        # Try default locations
        candidates = [
            DEFAULT_CONFIG_PATH,
            Path("config/btguard.yaml"),
            Path("btguard.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None:
        # Return default configuration
        return BTGuardConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return BTGuardConfig.from_dict(data)


def validate_config(config: BTGuardConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    valid_log_levels = {"debug", "info", "warning", "error"}
    if config.daemon.log_level not in valid_log_levels:
        errors.append(f"Invalid log_level: {config.daemon.log_level}")

    if not config.policy.namespace:
        errors.append("Policy namespace must not be empty")

    if config.policy.session_window < 0:
        errors.append(f"Invalid session_window: {config.policy.session_window}")

    valid_decisions = {"trust", "block", "ignore"}
    if (
        config.prompt.auto_decision is not None
        and config.prompt.auto_decision not in valid_decisions
    ):
        errors.append(f"Invalid auto_decision: {config.prompt.auto_decision}")

    valid_adapters = {"simulated"}
    if config.bluetooth.adapter not in valid_adapters:
        errors.append(f"Invalid bluetooth adapter: {config.bluetooth.adapter}")

    if config.bluetooth.inbox_size < 0:
        errors.append(f"Invalid inbox_size: {config.bluetooth.inbox_size}")

    # Validate port ranges
    if not (1 <= config.api.port <= 65535):
        errors.append(f"Invalid API port: {config.api.port}")

    valid_auth_modes = {"none", "api_key"}
    if config.api.auth_mode not in valid_auth_modes:
        errors.append(f"Invalid auth_mode: {config.api.auth_mode}")

    if config.api.enabled and config.api.auth_mode == "api_key":
        if not config.api.api_key:
            errors.append("API key required when API auth_mode is api_key")

    return errors
