"""
Trust Policy.

Persistent trusted/blocked device sets, their in-memory working copy,
and the classifier that turns them into pairing decisions.
"""

from btguard.policy.classifier import classify_attempt
from btguard.policy.models import (
    UNKNOWN_DEVICE_NAME,
    Action,
    Classification,
    Decision,
    DeviceEntry,
    DeviceIdentity,
    PairingAttempt,
    PolicyState,
    normalize_identity,
)
from btguard.policy.registry import DeviceRegistry
from btguard.policy.store import (
    BLOCKED_KEY,
    DEFAULT_NAMESPACE,
    TRUSTED_KEY,
    PolicyStore,
)

__all__ = [
    # Models
    "Action",
    "Classification",
    "Decision",
    "DeviceEntry",
    "DeviceIdentity",
    "PairingAttempt",
    "PolicyState",
    "UNKNOWN_DEVICE_NAME",
    "normalize_identity",
    # Registry
    "DeviceRegistry",
    # Store
    "BLOCKED_KEY",
    "DEFAULT_NAMESPACE",
    "TRUSTED_KEY",
    "PolicyStore",
    # Classifier
    "classify_attempt",
]
