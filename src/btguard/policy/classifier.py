"""
Pairing Classifier.

Pure decision function mapping a pairing attempt to an action.
"""

from __future__ import annotations

from btguard.policy.models import Action, Classification, PairingAttempt
from btguard.policy.registry import DeviceRegistry


def classify_attempt(attempt: PairingAttempt, registry: DeviceRegistry) -> Action:
    """
    Decide what to do with a pairing attempt.

    Blocked wins over trusted if an identity is in both sets. Attempts
    whose identity could not be verified are always deferred.

    Args:
        attempt: The pairing attempt
        registry: Current policy working set

    Returns:
        ALLOW, REJECT or DEFER
    """
    if not attempt.verified:
        return Action.DEFER

    classification = registry.classify(attempt.identity)
    if classification is Classification.BLOCKED:
        return Action.REJECT
    if classification is Classification.TRUSTED:
        return Action.ALLOW
    return Action.DEFER
