"""
btguard - Bluetooth pairing firewall.

Classifies incoming Bluetooth pairing attempts against a persistent
trusted/blocked policy and silently accepts, silently rejects, or
defers each one to a human decision.
"""

__version__ = "0.1.0"
__author__ = "btguard Contributors"

from btguard.config import BTGuardConfig, load_config

__all__ = ["BTGuardConfig", "load_config", "__version__"]
