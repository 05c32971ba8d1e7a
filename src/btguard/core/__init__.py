"""
btguard Core - Trust Decision Engine.

Ties together the policy registry, durable store, decision prompts and
the pairing event handler.
"""

from btguard.core.engine import EngineListener, TrustEngine
from btguard.core.handler import (
    AttemptOutcome,
    AttemptState,
    IdentityLocks,
    PairingEventHandler,
)
from btguard.core.inbox import InboxClosed, InboxProcessor, PairingInbox
from btguard.core.prompt import DecisionPrompt, PromptBroker, PromptResolution

__all__ = [
    # Engine
    "EngineListener",
    "TrustEngine",
    # Handler
    "AttemptOutcome",
    "AttemptState",
    "IdentityLocks",
    "PairingEventHandler",
    # Inbox
    "InboxClosed",
    "InboxProcessor",
    "PairingInbox",
    # Prompts
    "DecisionPrompt",
    "PromptBroker",
    "PromptResolution",
]
