"""
Decision prompts.

A deferred pairing attempt opens one DecisionPrompt per identity. Later
attempts from the same identity join the outstanding prompt instead of
opening another one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from btguard.errors import OperationResult
from btguard.policy.models import Decision, DeviceIdentity, PairingAttempt


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptResolution:
    """How a prompt was answered and whether the answer was applied."""

    decision: Decision
    result: OperationResult
    cancel_ok: bool | None = None
    dismissed: bool = False


@dataclass
class DecisionPrompt:
    """
    Request for a human (or automation) to classify a device.

    Resolves exactly once.
    """

    identity: DeviceIdentity
    display_name: str | None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: list[PairingAttempt] = field(default_factory=list)
    # Result of the block cancel, issued once even if the answer is retried
    cancel_ok: bool | None = field(default=None, compare=False)
    _future: asyncio.Future = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._future = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    @property
    def resolution(self) -> PromptResolution | None:
        if not self._future.done():
            return None
        return self._future.result()

    def complete(self, resolution: PromptResolution) -> bool:
        """Deliver the answer. Returns False if already resolved."""
        if self._future.done():
            return False
        self._future.set_result(resolution)
        return True

    async def wait(self) -> PromptResolution:
        """Wait for the answer. No timeout."""
        return await asyncio.shield(self._future)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "display_name": self.display_name,
            "opened_at": self.opened_at.isoformat(),
            "attempts": len(self.attempts),
            "resolved": self.resolved,
        }


PromptHook = Callable[[DecisionPrompt], None]


class PromptBroker:
    """
    Tracks outstanding prompts, at most one per identity.

    Presenters are notified once for each newly opened prompt and are
    responsible for surfacing it to the user.
    """

    def __init__(self) -> None:
        self._prompts: dict[DeviceIdentity, DecisionPrompt] = {}
        self._presenters: list[PromptHook] = []
        self._opened = 0
        self._coalesced = 0
        self.closed = False

    def add_presenter(self, hook: PromptHook) -> None:
        """Add a hook called with each newly opened prompt."""
        self._presenters.append(hook)

    def open(self, attempt: PairingAttempt) -> tuple[DecisionPrompt, bool]:
        """
        Open a prompt for an attempt, or join the outstanding one.

        Must be called from within the event loop.

        Returns:
            Tuple of (prompt, created)
        """
        existing = self._prompts.get(attempt.identity)
        if existing is not None and not existing.resolved:
            existing.attempts.append(attempt)
            self._coalesced += 1
            logger.debug(
                "Attempt #%d from %s joined outstanding prompt",
                attempt.sequence, attempt.identity,
            )
            return existing, False

        prompt = DecisionPrompt(
            identity=attempt.identity,
            display_name=attempt.display_name,
            attempts=[attempt],
        )
        if self.closed:
            # Nobody is left to answer; behaves as a dismissal
            prompt.complete(_dismissal())
            return prompt, True

        self._prompts[attempt.identity] = prompt
        self._opened += 1
        logger.info("Decision required for unregistered device %s", attempt.label)

        for hook in self._presenters:
            try:
                hook(prompt)
            except Exception as e:
                logger.error("Prompt presenter error: %s", e)

        return prompt, True

    def get(self, identity: DeviceIdentity) -> DecisionPrompt | None:
        """Get the outstanding prompt for an identity."""
        prompt = self._prompts.get(identity)
        if prompt is None or prompt.resolved:
            return None
        return prompt

    def pending(self) -> list[DecisionPrompt]:
        """Outstanding prompts, oldest first."""
        prompts = [p for p in self._prompts.values() if not p.resolved]
        return sorted(prompts, key=lambda p: (p.opened_at, p.identity))

    def complete(self, prompt: DecisionPrompt, resolution: PromptResolution) -> bool:
        """Resolve a prompt and stop tracking it."""
        if self._prompts.get(prompt.identity) is prompt:
            del self._prompts[prompt.identity]
        return prompt.complete(resolution)

    def dismiss_all(self) -> int:
        """
        Resolve every outstanding prompt as IGNORE.

        Used on teardown; nothing is persisted for dismissed prompts.

        Returns:
            Number of prompts dismissed
        """
        count = 0
        for prompt in list(self._prompts.values()):
            if self.complete(prompt, _dismissal()):
                count += 1
        if count:
            logger.info("Dismissed %d outstanding prompt(s)", count)
        return count

    def close(self) -> int:
        """Dismiss outstanding prompts and every prompt opened from now on."""
        self.closed = True
        return self.dismiss_all()

    def __len__(self) -> int:
        return len(self.pending())

    def get_statistics(self) -> dict[str, int]:
        return {
            "opened": self._opened,
            "coalesced": self._coalesced,
            "pending": len(self),
        }


def _dismissal() -> PromptResolution:
    return PromptResolution(
        decision=Decision.IGNORE,
        result=OperationResult.success(),
        dismissed=True,
    )
