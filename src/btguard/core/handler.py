"""
Pairing Event Handler.

Runs each pairing notification through the attempt state machine:
Received -> Classified -> {Allowed | Rejected | AwaitingDecision} -> Resolved.

All policy mutations go through one mutation lock; the classify/act
sequence is serialized per identity so retries from one device are
handled in arrival order while different devices proceed concurrently.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Coroutine

from btguard.audit.models import AuditEventType
from btguard.bluetooth.adapter import BluetoothAdapter, PairingNotification
from btguard.core.prompt import DecisionPrompt, PromptBroker, PromptResolution
from btguard.errors import (
    BTGuardError,
    MalformedEventError,
    NotClassified,
    OperationResult,
    PairingCancelFailed,
    PermissionDenied,
    PromptNotFound,
)
from btguard.policy.classifier import classify_attempt
from btguard.policy.models import (
    Action,
    Classification,
    Decision,
    DeviceIdentity,
    PairingAttempt,
    normalize_identity,
)
from btguard.policy.registry import DeviceRegistry
from btguard.policy.store import PolicyStore

if TYPE_CHECKING:
    from btguard.audit.database import AuditLog


logger = logging.getLogger(__name__)


class AttemptState(Enum):
    """Lifecycle states of a pairing attempt."""

    RECEIVED = "received"
    CLASSIFIED = "classified"
    ALLOWED = "allowed"
    REJECTED = "rejected"
    AWAITING_DECISION = "awaiting_decision"
    IGNORED = "ignored"
    RESOLVED = "resolved"


@dataclass
class AttemptOutcome:
    """
    Result of handling one pairing notification.

    Attributes:
        attempt: The attempt, or None for malformed notifications
        action: Classifier action (None if malformed)
        decision: Prompt answer for deferred attempts
        states: States traversed, in order
        duplicate: Repeat of a recent terminal action in the same session
        coalesced: Joined a prompt opened by an earlier attempt
        cancel_ok: Result of the OS cancel call, if one was made
        error: Absorbed or surfaced error, if any
    """

    attempt: PairingAttempt | None
    action: Action | None = None
    decision: Decision | None = None
    states: list[AttemptState] = field(default_factory=lambda: [AttemptState.RECEIVED])
    duplicate: bool = False
    coalesced: bool = False
    cancel_ok: bool | None = None
    error: BTGuardError | None = None

    @property
    def state(self) -> AttemptState:
        return self.states[-1]

    @property
    def identity(self) -> DeviceIdentity | None:
        return self.attempt.identity if self.attempt else None

    @property
    def was_rejected(self) -> bool:
        return AttemptState.REJECTED in self.states

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "display_name": self.attempt.display_name if self.attempt else None,
            "action": self.action.value if self.action else None,
            "decision": self.decision.value if self.decision else None,
            "state": self.state.value,
            "duplicate": self.duplicate,
            "coalesced": self.coalesced,
            "cancel_ok": self.cancel_ok,
            "error": self.error.code if self.error else None,
        }


OutcomeHook = Callable[[AttemptOutcome], None]
AsyncOutcomeHook = Callable[[AttemptOutcome], Coroutine[Any, Any, None]]


class IdentityLocks:
    """Lazily created per-identity locks, dropped once unused."""

    def __init__(self) -> None:
        self._locks: dict[DeviceIdentity, asyncio.Lock] = {}
        self._users: dict[DeviceIdentity, int] = {}

    @asynccontextmanager
    async def hold(self, identity: DeviceIdentity) -> AsyncIterator[None]:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        self._users[identity] = self._users.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[identity] -= 1
            if self._users[identity] == 0:
                del self._users[identity]
                del self._locks[identity]

    def __len__(self) -> int:
        return len(self._locks)


class PairingEventHandler:
    """
    Consumes pairing notifications and applies the resulting actions.

    The classifier runs exactly once per attempt. Deferred attempts wait
    on their DecisionPrompt; the answer is applied by apply_decision().
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        store: PolicyStore,
        broker: PromptBroker,
        adapter: BluetoothAdapter | None = None,
        audit: AuditLog | None = None,
        session_window: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the handler.

        Args:
            registry: In-memory policy working set
            store: Durable policy store
            broker: Outstanding decision prompts
            adapter: OS wireless stack collaborator
            audit: Optional audit log
            session_window: Seconds within which a repeated Allow/Reject for
                one identity counts as the same pairing session
            clock: Monotonic time source
        """
        self.registry = registry
        self.store = store
        self.broker = broker
        self.adapter = adapter
        self.audit = audit
        self.session_window = session_window
        self._clock = clock

        self.locks = IdentityLocks()
        self.mutation_lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._recent: dict[DeviceIdentity, tuple[Action, float]] = {}
        self._permission_denied = False

        # Checked before every policy write; a failure aborts the write
        self.preflight: Callable[[], OperationResult] | None = None

        self._outcome_hooks: list[OutcomeHook] = []
        self._async_outcome_hooks: list[AsyncOutcomeHook] = []

        self._stats = {
            "attempts": 0,
            "allowed": 0,
            "rejected": 0,
            "deferred": 0,
            "coalesced": 0,
            "duplicates": 0,
            "malformed": 0,
            "cancel_failures": 0,
        }

    # =========================================================================
    # Attempt lifecycle
    # =========================================================================

    async def handle(self, notification: PairingNotification) -> AttemptOutcome:
        """
        Process one pairing notification to completion.

        Never raises for OS-side problems; they are logged and reported
        on the outcome.

        Args:
            notification: Raw notification from the OS

        Returns:
            AttemptOutcome describing what was done
        """
        self._stats["attempts"] += 1
        outcome = AttemptOutcome(attempt=None)

        identity = normalize_identity(notification.identity)
        if identity is None:
            return self._drop_malformed(notification, outcome)

        attempt = PairingAttempt(
            identity=identity,
            display_name=notification.display_name or None,
            sequence=next(self._sequence),
            received_at=notification.received_at,
            verified=self._has_permission(),
        )
        outcome.attempt = attempt

        prompt: DecisionPrompt | None = None
        async with self.locks.hold(identity):
            action = classify_attempt(attempt, self.registry)
            outcome.action = action
            outcome.states.append(AttemptState.CLASSIFIED)

            if action is Action.ALLOW:
                self._allow(attempt, outcome)
            elif action is Action.REJECT:
                self._reject(attempt, outcome)
            else:
                prompt = self._defer(attempt, outcome)

        if prompt is not None:
            resolution = await prompt.wait()
            self._finish_deferred(outcome, resolution)

        outcome.states.append(AttemptState.RESOLVED)

        if not outcome.duplicate and not outcome.coalesced:
            await self._run_outcome_hooks(outcome)
        return outcome

    def _drop_malformed(
        self,
        notification: PairingNotification,
        outcome: AttemptOutcome,
    ) -> AttemptOutcome:
        """Resolve a notification that carries no identity."""
        self._stats["malformed"] += 1
        error = MalformedEventError(
            "Pairing notification without device identity "
            f"(name={notification.display_name!r})"
        )
        logger.warning("%s", error)
        self._audit(AuditEventType.MALFORMED, None, notification.display_name, detail=str(error))
        outcome.error = error
        outcome.states.append(AttemptState.RESOLVED)
        return outcome

    def _allow(self, attempt: PairingAttempt, outcome: AttemptOutcome) -> None:
        outcome.states.append(AttemptState.ALLOWED)
        if self._is_duplicate(attempt.identity, Action.ALLOW):
            outcome.duplicate = True
            logger.debug("Repeated pairing request from trusted %s", attempt.label)
            return

        self._stats["allowed"] += 1
        logger.info("Trusted device %s - allowed", attempt.label)
        self._audit(AuditEventType.ALLOWED, attempt.identity, attempt.display_name, action="allow")

    def _reject(self, attempt: PairingAttempt, outcome: AttemptOutcome) -> None:
        outcome.states.append(AttemptState.REJECTED)
        outcome.duplicate = self._is_duplicate(attempt.identity, Action.REJECT)

        # A retransmitted request is still a live bonding attempt
        outcome.cancel_ok = self._cancel(attempt.identity, quiet=outcome.duplicate)
        if not outcome.cancel_ok:
            outcome.error = PairingCancelFailed(
                f"Could not cancel bonding with {attempt.identity}"
            )

        if outcome.duplicate:
            logger.debug("Repeated pairing request from blocked %s", attempt.label)
            return

        self._stats["rejected"] += 1
        logger.info("Blocked device %s - automatically rejected", attempt.label)
        self._audit(AuditEventType.REJECTED, attempt.identity, attempt.display_name, action="reject")

    def _defer(self, attempt: PairingAttempt, outcome: AttemptOutcome) -> DecisionPrompt:
        outcome.states.append(AttemptState.AWAITING_DECISION)
        prompt, created = self.broker.open(attempt)
        if created:
            self._stats["deferred"] += 1
            self._audit(
                AuditEventType.DEFERRED, attempt.identity, attempt.display_name,
                action="defer",
                detail=None if attempt.verified else "unverified: connect permission missing",
            )
        else:
            self._stats["coalesced"] += 1
            outcome.coalesced = True
        return prompt

    def _finish_deferred(self, outcome: AttemptOutcome, resolution: PromptResolution) -> None:
        outcome.decision = resolution.decision
        if resolution.decision is Decision.ADD_BLOCKED_AND_REJECT:
            outcome.states.append(AttemptState.REJECTED)
            outcome.cancel_ok = resolution.cancel_ok
        elif resolution.decision is Decision.ADD_TRUSTED:
            outcome.states.append(AttemptState.ALLOWED)
        else:
            # The OS default behaviour takes over for this attempt
            outcome.states.append(AttemptState.IGNORED)

        if resolution.cancel_ok is False:
            outcome.error = PairingCancelFailed(
                f"Could not cancel bonding with {outcome.identity}"
            )

    def _is_duplicate(self, identity: DeviceIdentity, action: Action) -> bool:
        """Check and record a terminal action for session de-duplication."""
        now = self._clock()
        previous = self._recent.get(identity)
        self._recent[identity] = (action, now)

        # Drop stale entries so the map stays small
        cutoff = now - self.session_window
        for key in [k for k, (_, seen) in self._recent.items() if seen < cutoff]:
            del self._recent[key]

        if previous is None:
            return False
        previous_action, seen = previous
        if previous_action is action and now - seen <= self.session_window:
            self._stats["duplicates"] += 1
            return True
        return False

    def forget_session(self, identity: DeviceIdentity) -> None:
        """Forget session history for an identity (policy changed)."""
        self._recent.pop(identity, None)

    # =========================================================================
    # OS interaction
    # =========================================================================

    def _has_permission(self) -> bool:
        """Check connect permission; without it attempts are unverified."""
        if self.adapter is None:
            granted = False
        else:
            try:
                granted = bool(self.adapter.has_connect_permission())
            except Exception as e:
                logger.error("Permission check failed: %s", e)
                granted = False

        if not granted and not self._permission_denied:
            logger.warning(
                "%s",
                PermissionDenied(
                    "Bluetooth connect permission not granted; "
                    "all pairing attempts will be deferred"
                ),
            )
        elif granted and self._permission_denied:
            logger.info("Bluetooth connect permission granted")
        self._permission_denied = not granted
        return granted

    def _cancel(self, identity: DeviceIdentity, quiet: bool = False) -> bool:
        """
        Ask the OS to cancel bonding. Best-effort, single attempt.

        Failures are logged as PairingCancelFailed and never undo policy.
        """
        if self.adapter is None:
            ok = False
            reason = "no Bluetooth adapter"
        else:
            try:
                ok = bool(self.adapter.cancel_bonding(identity))
                reason = "refused by OS"
            except Exception as e:
                ok = False
                reason = str(e)

        if not ok:
            self._stats["cancel_failures"] += 1
            logger.error("Pairing cancel failed for %s: %s", identity, reason)
            if not quiet:
                self._audit(AuditEventType.CANCEL_FAILED, identity, detail=reason)
        return ok

    # =========================================================================
    # Policy mutations
    # =========================================================================

    async def apply_decision(
        self,
        identity: DeviceIdentity,
        decision: Decision,
    ) -> OperationResult:
        """
        Answer the outstanding prompt for an identity.

        The decision is applied (and persisted) before waiting attempts
        are released. If it cannot be persisted the prompt stays
        outstanding and the attempts keep waiting for another answer.

        Args:
            identity: Device the prompt was opened for
            decision: The answer

        Returns:
            OperationResult; StorageWriteError if the policy change did not
            persist, PromptNotFound if no prompt is outstanding
        """
        async with self.locks.hold(identity):
            prompt = self.broker.get(identity)
            if prompt is None:
                return OperationResult.failure(
                    PromptNotFound(f"No pending decision for {identity}")
                )

            cancel_ok: bool | None = None
            if decision is Decision.ADD_TRUSTED:
                result = await self._persist(identity, Classification.TRUSTED)
                if result.ok:
                    self._audit(AuditEventType.TRUSTED, identity, prompt.display_name,
                                decision=decision.value)
            elif decision is Decision.ADD_BLOCKED_AND_REJECT:
                result = await self._persist(identity, Classification.BLOCKED)
                if result.ok:
                    self._audit(AuditEventType.BLOCKED, identity, prompt.display_name,
                                decision=decision.value)
                # The current attempt is refused even if the record did not
                # persist; a retried answer does not cancel again
                if prompt.cancel_ok is None:
                    prompt.cancel_ok = self._cancel(identity)
                cancel_ok = prompt.cancel_ok
            else:
                result = OperationResult.success()
                logger.info("Ignored (one-time pass): %s", identity)
                self._audit(AuditEventType.IGNORED, identity, prompt.display_name,
                            decision=decision.value)

            if not result.ok:
                # Stays outstanding so the answer can be retried
                logger.warning("Decision for %s not applied: %s", identity, result.message)
                return result

            self.broker.complete(
                prompt,
                PromptResolution(decision=decision, result=result, cancel_ok=cancel_ok),
            )
            return result

    async def change_classification(
        self,
        identity: DeviceIdentity,
        target: Classification,
        expected: Classification | None = None,
    ) -> OperationResult:
        """
        Promote an identity on behalf of the presentation layer.

        Args:
            identity: Device hardware address
            target: New classification (UNCLASSIFIED removes it)
            expected: Required current classification, if any

        Returns:
            OperationResult with the previous classification on success
        """
        async with self.locks.hold(identity):
            ready = self._check_writable()
            if not ready.ok:
                return ready

            current = self.registry.classify(identity)
            if expected is not None and current is not expected:
                return OperationResult.failure(
                    NotClassified(f"{identity} is not {expected.value}")
                )

            result = await self._persist(identity, target)
            if result.ok:
                event_type = {
                    Classification.TRUSTED: AuditEventType.TRUSTED,
                    Classification.BLOCKED: AuditEventType.BLOCKED,
                    Classification.UNCLASSIFIED: AuditEventType.REMOVED,
                }[target]
                self._audit(event_type, identity, detail=f"previously {current.value}")
            return result

    async def seed_trusted(self, identities: Iterable[DeviceIdentity]) -> OperationResult:
        """
        Trust every given identity that is not yet classified.

        Applied as one batch with a single save; rolled back as a whole
        if the save fails.

        Returns:
            OperationResult with the list of newly trusted identities
        """
        async with self.mutation_lock:
            ready = self._check_writable()
            if not ready.ok:
                return ready

            added = []
            for identity in sorted(set(identities)):
                if self.registry.classify(identity) is Classification.UNCLASSIFIED:
                    self.registry.promote(identity, Classification.TRUSTED)
                    added.append(identity)

            if not added:
                return OperationResult.success([])

            result = self._save()
            if not result.ok:
                for identity in added:
                    self.registry.restore(identity, Classification.UNCLASSIFIED)
                return result

        for identity in added:
            logger.info("Trusted bonded device: %s", identity)
            self._audit(AuditEventType.TRUSTED, identity, detail="bonded at start")
        return OperationResult.success(added)

    async def _persist(
        self,
        identity: DeviceIdentity,
        target: Classification,
    ) -> OperationResult:
        """
        Promote, save, and roll back if the save fails.

        Returns:
            OperationResult with the previous classification on success
        """
        async with self.mutation_lock:
            ready = self._check_writable()
            if not ready.ok:
                self._audit(AuditEventType.SAVE_FAILED, identity, detail=ready.message)
                return ready

            before = self.registry.state()
            previous = self.registry.promote(identity, target)
            if self.registry.state() == before:
                return OperationResult.success(previous)

            result = self._save()
            if not result.ok:
                self.registry.restore(identity, previous)
                logger.error(
                    "Policy change for %s not saved, kept as %s: %s",
                    identity, previous.value, result.message,
                )
                self._audit(AuditEventType.SAVE_FAILED, identity, detail=result.message)
                return result

        self.forget_session(identity)
        logger.info("Device %s: %s -> %s", identity, previous.value, target.value)
        return OperationResult.success(previous)

    def _check_writable(self) -> OperationResult:
        if self.preflight is None:
            return OperationResult.success()
        return self.preflight()

    def _save(self) -> OperationResult:
        """Save the registry; identities in both sets are saved as blocked."""
        blocked = self.registry.blocked
        trusted = self.registry.trusted - blocked
        result = self.store.save(trusted, blocked)
        if result.ok:
            self.registry.replace(result.value)
        return result

    # =========================================================================
    # Hooks, audit, statistics
    # =========================================================================

    def add_outcome_hook(self, hook: OutcomeHook) -> None:
        """Add a hook called once per resolved, non-repeated attempt."""
        self._outcome_hooks.append(hook)

    def add_async_outcome_hook(self, hook: AsyncOutcomeHook) -> None:
        """Add an async outcome hook."""
        self._async_outcome_hooks.append(hook)

    async def _run_outcome_hooks(self, outcome: AttemptOutcome) -> None:
        for hook in self._outcome_hooks:
            try:
                hook(outcome)
            except Exception as e:
                logger.error("Outcome hook error: %s", e)

        for hook in self._async_outcome_hooks:
            try:
                await hook(outcome)
            except Exception as e:
                logger.error("Async outcome hook error: %s", e)

    def _audit(
        self,
        event_type: AuditEventType,
        identity: DeviceIdentity | None,
        display_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Write to the audit log. Failures never affect decisions."""
        if self.audit is None:
            return
        try:
            self.audit.log_event(
                event_type=event_type,
                identity=identity,
                display_name=display_name,
                **kwargs,
            )
        except Exception as e:
            logger.warning("Failed to write audit event: %s", e)

    def get_statistics(self) -> dict[str, Any]:
        """Get handling statistics."""
        return {
            **self._stats,
            "permission_denied": self._permission_denied,
            "prompts": self.broker.get_statistics(),
            "store": self.store.get_statistics(),
        }

    def reset_statistics(self) -> None:
        for key in self._stats:
            self._stats[key] = 0
