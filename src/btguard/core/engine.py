"""
Trust Decision Engine.

One TrustEngine instance owns the policy working set, the durable store,
outstanding prompts and the pairing event handler, and exposes the
operations the presentation layer needs. Presentation operations never
raise; they return OperationResult values.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from btguard.audit.database import AuditLog
from btguard.bluetooth.adapter import BluetoothAdapter, PairingNotification
from btguard.core.handler import AttemptOutcome, AttemptState, PairingEventHandler
from btguard.core.prompt import DecisionPrompt, PromptBroker
from btguard.errors import (
    BTGuardError,
    InvalidDecision,
    MalformedEventError,
    OperationResult,
    PromptNotFound,
    StorageUnavailable,
)
from btguard.policy.models import (
    Classification,
    Decision,
    DeviceIdentity,
    PolicyState,
    normalize_identity,
)
from btguard.policy.registry import DeviceRegistry
from btguard.policy.store import PolicyStore
from btguard.storage.database import PreferenceDatabase

if TYPE_CHECKING:
    from btguard.config import BTGuardConfig


logger = logging.getLogger(__name__)

# Listener signature: (event_type, payload)
EngineListener = Callable[[str, dict[str, Any]], None]


class TrustEngine:
    """
    Trust decision engine instance.

    Lifecycle: start() loads the policy, stop() dismisses outstanding
    prompts. handle() is fed by the inbox processor.
    """

    def __init__(
        self,
        store: PolicyStore,
        adapter: BluetoothAdapter | None = None,
        audit: AuditLog | None = None,
        session_window: float = 10.0,
        trust_bonded_on_start: bool = True,
        auto_decision: Decision | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Durable policy store
            adapter: OS wireless stack collaborator
            audit: Optional audit log
            session_window: Pairing-session de-duplication window in seconds
            trust_bonded_on_start: Trust unclassified bonded devices on start
            auto_decision: Answer every prompt with this decision
        """
        self.store = store
        self.adapter = adapter
        self.audit = audit
        self.trust_bonded_on_start = trust_bonded_on_start
        self.auto_decision = auto_decision

        self.registry = DeviceRegistry()
        self.broker = PromptBroker()
        self.handler = PairingEventHandler(
            registry=self.registry,
            store=store,
            broker=self.broker,
            adapter=adapter,
            audit=audit,
            session_window=session_window,
        )
        self.handler.preflight = self._ensure_loaded

        self.degraded = False
        self.started = False
        # Policy writes wait until the stored sets have been read once
        self._loaded = False
        self._listeners: list[EngineListener] = []
        self._background: set[asyncio.Task] = set()

        self.broker.add_presenter(self._on_prompt_opened)
        self.handler.add_outcome_hook(self._on_outcome)

    @classmethod
    def from_config(
        cls,
        config: BTGuardConfig,
        adapter: BluetoothAdapter | None = None,
    ) -> TrustEngine:
        """
        Build an engine and its storage from configuration.

        Args:
            config: Loaded configuration
            adapter: OS wireless stack collaborator

        Returns:
            Unstarted TrustEngine
        """
        backend = PreferenceDatabase(
            config.storage.path,
            wal_mode=config.storage.wal_mode,
        )
        store = PolicyStore(backend, namespace=config.policy.namespace)

        audit = None
        if config.audit.enabled:
            audit = AuditLog(config.audit.path, wal_mode=config.audit.wal_mode)

        auto_decision = None
        if config.prompt.auto_decision:
            auto_decision = Decision.from_name(config.prompt.auto_decision)

        engine = cls(
            store=store,
            adapter=adapter,
            audit=audit,
            session_window=config.policy.session_window,
            trust_bonded_on_start=config.policy.trust_bonded_on_start,
            auto_decision=auto_decision,
        )
        if config.prompt.log_prompts:
            engine.broker.add_presenter(_log_prompt)
        return engine

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> OperationResult:
        """
        Load the persisted policy.

        If storage cannot be read the engine starts degraded with an empty
        policy: every attempt is deferred and no policy write happens
        until the store has been read successfully.

        Returns:
            OperationResult with the loaded PolicyState, or the
            StorageUnavailable error when degraded
        """
        self.started = True
        self.broker.closed = False
        try:
            state = self.store.load()
        except StorageUnavailable as e:
            self.degraded = True
            self._loaded = False
            self.registry.replace(PolicyState())
            logger.error("Starting without stored policy, all attempts deferred: %s", e)
            return OperationResult.failure(e)

        self.degraded = False
        self._loaded = True
        self.registry.replace(state)
        self._repair_overlap(state)

        if self.trust_bonded_on_start:
            await self._trust_bonded()

        logger.info(
            "Trust engine started: %d trusted, %d blocked",
            len(self.registry.trusted), len(self.registry.blocked),
        )
        return OperationResult.success(self.registry.state())

    async def stop(self) -> None:
        """Dismiss outstanding prompts and wait for background work."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.broker.close()
        self.started = False
        logger.info("Trust engine stopped")

    def _repair_overlap(self, state: PolicyState) -> None:
        """Rewrite a stored policy that lists devices in both sets as blocked."""
        if not state.overlap():
            return
        result = self.store.save(state.trusted - state.blocked, state.blocked)
        if result.ok:
            self.registry.replace(result.value)
            logger.info("Repaired %d overlapping policy entries", len(state.overlap()))
        else:
            logger.warning("Could not repair overlapping policy: %s", result.message)

    async def _trust_bonded(self) -> None:
        bonded = self._list_bonded()
        if not bonded:
            return
        result = await self.handler.seed_trusted(bonded)
        if not result.ok:
            logger.error("Could not trust bonded devices: %s", result.message)
        elif result.value:
            self._emit("policy.updated", {
                "identities": result.value,
                "classification": Classification.TRUSTED.value,
            })

    def _ensure_loaded(self) -> OperationResult:
        """
        Read the stored policy if it has not been read yet.

        Covers writes made before start() and writes while degraded;
        writing without having read the store would overwrite it.
        """
        if self._loaded:
            return OperationResult.success()
        try:
            state = self.store.load()
        except StorageUnavailable as e:
            return OperationResult.failure(e)

        recovered = self.degraded
        self.degraded = False
        self._loaded = True
        self.registry.replace(state)
        if recovered:
            logger.info("Policy storage available again")
        return OperationResult.success()

    # =========================================================================
    # Pairing events
    # =========================================================================

    async def handle(self, notification: PairingNotification) -> AttemptOutcome:
        """Process one pairing notification."""
        return await self.handler.handle(notification)

    def _on_outcome(self, outcome: AttemptOutcome) -> None:
        if outcome.attempt is None:
            return
        if outcome.was_rejected:
            self._emit("device.rejected", outcome.to_dict())
        elif AttemptState.ALLOWED in outcome.states:
            self._emit("device.allowed", outcome.to_dict())
        elif AttemptState.IGNORED in outcome.states:
            self._emit("device.ignored", outcome.to_dict())

    def _on_prompt_opened(self, prompt: DecisionPrompt) -> None:
        self._emit("prompt.opened", prompt.to_dict())

        if self.auto_decision is not None:
            task = asyncio.get_running_loop().create_task(
                self.resolve_prompt(prompt.identity, self.auto_decision)
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    # =========================================================================
    # Presentation interface
    # =========================================================================

    def get_snapshot(
        self,
        classification: Classification | None = None,
    ) -> OperationResult:
        """
        List classified devices for display.

        Returns:
            OperationResult with a list of DeviceEntry, sorted by name
        """
        try:
            entries = self.registry.snapshot(self._list_bonded(), classification)
        except Exception as e:
            logger.error("Snapshot failed: %s", e)
            return OperationResult.failure(BTGuardError(str(e)))
        return OperationResult.success(entries)

    async def remove_trusted(self, identity: DeviceIdentity) -> OperationResult:
        """Remove a device from the trusted set."""
        return await self._change(identity, Classification.UNCLASSIFIED, Classification.TRUSTED)

    async def remove_blocked(self, identity: DeviceIdentity) -> OperationResult:
        """Remove a device from the blocked set."""
        return await self._change(identity, Classification.UNCLASSIFIED, Classification.BLOCKED)

    async def trust_device(self, identity: DeviceIdentity) -> OperationResult:
        """
        Trust a device directly.

        If a prompt is outstanding for the device it is answered with
        ADD_TRUSTED so that waiting attempts are released.
        """
        return await self._classify_directly(identity, Decision.ADD_TRUSTED)

    async def block_device(self, identity: DeviceIdentity) -> OperationResult:
        """
        Block a device directly.

        If a prompt is outstanding for the device it is answered with
        ADD_BLOCKED_AND_REJECT, which also refuses the pending attempt.
        """
        return await self._classify_directly(identity, Decision.ADD_BLOCKED_AND_REJECT)

    async def resolve_prompt(
        self,
        identity: DeviceIdentity,
        decision: Decision | str,
    ) -> OperationResult:
        """
        Answer the outstanding prompt for a device.

        Args:
            identity: Device the prompt was opened for
            decision: Decision or its name ("trust", "block", "ignore")

        Returns:
            OperationResult; StorageWriteError when the decision could not
            be persisted (the prompt stays open for another answer),
            PromptNotFound when nothing is outstanding
        """
        if isinstance(decision, str):
            parsed = Decision.from_name(decision)
            if parsed is None:
                return OperationResult.failure(
                    InvalidDecision(f"Unknown decision: {decision}")
                )
            decision = parsed

        identity = normalize_identity(identity)
        if identity is None:
            return OperationResult.failure(PromptNotFound("No device identity given"))

        try:
            result = await self.handler.apply_decision(identity, decision)
        except Exception as e:
            logger.error("Failed to apply decision for %s: %s", identity, e)
            return OperationResult.failure(BTGuardError(str(e)))

        # A failed answer leaves the prompt outstanding
        if not result.ok:
            return result

        self._emit("prompt.resolved", {
            "identity": identity,
            "decision": decision.value,
            **result.to_dict(),
        })
        if decision is not Decision.IGNORE:
            target = (
                Classification.TRUSTED
                if decision is Decision.ADD_TRUSTED
                else Classification.BLOCKED
            )
            self._emit_policy(identity, target)
        return result

    def pending_prompts(self) -> list[DecisionPrompt]:
        """Outstanding prompts, oldest first."""
        return self.broker.pending()

    async def _classify_directly(
        self,
        identity: DeviceIdentity,
        decision: Decision,
    ) -> OperationResult:
        normalized = normalize_identity(identity)
        if normalized is None:
            return _invalid_identity(identity)

        if self.broker.get(normalized) is not None:
            result = await self.resolve_prompt(normalized, decision)
            if not isinstance(result.error, PromptNotFound):
                return result

        target = (
            Classification.TRUSTED
            if decision is Decision.ADD_TRUSTED
            else Classification.BLOCKED
        )
        return await self._change(normalized, target)

    async def _change(
        self,
        identity: DeviceIdentity,
        target: Classification,
        expected: Classification | None = None,
    ) -> OperationResult:
        normalized = normalize_identity(identity)
        if normalized is None:
            return _invalid_identity(identity)

        try:
            result = await self.handler.change_classification(normalized, target, expected)
        except Exception as e:
            logger.error("Failed to change %s: %s", normalized, e)
            return OperationResult.failure(BTGuardError(str(e)))

        if result.ok:
            self._emit_policy(normalized, target)
        return result

    # =========================================================================
    # Events and statistics
    # =========================================================================

    @property
    def busy(self) -> bool:
        """Whether automatic prompt answers are still being applied."""
        return bool(self._background)

    def add_listener(self, listener: EngineListener) -> None:
        """Add a listener for engine events (prompts, decisions, policy)."""
        self._listeners.append(listener)

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                listener(event_type, payload)
            except Exception as e:
                logger.error("Engine listener error: %s", e)

    def _emit_policy(self, identity: DeviceIdentity, classification: Classification) -> None:
        self._emit("policy.updated", {
            "identities": [identity],
            "classification": classification.value,
        })

    def _list_bonded(self) -> dict[str, str | None]:
        """Bonded devices from the OS, empty if unavailable."""
        if self.adapter is None:
            return {}
        try:
            if not self.adapter.has_connect_permission():
                return {}
            return dict(self.adapter.list_bonded())
        except Exception as e:
            logger.warning("Could not list bonded devices: %s", e)
            return {}

    def get_statistics(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "started": self.started,
            "degraded": self.degraded,
            "trusted": len(self.registry.trusted),
            "blocked": len(self.registry.blocked),
            **self.handler.get_statistics(),
        }

    def close(self) -> None:
        """Release storage connections."""
        backend = getattr(self.store, "backend", None)
        if backend is not None and hasattr(backend, "close"):
            backend.close()
        if self.audit is not None:
            self.audit.close()


def _invalid_identity(identity: Any) -> OperationResult:
    return OperationResult.failure(
        MalformedEventError(f"Invalid device identity: {identity!r}")
    )


def _log_prompt(prompt: DecisionPrompt) -> None:
    logger.warning(
        "Unregistered device %s (%s) requests pairing: trust, block or ignore",
        prompt.display_name or "Unknown device", prompt.identity,
    )
