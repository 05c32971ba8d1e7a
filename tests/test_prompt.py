"""
Tests for decision prompts and the prompt broker.
"""

from __future__ import annotations

import asyncio

import pytest

from btguard.core.prompt import DecisionPrompt, PromptBroker, PromptResolution
from btguard.errors import OperationResult
from btguard.policy.models import Decision, PairingAttempt


HEADSET = "AA:BB:CC:DD:EE:01"
STRANGER = "11:22:33:44:55:66"


def _resolution(decision: Decision = Decision.ADD_TRUSTED) -> PromptResolution:
    return PromptResolution(decision=decision, result=OperationResult.success())


class TestDecisionPrompt:
    """Tests for DecisionPrompt class."""

    @pytest.mark.asyncio
    async def test_resolves_once(self) -> None:
        """Test a prompt can only be answered once."""
        prompt = DecisionPrompt(identity=HEADSET, display_name="Headset")

        assert prompt.complete(_resolution())
        assert not prompt.complete(_resolution(Decision.IGNORE))
        assert prompt.resolution.decision is Decision.ADD_TRUSTED

    @pytest.mark.asyncio
    async def test_wait(self) -> None:
        """Test waiters receive the answer."""
        prompt = DecisionPrompt(identity=HEADSET, display_name=None)
        waiter = asyncio.create_task(prompt.wait())
        await asyncio.sleep(0)

        assert not waiter.done()
        prompt.complete(_resolution(Decision.IGNORE))

        resolution = await waiter
        assert resolution.decision is Decision.IGNORE

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_prompt(self) -> None:
        """Test cancelling one waiter does not cancel the prompt."""
        prompt = DecisionPrompt(identity=HEADSET, display_name=None)
        waiter = asyncio.create_task(prompt.wait())
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert prompt.complete(_resolution())

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        """Test prompt serialization."""
        prompt = DecisionPrompt(
            identity=HEADSET,
            display_name="Headset",
            attempts=[PairingAttempt(identity=HEADSET)],
        )

        data = prompt.to_dict()
        assert data["identity"] == HEADSET
        assert data["attempts"] == 1
        assert data["resolved"] is False


class TestPromptBroker:
    """Tests for PromptBroker class."""

    @pytest.mark.asyncio
    async def test_open_and_join(self) -> None:
        """Test a second attempt joins the outstanding prompt."""
        broker = PromptBroker()

        first, created = broker.open(PairingAttempt(identity=HEADSET, sequence=1))
        second, joined = broker.open(PairingAttempt(identity=HEADSET, sequence=2))

        assert created
        assert not joined
        assert first is second
        assert len(first.attempts) == 2
        assert broker.get_statistics() == {"opened": 1, "coalesced": 1, "pending": 1}

    @pytest.mark.asyncio
    async def test_one_prompt_per_identity(self) -> None:
        """Test different identities get separate prompts."""
        broker = PromptBroker()
        broker.open(PairingAttempt(identity=HEADSET))
        broker.open(PairingAttempt(identity=STRANGER))

        assert {p.identity for p in broker.pending()} == {HEADSET, STRANGER}

    @pytest.mark.asyncio
    async def test_presenter_called_once(self) -> None:
        """Test presenters see only newly opened prompts."""
        broker = PromptBroker()
        seen = []
        broker.add_presenter(seen.append)

        broker.open(PairingAttempt(identity=HEADSET))
        broker.open(PairingAttempt(identity=HEADSET))

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_presenter_error_isolated(self) -> None:
        """Test a failing presenter does not prevent the prompt."""
        broker = PromptBroker()

        def broken(prompt: DecisionPrompt) -> None:
            raise RuntimeError("display gone")

        broker.add_presenter(broken)
        prompt, created = broker.open(PairingAttempt(identity=HEADSET))

        assert created
        assert broker.get(HEADSET) is prompt

    @pytest.mark.asyncio
    async def test_complete_stops_tracking(self) -> None:
        """Test a completed prompt is no longer outstanding."""
        broker = PromptBroker()
        prompt, _ = broker.open(PairingAttempt(identity=HEADSET))

        assert broker.complete(prompt, _resolution())
        assert broker.get(HEADSET) is None
        assert len(broker) == 0

        again, created = broker.open(PairingAttempt(identity=HEADSET))
        assert created
        assert again is not prompt

    @pytest.mark.asyncio
    async def test_dismiss_all(self) -> None:
        """Test teardown resolves every prompt as a dismissal."""
        broker = PromptBroker()
        first, _ = broker.open(PairingAttempt(identity=HEADSET))
        second, _ = broker.open(PairingAttempt(identity=STRANGER))

        assert broker.dismiss_all() == 2
        assert first.resolution.dismissed
        assert second.resolution.decision is Decision.IGNORE
        assert broker.pending() == []

    @pytest.mark.asyncio
    async def test_closed_broker_dismisses_new_prompts(self) -> None:
        """Test prompts opened after close resolve immediately as ignored."""
        broker = PromptBroker()
        seen = []
        broker.add_presenter(seen.append)
        broker.close()

        prompt, _ = broker.open(PairingAttempt(identity=HEADSET))

        assert prompt.resolved
        assert prompt.resolution.dismissed
        assert broker.get(HEADSET) is None
        assert seen == []
