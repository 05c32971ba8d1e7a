"""
Tests for the Bluetooth adapter contract and the simulated adapter.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from btguard.bluetooth.adapter import BluetoothAdapter, PairingNotification
from btguard.bluetooth.simulated import SimulatedAdapter


HEADSET = "AA:BB:CC:DD:EE:01"
STRANGER = "11:22:33:44:55:66"


async def collect(adapter: SimulatedAdapter) -> list[PairingNotification]:
    return [n async for n in adapter.notifications()]


class TestPairingNotification:
    """Tests for PairingNotification."""

    def test_from_dict(self) -> None:
        """Test identity and name keys with aliases."""
        first = PairingNotification.from_dict({"identity": HEADSET, "name": "Headset"})
        second = PairingNotification.from_dict({"address": STRANGER, "display_name": "Spk"})

        assert first.identity == HEADSET
        assert first.display_name == "Headset"
        assert second.identity == STRANGER
        assert second.display_name == "Spk"

    def test_from_dict_missing_identity(self) -> None:
        """Test a notification without address keeps identity empty."""
        notification = PairingNotification.from_dict({"name": "Ghost"})
        assert notification.identity is None


class TestSimulatedAdapter:
    """Tests for SimulatedAdapter class."""

    def test_is_adapter(self) -> None:
        """Test the simulated adapter implements the contract."""
        assert isinstance(SimulatedAdapter(), BluetoothAdapter)

    def test_list_bonded(self) -> None:
        """Test bonded devices are reported with permission."""
        adapter = SimulatedAdapter(bonded={HEADSET: "Headset"})
        assert adapter.list_bonded() == {HEADSET: "Headset"}

    def test_list_bonded_without_permission(self) -> None:
        """Test nothing is listed without permission."""
        adapter = SimulatedAdapter(bonded={HEADSET: "Headset"}, permission=False)

        assert not adapter.has_connect_permission()
        assert adapter.list_bonded() == {}

    def test_cancel_recorded(self) -> None:
        """Test cancel requests are recorded, including refused ones."""
        adapter = SimulatedAdapter(fail_cancel=[STRANGER])

        assert adapter.cancel_bonding(HEADSET) is True
        assert adapter.cancel_bonding(STRANGER) is False
        assert adapter.cancelled == [HEADSET, STRANGER]

    @pytest.mark.asyncio
    async def test_notifications_in_order(self) -> None:
        """Test scripted events are delivered in order, then pushed ones."""
        adapter = SimulatedAdapter(events=[
            PairingNotification(identity=HEADSET),
            PairingNotification(identity=STRANGER),
        ])
        adapter.push(PairingNotification(identity="pushed"))

        delivered = await collect(adapter)

        assert [n.identity for n in delivered] == [HEADSET, STRANGER, "pushed"]

    @pytest.mark.asyncio
    async def test_stop_ends_stream(self) -> None:
        """Test a stopped adapter delivers nothing more."""
        adapter = SimulatedAdapter(events=[PairingNotification(identity=HEADSET)])
        adapter.stop()

        assert await collect(adapter) == []

    @pytest.mark.asyncio
    async def test_from_file(self, sample_script: Path) -> None:
        """Test loading a YAML script."""
        adapter = SimulatedAdapter.from_file(sample_script)

        assert adapter.list_bonded() == {HEADSET: "Headset"}
        delivered = await collect(adapter)
        assert [n.identity for n in delivered] == [HEADSET, STRANGER, STRANGER, None]

    def test_from_file_missing(self, temp_dir: Path) -> None:
        """Test missing script raises."""
        with pytest.raises(FileNotFoundError):
            SimulatedAdapter.from_file(temp_dir / "nope.yaml")

    def test_from_file_options(self, temp_dir: Path) -> None:
        """Test permission and cancel failure options."""
        path = temp_dir / "script.yaml"
        path.write_text(yaml.dump({
            "permission": False,
            "fail_cancel": [STRANGER],
            "delay": 0.5,
        }))

        adapter = SimulatedAdapter.from_file(path)

        assert not adapter.has_connect_permission()
        assert adapter.fail_cancel == {STRANGER}
        assert adapter.delay == 0.5
        assert adapter.events == []
