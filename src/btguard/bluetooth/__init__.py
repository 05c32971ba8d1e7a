"""
Bluetooth collaborator interfaces.

The engine talks to the host wireless stack only through
BluetoothAdapter.
"""

from btguard.bluetooth.adapter import BluetoothAdapter, PairingNotification
from btguard.bluetooth.simulated import SimulatedAdapter

__all__ = [
    "BluetoothAdapter",
    "PairingNotification",
    "SimulatedAdapter",
]
