"""Appliance device package."""
from __future__ import annotations

from .base_device import ApplianceDevice, ConnectionState  # noqa: F401
from .simulator import SimulatedDevice, SimulatedTransport  # noqa: F401
from .transport import BleakTransport, Transport, discover_appliances  # noqa: F401

__all__ = [
    "ApplianceDevice",
    "ConnectionState",
    "SimulatedDevice",
    "SimulatedTransport",
    "BleakTransport",
    "Transport",
    "discover_appliances",
]
