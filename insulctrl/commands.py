# insulctrl/commands.py
"""Command values sent from the client to the appliance."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class SyncTime:
    """Re-base the appliance clock to ``ts`` (epoch seconds)."""

    ts: int


@dataclass(frozen=True)
class SetAlarm:
    """Configure the alarm time."""

    hour: int
    minute: int

    def __post_init__(self) -> None:
        if not 0 <= int(self.hour) <= 23:
            raise ValueError("Alarm hour must be between 0 and 23.")
        if not 0 <= int(self.minute) <= 59:
            raise ValueError("Alarm minute must be between 0 and 59.")


@dataclass(frozen=True)
class ToggleArm:
    """Arm or disarm.

    ``target`` stays None for a plain toggle; wire profiles that must name
    the desired state explicitly fill it in at encode time.
    """

    target: Optional[bool] = None


@dataclass(frozen=True)
class ToggleRelay:
    """Flip the relay (or drive it to ``target``)."""

    target: Optional[bool] = None


Command = Union[SyncTime, SetAlarm, ToggleArm, ToggleRelay]


def create_sync_time_command(now: float | None = None) -> SyncTime:
    """Create a time sync command carrying the local wall clock."""
    if now is None:
        now = time.time()
    return SyncTime(int(now))


def create_set_alarm_command(hour: int, minute: int) -> SetAlarm:
    return SetAlarm(int(hour), int(minute))


def create_toggle_arm_command() -> ToggleArm:
    return ToggleArm()


def create_toggle_relay_command() -> ToggleRelay:
    return ToggleRelay()
