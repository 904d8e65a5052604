# insulctrl/state.py
"""Authoritative in-memory appliance state."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from .commands import SetAlarm
from .const import DEFAULT_ALARM_HOUR, DEFAULT_ALARM_MINUTE

_LOGGER = logging.getLogger(__name__)


class Mode(str, Enum):
    """Appliance arming mode."""

    IDLE = "IDLE"
    ARMED = "ARMED"
    ON = "ON"


@dataclass(frozen=True)
class DeviceSnapshot:
    """One consistent view of the appliance.

    ``device_clock`` is epoch seconds as reported by the appliance,
    ``last_update`` the local epoch milliseconds of the last refresh.
    """

    mode: Mode = Mode.IDLE
    relay: bool = False
    alarm_hour: int = DEFAULT_ALARM_HOUR
    alarm_minute: int = DEFAULT_ALARM_MINUTE
    device_clock: int = 0
    last_update: int = 0

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "relay": self.relay,
            "alarm": f"{self.alarm_hour:02d}:{self.alarm_minute:02d}",
            "device_clock": self.device_clock,
            "last_update": self.last_update,
        }


@dataclass(frozen=True)
class StateUpdate:
    """A decoded notification.

    ``full=False`` merges only the fields that are not None.
    ``full=True`` replaces mode, relay and alarm; all four must be set.
    """

    mode: Optional[Mode] = None
    relay: Optional[bool] = None
    alarm_hour: Optional[int] = None
    alarm_minute: Optional[int] = None
    device_clock: Optional[int] = None
    full: bool = False

    def __post_init__(self) -> None:
        if self.full and None in (self.mode, self.relay, self.alarm_hour, self.alarm_minute):
            raise ValueError("A full update must carry mode, relay and alarm.")

    def changes(self) -> dict:
        values = {
            "mode": self.mode,
            "relay": self.relay,
            "alarm_hour": self.alarm_hour,
            "alarm_minute": self.alarm_minute,
            "device_clock": self.device_clock,
        }
        return {k: v for k, v in values.items() if v is not None}


class DeviceStateStore:
    """Single-writer holder of the current :class:`DeviceSnapshot`.

    The snapshot is immutable and swapped in one assignment, so a reader
    sees either the previous or the new snapshot, never a mix.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._snapshot = self._initial()

    def _initial(self) -> DeviceSnapshot:
        now = self._clock()
        return DeviceSnapshot(device_clock=int(now), last_update=int(now * 1000))

    @property
    def snapshot(self) -> DeviceSnapshot:
        return self._snapshot

    def reset(self) -> DeviceSnapshot:
        """Drop everything learned from the appliance."""
        self._snapshot = self._initial()
        return self._snapshot

    def apply(self, update: StateUpdate, now_ms: int | None = None) -> DeviceSnapshot:
        """Merge (or replace) ``update`` into the snapshot and stamp it."""
        if now_ms is None:
            now_ms = int(self._clock() * 1000)
        current = self._snapshot
        changes = update.changes()
        new_clock = changes.get("device_clock")
        if new_clock is not None and new_clock < current.device_clock:
            _LOGGER.debug(
                "Device clock went backwards (time sync?): %s -> %s", current.device_clock, new_clock
            )
        self._snapshot = replace(current, last_update=int(now_ms), **changes)
        return self._snapshot


@dataclass
class PendingAlarmInput:
    """Operator's draft alarm time, not yet sent to the appliance."""

    hour: int = DEFAULT_ALARM_HOUR
    minute: int = DEFAULT_ALARM_MINUTE

    def set(self, hour: int, minute: int) -> None:
        if not 0 <= int(hour) <= 23 or not 0 <= int(minute) <= 59:
            raise ValueError(f"Invalid alarm time {hour}:{minute}")
        self.hour = int(hour)
        self.minute = int(minute)

    def to_command(self) -> SetAlarm:
        return SetAlarm(self.hour, self.minute)
