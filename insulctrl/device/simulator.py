# insulctrl/device/simulator.py
"""Simulated appliance and an in-process transport that talks to it.

The simulated appliance never looks at the wall clock after it is
created: its clock advances one second per :meth:`SimulatedDevice.tick`,
so a run is fully determined by its seed and the sequence of ticks and
commands.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

from ..clock import second_of_day
from ..commands import Command, SetAlarm, SyncTime, ToggleArm, ToggleRelay
from ..const import DEFAULT_ALARM_HOUR, DEFAULT_ALARM_MINUTE, TICK_INTERVAL
from ..exception import FrameDecodeError
from ..protocol import STATE_FIELDS, WireCodec
from ..state import DeviceSnapshot, Mode
from .transport import DisconnectCallback, FrameCallback, PeriodicJob, Transport

_LOGGER = logging.getLogger(__name__)


class SimulatedDevice:
    """Clock-driven stand-in for the real appliance."""

    def __init__(
        self,
        device_clock: Optional[int] = None,
        alarm_hour: int = DEFAULT_ALARM_HOUR,
        alarm_minute: int = DEFAULT_ALARM_MINUTE,
        mode: Mode = Mode.IDLE,
        relay: bool = False,
    ) -> None:
        # Seeded once; afterwards only ticks and SyncTime move the clock.
        self.device_clock = int(time.time()) if device_clock is None else int(device_clock)
        self.alarm_hour = alarm_hour
        self.alarm_minute = alarm_minute
        self.mode = mode
        self.relay = relay
        self.ticks = 0
        self._fired_at: Optional[int] = None

    def snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(
            mode=self.mode,
            relay=self.relay,
            alarm_hour=self.alarm_hour,
            alarm_minute=self.alarm_minute,
            device_clock=self.device_clock,
        )

    def tick(self) -> bool:
        """Advance one second; return True if the alarm fired on this tick."""
        self.ticks += 1
        self.device_clock += 1
        return self._check_alarm()

    def advance(self, seconds: int) -> int:
        """Run ``seconds`` ticks; return how many of them fired the alarm."""
        return sum(1 for _ in range(int(seconds)) if self.tick())

    def _check_alarm(self) -> bool:
        if self.mode is not Mode.ARMED:
            return False
        alarm_second = self.alarm_hour * 3600 + self.alarm_minute * 60
        if second_of_day(self.device_clock) != alarm_second:
            return False
        if self._fired_at == self.device_clock:
            return False
        self._fired_at = self.device_clock
        self.mode = Mode.ON
        self.relay = True
        _LOGGER.debug("Simulated alarm fired at %s", self.device_clock)
        return True

    def handle(self, command: Command) -> None:
        """Apply one command the way the appliance firmware does."""
        if isinstance(command, SyncTime):
            self.device_clock = int(command.ts)
        elif isinstance(command, SetAlarm):
            self.alarm_hour = int(command.hour)
            self.alarm_minute = int(command.minute)
        elif isinstance(command, ToggleArm):
            arm = command.target if command.target is not None else self.mode is not Mode.ARMED
            if arm:
                self.mode = Mode.ARMED
            else:
                # Disarming also drops the relay as a safety default.
                self.mode = Mode.IDLE
                self.relay = False
        elif isinstance(command, ToggleRelay):
            self.relay = command.target if command.target is not None else not self.relay
        else:
            raise TypeError(f"Unsupported command: {command!r}")
        _LOGGER.debug("Simulated device handled %s -> %s", command, self.snapshot())


class SimulatedTransport(Transport):
    """Transport whose far end is a :class:`SimulatedDevice`.

    Frames cross the same codec as on a real link: commands are decoded
    on the appliance side and state changes are pushed back as encoded
    notifications.
    """

    name = "simulated"

    def __init__(self, codec: WireCodec, device: Optional[SimulatedDevice] = None) -> None:
        self.codec = codec
        self.device = device or SimulatedDevice()
        self._on_frame: FrameCallback | None = None
        self._disconnected_callback: DisconnectCallback | None = None
        self._published: Optional[DeviceSnapshot] = None
        self.last_frame: bytes | None = None

    async def request_link(self) -> None:
        _LOGGER.debug("Simulated link requested")

    async def connect(self, disconnected_callback: DisconnectCallback) -> None:
        self._disconnected_callback = disconnected_callback

    async def resolve_service(self) -> None:
        pass

    async def resolve_characteristic(self) -> None:
        pass

    async def subscribe(self, on_frame: FrameCallback) -> None:
        self._on_frame = on_frame
        self._published = None
        self.publish()

    async def write(self, data: bytes) -> None:
        try:
            command = self.codec.decode_command(data)
        except FrameDecodeError:
            # The appliance ignores garbage; nothing is published back.
            _LOGGER.debug("Simulated device rejected frame %r", data, exc_info=True)
            return
        self.device.handle(command)
        self.publish()

    async def close(self) -> None:
        self._on_frame = None
        self._disconnected_callback = None

    def timers(self) -> Sequence[PeriodicJob]:
        return ((TICK_INTERVAL, self.tick),)

    def tick(self) -> None:
        self.device.tick()
        self.publish()

    def drop_link(self) -> None:
        """Emulate the appliance going away (power off, out of range)."""
        callback = self._disconnected_callback
        self._on_frame = None
        self._disconnected_callback = None
        if callback is not None:
            callback()

    def publish(self) -> None:
        """Push the fields that changed since the last notification."""
        if self._on_frame is None:
            return
        current = self.device.snapshot()
        changed: Optional[list[str]] = None
        if self._published is not None:
            changed = [
                name
                for name in STATE_FIELDS
                if getattr(current, name) != getattr(self._published, name)
            ]
        self._published = current
        frame = self.codec.encode_state(current, changed)
        self.last_frame = frame
        self._on_frame(frame)
