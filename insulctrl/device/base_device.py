# insulctrl/device/base_device.py
"""Connection state machine for one appliance."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .. import commands
from ..clock import countdown_to
from ..commands import Command
from ..exception import (
    ALREADY_CONNECTING,
    CHARACTERISTIC_NOT_FOUND,
    CONNECT_CANCELLED,
    LINK_FAILED,
    NO_DEVICE_CHOSEN,
    SERVICE_NOT_FOUND,
    SUBSCRIPTION_FAILED,
    CommandSendError,
    ConnectError,
    FrameDecodeError,
    NotConnectedError,
)
from ..const import REFRESH_INTERVAL
from ..eventlog import EventLog
from ..protocol import WireCodec
from ..state import DeviceSnapshot, DeviceStateStore
from .transport import Transport

RefreshCallback = Callable[[DeviceSnapshot], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ApplianceDevice:
    """Owns the link lifecycle, the state store and the periodic tasks.

    IDLE → CONNECTING → CONNECTED → IDLE. Every connection attempt gets a
    new generation number; callbacks and handshake steps that belong to an
    older generation are ignored, which is how a disconnect that races a
    handshake wins over it. A new attempt waits until a cancelled one has
    released the link, so the stale attempt never closes a newer session.
    """

    def __init__(
        self,
        transport: Transport,
        codec: WireCodec,
        name: str | None = None,
        on_refresh: Optional[RefreshCallback] = None,
        refresh_interval: float = REFRESH_INTERVAL,
    ) -> None:
        self._transport = transport
        self._codec = codec
        self._name = name or transport.name
        self._logger = logging.getLogger(self._name.replace(":", "-"))
        self._store = DeviceStateStore()
        self._log = EventLog(codec.log_capacity)
        self._state = ConnectionState.IDLE
        self._generation = 0
        self._channel_ready = False
        self._operation_lock: asyncio.Lock = asyncio.Lock()
        self._timers: list[asyncio.Task] = []
        self._teardown: asyncio.Task | None = None
        self._attempt: asyncio.Future[None] | None = None
        self._on_refresh = on_refresh
        self._refresh_interval = refresh_interval
        self.loop = asyncio.get_running_loop()

    def set_log_level(self, level: int | str) -> None:
        """Set log level."""
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        self._logger.setLevel(level)

    # ────────────────────────────────────────────────────────────────
    # Read accessors
    # ────────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def codec(self) -> WireCodec:
        return self._codec

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def store(self) -> DeviceStateStore:
        return self._store

    @property
    def snapshot(self) -> DeviceSnapshot:
        return self._store.snapshot

    @property
    def log(self) -> EventLog:
        return self._log

    def countdown(self) -> str:
        """Countdown to the alarm, computed from the latest device clock."""
        snap = self._store.snapshot
        return countdown_to(snap.device_clock, snap.alarm_hour, snap.alarm_minute)

    def _record(self, message: str, level: int = logging.DEBUG) -> None:
        self._log.append(message)
        self._logger.log(level, "%s: %s", self._name, message)

    # ────────────────────────────────────────────────────────────────
    # Connect
    # ────────────────────────────────────────────────────────────────

    async def connect(self) -> ConnectionState:
        """Run the handshake and return CONNECTED, or raise :class:`ConnectError`."""
        while True:
            if self._state is ConnectionState.CONNECTED:
                return self._state
            if self._state is ConnectionState.CONNECTING:
                raise ConnectError(ALREADY_CONNECTING)
            pending = [
                fut for fut in (self._attempt, self._teardown) if fut is not None and not fut.done()
            ]
            if not pending:
                break
            # a cancelled attempt or a teardown still owns the transport
            self._logger.debug("%s: Waiting for the previous session to release the link", self._name)
            await asyncio.wait(pending)

        attempt: asyncio.Future[None] = self.loop.create_future()
        self._attempt = attempt
        try:
            return await self._handshake()
        finally:
            attempt.set_result(None)

    async def _handshake(self) -> ConnectionState:
        self._generation += 1
        generation = self._generation
        self._channel_ready = False
        self._store.reset()
        self._set_state(ConnectionState.CONNECTING)
        self._logger.debug("%s: Connecting via %s", self._name, self._transport.name)

        transport = self._transport
        steps: tuple[tuple[str, Callable[[], Awaitable[None]]], ...] = (
            (NO_DEVICE_CHOSEN, transport.request_link),
            (LINK_FAILED, lambda: transport.connect(lambda: self._disconnected(generation))),
            (SERVICE_NOT_FOUND, transport.resolve_service),
            (CHARACTERISTIC_NOT_FOUND, transport.resolve_characteristic),
            (
                SUBSCRIPTION_FAILED,
                lambda: transport.subscribe(lambda data: self._notification_handler(generation, data)),
            ),
        )
        for reason, step in steps:
            try:
                await step()
            except asyncio.CancelledError:
                if generation == self._generation:
                    self._enter_idle()
                await self._release_transport()
                raise
            except Exception as ex:
                error = ex if isinstance(ex, ConnectError) else ConnectError(reason, str(ex) or None)
                await self._abort_connect(generation, error)
                raise error from ex
            if generation != self._generation:
                # disconnect() or a link loss arrived while the step was pending
                await self._release_transport()
                self._logger.debug("%s: Discarding cancelled connection attempt", self._name)
                raise ConnectError(CONNECT_CANCELLED)

        self._channel_ready = True
        self._set_state(ConnectionState.CONNECTED)
        self._start_timers()
        self._record(f"Connected ({self._codec.name} profile)", logging.INFO)
        return self._state

    async def _abort_connect(self, generation: int, error: ConnectError) -> None:
        if generation == self._generation:
            self._enter_idle()
            self._record(f"Connection failed: {error}", logging.WARNING)
        await self._release_transport()

    # ────────────────────────────────────────────────────────────────
    # Disconnect
    # ────────────────────────────────────────────────────────────────

    def disconnect(self) -> asyncio.Task | None:
        """Force IDLE now and schedule the transport teardown.

        Returns the teardown task, or None when already idle.
        """
        if self._state is ConnectionState.IDLE:
            return None
        was_connected = self._state is ConnectionState.CONNECTED
        self._enter_idle()
        self._record("Disconnected")
        if not was_connected:
            # the pending handshake releases the transport itself
            return None
        self._teardown = self.loop.create_task(self._release_transport())
        return self._teardown

    async def async_disconnect(self) -> None:
        """Disconnect and wait for the transport teardown."""
        task = self.disconnect()
        if task is not None:
            await task

    def _disconnected(self, generation: int) -> None:
        """Disconnected callback from the transport."""
        if generation != self._generation or self._state is ConnectionState.IDLE:
            return
        self._logger.warning("%s: Device unexpectedly disconnected", self._name)
        was_connected = self._state is ConnectionState.CONNECTED
        self._enter_idle()
        self._log.append("Device disconnected")
        if was_connected:
            self._teardown = self.loop.create_task(self._release_transport())

    def _enter_idle(self) -> None:
        self._generation += 1
        self._cancel_timers()
        self._channel_ready = False
        self._set_state(ConnectionState.IDLE)

    async def _release_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception:
            self._logger.debug("%s: transport close failed", self._name, exc_info=True)

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self._logger.debug("%s: %s -> %s", self._name, self._state.value, state.value)
            self._state = state

    # ────────────────────────────────────────────────────────────────
    # Periodic tasks (owned here, alive only while CONNECTED)
    # ────────────────────────────────────────────────────────────────

    def _start_timers(self) -> None:
        self._cancel_timers()
        jobs = list(self._transport.timers())
        if self._on_refresh is not None:
            jobs.append((self._refresh_interval, self._refresh))
        for interval, job in jobs:
            self._timers.append(self.loop.create_task(self._run_periodic(interval, job)))

    def _cancel_timers(self) -> None:
        timers, self._timers = self._timers, []
        for task in timers:
            task.cancel()

    async def _run_periodic(self, interval: float, job: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                job()
            except Exception:
                self._logger.debug("%s: periodic job %r raised", self._name, job, exc_info=True)

    def _refresh(self) -> None:
        assert self._on_refresh is not None  # nosec
        self._on_refresh(self._store.snapshot)

    # ────────────────────────────────────────────────────────────────
    # Notifications
    # ────────────────────────────────────────────────────────────────

    def _notification_handler(self, generation: int, data: bytes) -> None:
        """Decode one frame and merge it; never awaits, never raises."""
        if generation != self._generation:
            return
        try:
            update = self._codec.decode(data)
        except FrameDecodeError as ex:
            self._record(f"Dropped frame: {ex}")
            return
        self._store.apply(update)

    # ────────────────────────────────────────────────────────────────
    # Commands
    # ────────────────────────────────────────────────────────────────

    async def send(self, command: Command) -> None:
        """Send one command.

        Raises :class:`NotConnectedError` unless CONNECTED and
        :class:`CommandSendError` when the write fails; a failed write
        leaves the link up.
        """
        if not self._channel_ready:
            self._record(f"Rejected {command!r}: not connected", logging.WARNING)
            raise NotConnectedError(f"{self._name} is {self._state.value}")
        if self._operation_lock.locked():
            self._logger.debug("%s: Operation already in progress, waiting", self._name)
        async with self._operation_lock:
            if not self._channel_ready:
                self._record(f"Rejected {command!r}: not connected", logging.WARNING)
                raise NotConnectedError(f"{self._name} is {self._state.value}")
            payload = self._codec.encode(command, self._store.snapshot)
            self._record(f"TX: {payload.decode('utf-8')}")
            try:
                await self._transport.write(payload)
            except Exception as ex:
                self._record(f"Error: {ex}", logging.WARNING)
                raise CommandSendError(str(ex)) from ex

    async def toggle_relay(self) -> None:
        await self.send(commands.create_toggle_relay_command())

    async def toggle_arm(self) -> None:
        await self.send(commands.create_toggle_arm_command())

    async def sync_time(self, now: float | None = None) -> None:
        await self.send(commands.create_sync_time_command(now))

    async def set_alarm(self, hour: int, minute: int) -> None:
        await self.send(commands.create_set_alarm_command(hour, minute))
