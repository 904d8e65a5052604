# insulctrl/insulctrlctl.py
"""InsulCtrl appliance control CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

import typer
from rich import print
from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.table import Table
from typing_extensions import Annotated

from .clock import countdown_to
from .commands import (
    Command,
    create_set_alarm_command,
    create_sync_time_command,
    create_toggle_arm_command,
    create_toggle_relay_command,
)
from .const import COUNTDOWN_PLACEHOLDER, SCAN_TIMEOUT, SERVICE_UUID, SIMULATED_ADDRESS
from .device import (
    ApplianceDevice,
    BleakTransport,
    SimulatedDevice,
    SimulatedTransport,
    discover_appliances,
)
from .exception import ConnectError, FrameDecodeError, InsulCtrlError
from .protocol import PROFILES, get_codec
from .state import DeviceSnapshot, DeviceStateStore, Mode, PendingAlarmInput

app = typer.Typer(help="InsulCtrl appliance control")
console = Console()


class Profile(str, Enum):
    json = "json"
    compact = "compact"


class CommandName(str, Enum):
    sync_time = "sync-time"
    set_alarm = "set-alarm"
    toggle_arm = "toggle-arm"
    toggle_relay = "toggle-relay"


# ────────────────────────────────────────────────────────────────
# Global options (profile, --debug)
# ────────────────────────────────────────────────────────────────

@app.callback()
def _global_options(
    ctx: typer.Context,
    profile: Annotated[
        Profile,
        typer.Option(envvar="INSULCTRL_PROFILE", help="Wire profile deployed on the appliance"),
    ] = Profile.json,
    debug: Annotated[
        bool,
        typer.Option("--debug/--no-debug", help="Enable verbose debug logging"),
    ] = False,
) -> None:
    """Global options for all subcommands."""
    ctx.obj = ctx.obj or {}
    ctx.obj["profile"] = profile.value
    ctx.obj["debug"] = bool(debug)

    if debug:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_level=True)],
        )
        logging.getLogger("bleak").setLevel(logging.DEBUG)
        logging.getLogger("insulctrl").setLevel(logging.DEBUG)


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────

def _make_device(
    ctx: typer.Context,
    device_address: str,
    sim_device: SimulatedDevice | None = None,
    on_refresh: Callable[[DeviceSnapshot], None] | None = None,
) -> ApplianceDevice:
    codec = get_codec(ctx.obj["profile"])
    if device_address.lower() == SIMULATED_ADDRESS:
        transport = SimulatedTransport(codec, sim_device)
    else:
        transport = BleakTransport(device_address)
    dev = ApplianceDevice(transport, codec, name=device_address, on_refresh=on_refresh)
    if ctx.obj.get("debug"):
        dev.set_log_level("DEBUG")
    return dev


def _fmt_clock(epoch: int) -> str:
    if not epoch:
        return "unknown"
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def _render(dev: ApplianceDevice) -> Table:
    snap = dev.snapshot
    # Countdown is only meaningful while armed
    if snap.mode is Mode.ARMED:
        countdown = countdown_to(snap.device_clock, snap.alarm_hour, snap.alarm_minute)
    else:
        countdown = COUNTDOWN_PLACEHOLDER
    table = Table("Field", "Value", title=f"{dev.name} ({dev.codec.name})")
    table.add_row("Connection", dev.state.value)
    table.add_row("Mode", snap.mode.value)
    table.add_row("Relay", "ON" if snap.relay else "OFF")
    table.add_row("Alarm", f"{snap.alarm_hour:02d}:{snap.alarm_minute:02d}")
    table.add_row("Countdown", countdown)
    table.add_row("Device clock", _fmt_clock(snap.device_clock))
    table.add_row("Last update", _fmt_clock(snap.last_update // 1000))
    return table


def _print_log(dev: ApplianceDevice) -> None:
    table = Table("Time", "Message", title="Log")
    for entry in dev.log:
        table.add_row(f"{datetime.fromtimestamp(entry.timestamp):%H:%M:%S}", entry.message)
    print(table)


async def _connect_or_exit(dev: ApplianceDevice) -> None:
    try:
        await dev.connect()
    except ConnectError as ex:
        print(f"[red]Connection failed:[/red] {ex}")
        raise typer.Exit(1)


def _run_device_func(
    ctx: typer.Context,
    device_address: str,
    action: Optional[Callable[[ApplianceDevice], Awaitable[None]]] = None,
    settle: float = 0.0,
    listen: float = 0.0,
    show_log: bool = False,
):
    """
    Connect, wait ``settle`` seconds for the first state frame, run
    ``action``, keep listening ``listen`` seconds, then print the state.
    """

    async def _async_func():
        dev = _make_device(ctx, device_address)
        await _connect_or_exit(dev)
        try:
            if settle:
                await asyncio.sleep(settle)
            if action is not None:
                await action(dev)
            if listen:
                await asyncio.sleep(listen)
            print(_render(dev))
            if show_log:
                _print_log(dev)
        except InsulCtrlError as ex:
            print(f"[red]{ex}[/red]")
            if show_log:
                _print_log(dev)
            raise typer.Exit(1)
        finally:
            await dev.async_disconnect()

    return asyncio.run(_async_func())


def _send(command: Command) -> Callable[[ApplianceDevice], Awaitable[None]]:
    async def _action(dev: ApplianceDevice) -> None:
        await dev.send(command)

    return _action


DeviceAddress = Annotated[
    str, typer.Argument(help=f"BLE address, or '{SIMULATED_ADDRESS}' for the simulated appliance")
]
Settle = Annotated[float, typer.Option(help="Seconds to wait for the first state frame", min=0)]
Listen = Annotated[float, typer.Option(help="Seconds to listen after sending", min=0)]
ShowLog = Annotated[bool, typer.Option("--log/--no-log", help="Print the diagnostic log")]


# ────────────────────────────────────────────────────────────────
# insulctrlctl list-devices
# ────────────────────────────────────────────────────────────────

@app.command(name="list-devices")
def list_devices(
    timeout: Annotated[float, typer.Option()] = SCAN_TIMEOUT,
    all_devices: Annotated[
        bool, typer.Option("--all/--appliances", help="Show every BLE device, not only appliances")
    ] = False,
) -> None:
    """List nearby Bluetooth devices."""
    print("the search for Bluetooth devices is running")
    devices = asyncio.run(
        discover_appliances(timeout=timeout, service_uuid=None if all_devices else SERVICE_UUID)
    )
    table = Table("Name", "Address")
    for device in devices:
        table.add_row(device.name or "(unknown)", device.address)
    print("Discovered the following devices:")
    print(table)


# ────────────────────────────────────────────────────────────────
# insulctrlctl status <device-address>
# ────────────────────────────────────────────────────────────────

@app.command(name="status")
def status(
    ctx: typer.Context,
    device_address: DeviceAddress,
    listen: Listen = 2.0,
    show_log: ShowLog = False,
) -> None:
    """Connect, wait for state notifications and print the appliance state."""
    _run_device_func(ctx, device_address, listen=listen, show_log=show_log)


# ────────────────────────────────────────────────────────────────
# insulctrlctl toggle-relay / toggle-arm / sync-time / set-alarm
# ────────────────────────────────────────────────────────────────

@app.command(name="toggle-relay")
def toggle_relay(
    ctx: typer.Context,
    device_address: DeviceAddress,
    settle: Settle = 1.0,
    listen: Listen = 1.0,
    show_log: ShowLog = False,
) -> None:
    """Flip the relay."""
    _run_device_func(
        ctx, device_address, _send(create_toggle_relay_command()), settle, listen, show_log
    )


@app.command(name="toggle-arm")
def toggle_arm(
    ctx: typer.Context,
    device_address: DeviceAddress,
    settle: Settle = 1.0,
    listen: Listen = 1.0,
    show_log: ShowLog = False,
) -> None:
    """Arm or disarm the appliance (disarming also switches the relay off)."""
    _run_device_func(
        ctx, device_address, _send(create_toggle_arm_command()), settle, listen, show_log
    )


@app.command(name="sync-time")
def sync_time(
    ctx: typer.Context,
    device_address: DeviceAddress,
    settle: Settle = 0.0,
    listen: Listen = 1.0,
    show_log: ShowLog = False,
) -> None:
    """Set the appliance clock to this computer's clock."""

    async def _action(dev: ApplianceDevice) -> None:
        await dev.send(create_sync_time_command())

    _run_device_func(ctx, device_address, _action, settle, listen, show_log)


@app.command(name="set-alarm")
def set_alarm(
    ctx: typer.Context,
    device_address: DeviceAddress,
    alarm: Annotated[datetime, typer.Argument(formats=["%H:%M"])],
    settle: Settle = 0.0,
    listen: Listen = 1.0,
    show_log: ShowLog = False,
) -> None:
    """Set the alarm time, e.g. `set-alarm <device-address> 07:30`."""
    pending = PendingAlarmInput()
    pending.set(alarm.hour, alarm.minute)
    _run_device_func(ctx, device_address, _send(pending.to_command()), settle, listen, show_log)


# ────────────────────────────────────────────────────────────────
# insulctrlctl monitor <device-address>
# ────────────────────────────────────────────────────────────────

async def _monitor(
    ctx: typer.Context,
    device_address: str,
    seconds: float,
    sim_device: SimulatedDevice | None = None,
    before: Optional[Callable[[ApplianceDevice], Awaitable[None]]] = None,
) -> None:
    with Live(console=console, auto_refresh=False) as live:
        dev = _make_device(
            ctx,
            device_address,
            sim_device=sim_device,
            on_refresh=lambda _snap: live.update(_render(dev), refresh=True),
        )
        await _connect_or_exit(dev)
        try:
            if before is not None:
                await before(dev)
            live.update(_render(dev), refresh=True)
            while dev.is_connected and seconds > 0:
                await asyncio.sleep(min(1.0, seconds))
                seconds -= 1.0
            live.update(_render(dev), refresh=True)
        finally:
            await dev.async_disconnect()


@app.command(name="monitor")
def monitor(
    ctx: typer.Context,
    device_address: DeviceAddress,
    seconds: Annotated[float, typer.Option(help="How long to watch", min=1)] = 30.0,
) -> None:
    """Watch the appliance state and the alarm countdown live."""
    try:
        asyncio.run(_monitor(ctx, device_address, seconds))
    except InsulCtrlError as ex:
        print(f"[red]{ex}[/red]")
        raise typer.Exit(1)


# ────────────────────────────────────────────────────────────────
# insulctrlctl simulate --start 07:29:50 --alarm 07:30 --arm
# ────────────────────────────────────────────────────────────────

@app.command(name="simulate")
def simulate(
    ctx: typer.Context,
    start: Annotated[
        Optional[datetime],
        typer.Option(formats=["%H:%M:%S", "%H:%M"], help="Simulated clock start (today)"),
    ] = None,
    alarm: Annotated[datetime, typer.Option(formats=["%H:%M"])] = datetime(1900, 1, 1, 7, 30),
    arm: Annotated[bool, typer.Option("--arm/--no-arm", help="Arm after connecting")] = True,
    seconds: Annotated[float, typer.Option(min=1)] = 15.0,
) -> None:
    """Run the simulated appliance and watch it, e.g. until the alarm fires."""
    device_clock = None
    if start is not None:
        device_clock = int(datetime.combine(date.today(), start.time()).timestamp())
    sim = SimulatedDevice(
        device_clock=device_clock, alarm_hour=alarm.hour, alarm_minute=alarm.minute
    )

    async def _before(dev: ApplianceDevice) -> None:
        if arm:
            await dev.toggle_arm()

    try:
        asyncio.run(_monitor(ctx, SIMULATED_ADDRESS, seconds, sim_device=sim, before=_before))
    except InsulCtrlError as ex:
        print(f"[red]{ex}[/red]")
        raise typer.Exit(1)


# ────────────────────────────────────────────────────────────────
# Offline helpers: encode / decode / countdown
# ────────────────────────────────────────────────────────────────

@app.command(name="encode")
def encode(
    ctx: typer.Context,
    command: Annotated[CommandName, typer.Argument(help="Command to encode")],
    value: Annotated[
        Optional[str], typer.Argument(help="HH:MM for set-alarm, epoch seconds for sync-time")
    ] = None,
    relay_on: Annotated[bool, typer.Option("--relay-on/--relay-off")] = False,
    armed: Annotated[bool, typer.Option("--armed/--idle")] = False,
) -> None:
    """Show the wire frame of a command (toggles resolve against --relay-on/--armed)."""
    codec = get_codec(ctx.obj["profile"])
    snapshot = DeviceSnapshot(mode=Mode.ARMED if armed else Mode.IDLE, relay=relay_on)
    try:
        if command is CommandName.sync_time:
            cmd: Command = create_sync_time_command(float(value) if value else None)
        elif command is CommandName.set_alarm:
            if not value:
                raise typer.BadParameter("set-alarm needs HH:MM")
            hh, _, mm = value.partition(":")
            cmd = create_set_alarm_command(int(hh), int(mm))
        elif command is CommandName.toggle_arm:
            cmd = create_toggle_arm_command()
        else:
            cmd = create_toggle_relay_command()
    except ValueError as ex:
        raise typer.BadParameter(str(ex)) from ex
    typer.echo(codec.encode(cmd, snapshot).decode("utf-8"))


@app.command(name="decode")
def decode(
    ctx: typer.Context,
    frames: Annotated[list[str], typer.Argument(help="One or more notification frames")],
) -> None:
    """Decode notification frames and show the resulting state."""
    codec = get_codec(ctx.obj["profile"])
    store = DeviceStateStore()
    failed = False
    for idx, frame in enumerate(frames, start=1):
        try:
            update = codec.decode(frame)
        except FrameDecodeError as ex:
            failed = True
            print(f"[red]{escape(f'[#{idx}] {ex}')}[/red]")
            continue
        changes = {k: getattr(v, "value", v) for k, v in update.changes().items()}
        print(escape(f"[#{idx}] {'replace' if update.full else 'merge'} {changes}"))
        store.apply(update)
    table = Table("Field", "Value", title="Resulting state")
    for key, val in store.snapshot.to_dict().items():
        table.add_row(key, str(val))
    print(table)
    if failed:
        raise typer.Exit(1)


@app.command(name="countdown")
def countdown(
    device_clock: Annotated[int, typer.Argument(help="Device clock, epoch seconds")],
    alarm: Annotated[datetime, typer.Argument(formats=["%H:%M"])],
) -> None:
    """Compute the alarm countdown for a device clock value."""
    typer.echo(countdown_to(device_clock, alarm.hour, alarm.minute))


@app.command(name="profiles")
def profiles() -> None:
    """List the available wire profiles."""
    table = Table("Profile", "Log capacity")
    for name, codec_cls in PROFILES.items():
        table.add_row(name, str(codec_cls.log_capacity))
    print(table)


if __name__ == "__main__":
    try:
        app()
    except asyncio.CancelledError:
        pass
