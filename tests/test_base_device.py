import asyncio
from typing import Optional

import pytest

from insulctrl.device import ApplianceDevice, ConnectionState, SimulatedDevice, SimulatedTransport
from insulctrl.device.transport import Transport
from insulctrl.exception import (
    ALREADY_CONNECTING,
    CHARACTERISTIC_NOT_FOUND,
    CONNECT_CANCELLED,
    LINK_FAILED,
    NO_DEVICE_CHOSEN,
    SERVICE_NOT_FOUND,
    SUBSCRIPTION_FAILED,
    CommandSendError,
    ConnectError,
    NotConnectedError,
    ServiceMissingError,
)
from insulctrl.protocol import CompactCodec, JsonCodec, get_codec
from insulctrl.state import Mode


class FakeTransport(Transport):
    """Scriptable transport: fail or block at a chosen handshake step."""

    name = "fake"

    def __init__(self, fail_at: Optional[str] = None, gate_at: Optional[str] = None):
        self.fail_at = fail_at
        self.gate_at = gate_at
        self.gate = asyncio.Event()
        self.calls: list[str] = []
        self.closed = 0
        self.written: list[bytes] = []
        self.write_error: Optional[Exception] = None
        self.on_frame = None
        self.disconnected_callback = None

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        if name == self.gate_at:
            # block the first pass through this step only
            self.gate_at = None
            await self.gate.wait()
        if name == self.fail_at:
            raise RuntimeError(f"{name} boom")

    async def request_link(self) -> None:
        await self._step("request_link")

    async def connect(self, disconnected_callback) -> None:
        self.disconnected_callback = disconnected_callback
        await self._step("connect")

    async def resolve_service(self) -> None:
        await self._step("resolve_service")

    async def resolve_characteristic(self) -> None:
        await self._step("resolve_characteristic")

    async def subscribe(self, on_frame) -> None:
        self.on_frame = on_frame
        await self._step("subscribe")

    async def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)

    async def close(self) -> None:
        self.closed += 1


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ── handshake ───────────────────────────────────────────────────


@pytest.mark.parametrize(
    "step,reason",
    [
        ("request_link", NO_DEVICE_CHOSEN),
        ("connect", LINK_FAILED),
        ("resolve_service", SERVICE_NOT_FOUND),
        ("resolve_characteristic", CHARACTERISTIC_NOT_FOUND),
        ("subscribe", SUBSCRIPTION_FAILED),
    ],
)
def test_handshake_failure_reports_step_reason(step, reason):
    async def run():
        transport = FakeTransport(fail_at=step)
        dev = ApplianceDevice(transport, JsonCodec())
        with pytest.raises(ConnectError) as exc_info:
            await dev.connect()
        assert exc_info.value.reason == reason
        assert dev.state is ConnectionState.IDLE
        assert transport.calls[-1] == step
        assert transport.closed == 1
        assert "Connection failed" in dev.log.entries[0].message

    asyncio.run(run())


def test_connect_succeeds_and_is_idempotent():
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, JsonCodec())
        assert await dev.connect() is ConnectionState.CONNECTED
        assert await dev.connect() is ConnectionState.CONNECTED
        assert transport.calls == [
            "request_link", "connect", "resolve_service", "resolve_characteristic", "subscribe",
        ]
        await dev.async_disconnect()

    asyncio.run(run())


def test_second_connect_while_connecting_is_rejected():
    async def run():
        transport = FakeTransport(gate_at="connect")
        dev = ApplianceDevice(transport, JsonCodec())
        task = asyncio.ensure_future(dev.connect())
        await _settle()
        with pytest.raises(ConnectError) as exc_info:
            await dev.connect()
        assert exc_info.value.reason == ALREADY_CONNECTING
        transport.gate.set()
        assert await task is ConnectionState.CONNECTED
        await dev.async_disconnect()

    asyncio.run(run())


def test_disconnect_during_handshake_wins():
    async def run():
        transport = FakeTransport(gate_at="connect")
        dev = ApplianceDevice(transport, JsonCodec())
        task = asyncio.ensure_future(dev.connect())
        await _settle()
        assert dev.state is ConnectionState.CONNECTING

        assert dev.disconnect() is None
        assert dev.state is ConnectionState.IDLE

        transport.gate.set()
        with pytest.raises(ConnectError) as exc_info:
            await task
        assert exc_info.value.reason == CONNECT_CANCELLED
        assert dev.state is ConnectionState.IDLE
        assert "resolve_service" not in transport.calls
        assert transport.closed == 1

    asyncio.run(run())


def test_link_loss_during_handshake_wins():
    async def run():
        transport = FakeTransport(gate_at="resolve_service")
        dev = ApplianceDevice(transport, JsonCodec())
        task = asyncio.ensure_future(dev.connect())
        await _settle()
        transport.disconnected_callback()
        assert dev.state is ConnectionState.IDLE

        transport.gate.set()
        with pytest.raises(ConnectError) as exc_info:
            await task
        assert exc_info.value.reason == CONNECT_CANCELLED
        assert dev.state is ConnectionState.IDLE

    asyncio.run(run())


# ── disconnect ──────────────────────────────────────────────────


def test_double_disconnect_is_harmless():
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, JsonCodec())
        await dev.connect()
        await dev.async_disconnect()
        assert dev.disconnect() is None
        await dev.async_disconnect()
        assert dev.state is ConnectionState.IDLE
        assert transport.closed == 1

    asyncio.run(run())


def test_stale_frames_after_disconnect_are_ignored():
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, JsonCodec())
        await dev.connect()
        on_frame = transport.on_frame
        await dev.async_disconnect()
        before = dev.snapshot
        on_frame(b'{"relay":true}')
        assert dev.snapshot == before

    asyncio.run(run())


def test_unexpected_link_loss_goes_idle():
    async def run():
        transport = SimulatedTransport(JsonCodec())
        dev = ApplianceDevice(transport, transport.codec)
        await dev.connect()
        transport.drop_link()
        assert dev.state is ConnectionState.IDLE
        assert dev.log.entries[0].message == "Device disconnected"
        await _settle()

    asyncio.run(run())


def test_periodic_tasks_stop_on_disconnect():
    refreshes = []

    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(
            transport, JsonCodec(), on_refresh=refreshes.append, refresh_interval=0.01
        )
        await dev.connect()
        await asyncio.sleep(0.05)
        assert refreshes
        await dev.async_disconnect()
        count = len(refreshes)
        await asyncio.sleep(0.05)
        assert len(refreshes) == count

    asyncio.run(run())


# ── sending ─────────────────────────────────────────────────────


def test_send_while_idle_is_rejected_with_one_log_entry():
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, JsonCodec())
        with pytest.raises(NotConnectedError):
            await dev.toggle_relay()
        assert len(dev.log) == 1
        assert transport.written == []

    asyncio.run(run())


def test_write_failure_keeps_link_up():
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, JsonCodec())
        await dev.connect()
        transport.write_error = OSError("gatt write failed")
        with pytest.raises(CommandSendError):
            await dev.sync_time(now=1700000000)
        assert dev.state is ConnectionState.CONNECTED
        assert dev.log.entries[0].message == "Error: gatt write failed"
        await dev.async_disconnect()

    asyncio.run(run())


@pytest.mark.parametrize("codec", [JsonCodec(), CompactCodec()], ids=["json", "compact"])
def test_malformed_notification_leaves_state_untouched(codec):
    async def run():
        transport = FakeTransport()
        dev = ApplianceDevice(transport, codec)
        await dev.connect()
        before = dev.snapshot
        logged = len(dev.log)
        transport.on_frame(b"S:1,0,07")
        assert dev.snapshot == before
        assert len(dev.log) == logged + 1
        assert dev.log.entries[0].message.startswith("Dropped frame")
        await dev.async_disconnect()

    asyncio.run(run())


# ── end to end against the simulator ────────────────────────────


@pytest.mark.parametrize("profile", ["json", "compact"])
def test_simulated_round_trip(profile):
    async def run():
        sim = SimulatedDevice(device_clock=1700000000)
        transport = SimulatedTransport(get_codec(profile), sim)
        dev = ApplianceDevice(transport, transport.codec)
        await dev.connect()

        await dev.toggle_relay()
        assert sim.relay is True
        assert dev.snapshot.relay is True

        await dev.toggle_arm()
        assert dev.snapshot.mode is Mode.ARMED

        await dev.set_alarm(6, 15)
        assert (dev.snapshot.alarm_hour, dev.snapshot.alarm_minute) == (6, 15)

        await dev.toggle_arm()
        assert dev.snapshot.mode is Mode.IDLE
        assert dev.snapshot.relay is False
        assert dev.log.entries[0].message.startswith("TX: ")
        await dev.async_disconnect()

    asyncio.run(run())


def test_simulated_device_clock_follows_sync_time():
    async def run():
        transport = SimulatedTransport(JsonCodec(), SimulatedDevice(device_clock=1000))
        dev = ApplianceDevice(transport, transport.codec)
        await dev.connect()
        assert dev.snapshot.device_clock == 1000
        await dev.sync_time(now=1700000000)
        assert dev.snapshot.device_clock == 1700000000
        await dev.async_disconnect()

    asyncio.run(run())


def test_transport_connect_error_keeps_its_detail():
    class NoServiceTransport(FakeTransport):
        async def resolve_service(self) -> None:
            raise ServiceMissingError("0000aaaa")

    async def run():
        dev = ApplianceDevice(NoServiceTransport(), JsonCodec())
        with pytest.raises(ServiceMissingError) as exc_info:
            await dev.connect()
        assert exc_info.value.reason == SERVICE_NOT_FOUND
        assert str(exc_info.value) == "service not found: 0000aaaa"
        assert dev.state is ConnectionState.IDLE

    asyncio.run(run())


class GatedSimulatedTransport(SimulatedTransport):
    """Simulator link whose first ``request_link`` blocks until released."""

    def __init__(self, codec):
        super().__init__(codec)
        self.gate = asyncio.Event()
        self.requests = 0
        self.closes = 0

    async def request_link(self) -> None:
        self.requests += 1
        if self.requests == 1:
            await self.gate.wait()

    async def close(self) -> None:
        self.closes += 1
        await super().close()


def test_reconnect_waits_for_cancelled_attempt():
    async def run():
        transport = GatedSimulatedTransport(JsonCodec())
        dev = ApplianceDevice(transport, transport.codec)
        stale = asyncio.ensure_future(dev.connect())
        await _settle()
        dev.disconnect()

        fresh = asyncio.ensure_future(dev.connect())
        await _settle()
        assert not fresh.done()
        assert dev.state is ConnectionState.IDLE

        transport.gate.set()
        with pytest.raises(ConnectError) as exc_info:
            await stale
        assert exc_info.value.reason == CONNECT_CANCELLED
        assert await fresh is ConnectionState.CONNECTED
        assert transport.closes == 1

        await dev.toggle_relay()
        assert transport.device.relay is True
        assert dev.snapshot.relay is True
        transport.drop_link()
        assert dev.state is ConnectionState.IDLE

    asyncio.run(run())


def test_concurrent_connects_after_teardown_run_one_handshake():
    async def run():
        transport = GatedSimulatedTransport(JsonCodec())
        transport.gate.set()
        dev = ApplianceDevice(transport, transport.codec)
        await dev.connect()
        assert dev.disconnect() is not None

        results = await asyncio.gather(dev.connect(), dev.connect(), return_exceptions=True)
        assert ConnectionState.CONNECTED in results
        for result in results:
            if isinstance(result, ConnectError):
                assert result.reason == ALREADY_CONNECTING
            else:
                assert result is ConnectionState.CONNECTED
        assert transport.requests == 2
        assert transport.closes == 1

        await dev.toggle_relay()
        assert dev.snapshot.relay is True
        await dev.async_disconnect()

    asyncio.run(run())
