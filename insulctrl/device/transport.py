# insulctrl/device/transport.py
"""Link transports used by the connection state machine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, Tuple, Union

from bleak import BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.service import BleakGATTService
from bleak_retry_connector import BLEAK_RETRY_EXCEPTIONS as BLEAK_EXCEPTIONS
from bleak_retry_connector import (
    BleakClientWithServiceCache,
    establish_connection,
)

from ..const import CHAR_UUID_CMD, DEFAULT_ATTEMPTS, SCAN_TIMEOUT, SERVICE_UUID
from ..exception import (
    LINK_FAILED,
    NO_DEVICE_CHOSEN,
    SUBSCRIPTION_FAILED,
    CharacteristicMissingError,
    ConnectError,
    ServiceMissingError,
)

FrameCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]
# (interval seconds, job) pairs run by the state machine while connected
PeriodicJob = Tuple[float, Callable[[], None]]


class Transport(ABC):
    """Handshake steps and I/O primitives of one appliance link.

    The state machine calls the handshake steps strictly in order:
    ``request_link`` → ``connect`` → ``resolve_service`` →
    ``resolve_characteristic`` → ``subscribe``.
    """

    name: str = "transport"

    @abstractmethod
    async def request_link(self) -> None:
        """Select the appliance to talk to."""

    @abstractmethod
    async def connect(self, disconnected_callback: DisconnectCallback) -> None:
        """Open the link; ``disconnected_callback`` fires on link loss."""

    @abstractmethod
    async def resolve_service(self) -> None:
        """Find the control service."""

    @abstractmethod
    async def resolve_characteristic(self) -> None:
        """Find the command/notification characteristic."""

    @abstractmethod
    async def subscribe(self, on_frame: FrameCallback) -> None:
        """Start delivering notification payloads to ``on_frame``."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write one command frame."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the link down. Safe to call repeatedly."""

    def timers(self) -> Sequence[PeriodicJob]:
        return ()


class BleakTransport(Transport):
    """Real BLE link built on bleak and bleak-retry-connector."""

    name = "ble"

    def __init__(
        self,
        device: Union[BLEDevice, str, None] = None,
        service_uuid: str = SERVICE_UUID,
        char_uuid: str = CHAR_UUID_CMD,
        scan_timeout: float = SCAN_TIMEOUT,
    ) -> None:
        self._device = device
        self._service_uuid = service_uuid
        self._char_uuid = char_uuid
        self._scan_timeout = scan_timeout
        self._ble_device: BLEDevice | None = None
        self._client: BleakClientWithServiceCache | None = None
        self._service: BleakGATTService | None = None
        self._char: BleakGATTCharacteristic | None = None
        self._disconnected_callback: DisconnectCallback | None = None
        self._logger = logging.getLogger(__name__)

    @property
    def address(self) -> str | None:
        if self._ble_device is not None:
            return self._ble_device.address
        if isinstance(self._device, BLEDevice):
            return self._device.address
        return self._device

    @property
    def display_name(self) -> str:
        if self._ble_device is not None:
            return self._ble_device.name or self._ble_device.address
        return self.address or "(any)"

    async def request_link(self) -> None:
        """Resolve the configured address, or pick the first advertiser of the service."""
        self._ble_device = None
        if isinstance(self._device, BLEDevice):
            self._ble_device = self._device
        elif self._device:
            self._ble_device = await BleakScanner.find_device_by_address(
                self._device, timeout=self._scan_timeout
            )
        else:
            found = await BleakScanner.discover(
                timeout=self._scan_timeout, service_uuids=[self._service_uuid]
            )
            self._ble_device = found[0] if found else None
        if self._ble_device is None:
            raise ConnectError(NO_DEVICE_CHOSEN, str(self._device or self._service_uuid))
        self._logger.debug("%s: Selected device", self.display_name)

    async def connect(self, disconnected_callback: DisconnectCallback) -> None:
        assert self._ble_device is not None  # nosec
        self._disconnected_callback = disconnected_callback
        ble_device = self._ble_device
        try:
            self._client = await establish_connection(
                BleakClientWithServiceCache,
                ble_device,
                self.display_name,
                self._disconnected,
                max_attempts=DEFAULT_ATTEMPTS,
                use_services_cache=True,
                ble_device_callback=lambda: ble_device,
            )
        except BLEAK_EXCEPTIONS as ex:
            raise ConnectError(LINK_FAILED, str(ex)) from ex
        self._logger.debug("%s: Connected", self.display_name)

    async def resolve_service(self) -> None:
        assert self._client is not None  # nosec
        self._service = self._client.services.get_service(self._service_uuid)
        if self._service is None:
            raise ServiceMissingError(self._service_uuid)

    async def resolve_characteristic(self) -> None:
        assert self._service is not None  # nosec
        self._char = self._service.get_characteristic(self._char_uuid)
        if self._char is None:
            raise CharacteristicMissingError(self._char_uuid)

    async def subscribe(self, on_frame: FrameCallback) -> None:
        assert self._client is not None and self._char is not None  # nosec

        def _notification_handler(_sender: BleakGATTCharacteristic, data: bytearray) -> None:
            self._logger.debug(
                "%s: Notification received: %s", self.display_name, data.hex(" ").upper()
            )
            on_frame(bytes(data))

        try:
            await self._client.start_notify(self._char, _notification_handler)
        except BLEAK_EXCEPTIONS as ex:
            raise ConnectError(SUBSCRIPTION_FAILED, str(ex)) from ex

    async def write(self, data: bytes) -> None:
        assert self._client is not None and self._char is not None  # nosec
        response = "write" in self._char.properties
        await self._client.write_gatt_char(self._char, data, response=response)

    def _disconnected(self, _client: BleakClientWithServiceCache) -> None:
        self._logger.debug("%s: Link reported disconnect", self.display_name)
        if self._disconnected_callback is not None:
            self._disconnected_callback()

    async def close(self) -> None:
        client = self._client
        char = self._char
        self._client = None
        self._service = None
        self._char = None
        self._disconnected_callback = None
        if client and client.is_connected:
            if char:
                # stop_notify can raise if the backend already dropped the token.
                try:
                    await client.stop_notify(char)
                except Exception:
                    self._logger.debug(
                        "%s: stop_notify failed (already stopped?)", self.display_name, exc_info=True
                    )
            await client.disconnect()


async def discover_appliances(
    timeout: float = SCAN_TIMEOUT, service_uuid: Optional[str] = SERVICE_UUID
) -> list[BLEDevice]:
    """Scan for nearby devices, optionally only those advertising the service."""
    service_uuids = [service_uuid] if service_uuid else None
    return list(await BleakScanner.discover(timeout=timeout, service_uuids=service_uuids))
