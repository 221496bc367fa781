"""Bleak transport: scan, connect and talk GATT to the scale."""

import asyncio
import logging
from collections.abc import Sequence

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakDeviceNotFoundError, BleakError

from transport import (
    Connected,
    DataReceived,
    Disconnected,
    ErrorKind,
    EventHandler,
    NotificationEnabled,
    ServicesDiscovered,
    TransportError,
    TransportEvent,
    WriteAcknowledged,
)

log = logging.getLogger(__name__)


def _ignore(event: TransportEvent) -> None:
    pass


def classify_error(exc: BaseException, default: ErrorKind) -> ErrorKind:
    """Map an exception raised by bleak to a transport error kind."""
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, BleakDeviceNotFoundError):
        return ErrorKind.DEVICE_NOT_FOUND
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.CONNECTION_TIMEOUT
    return default


class BleakTransport:
    """Transport implementation on top of bleak."""

    def __init__(self, connect_timeout: float = 15.0) -> None:
        self._connect_timeout = connect_timeout
        self._client: BleakClient | None = None
        self._handler: EventHandler = _ignore
        self._notifying: set[str] = set()

    def set_event_handler(self, handler: EventHandler) -> None:
        self._handler = handler

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _emit(self, event: TransportEvent) -> None:
        self._handler(event)

    async def scan(self, timeout: float) -> Sequence[BLEDevice]:
        try:
            devices = await BleakScanner.discover(timeout=timeout)
        except (BleakError, PermissionError) as exc:
            raise TransportError(classify_error(exc, ErrorKind.BLUETOOTH_DISABLED), str(exc)) from exc

        for device in devices:
            log.debug("Found device: %s (%s)", device.name, device.address)
        return list(devices)

    async def connect(self, device: BLEDevice | str) -> None:
        await self.disconnect()

        client = BleakClient(
            device,
            timeout=self._connect_timeout,
            disconnected_callback=self._on_disconnected,
        )
        try:
            await client.connect()
        except (BleakError, PermissionError, asyncio.TimeoutError) as exc:
            raise TransportError(classify_error(exc, ErrorKind.CONNECTION_FAILED), str(exc)) from exc

        self._client = client
        log.info("Connected to %s", client.address)
        self._emit(Connected())

    def _on_disconnected(self, client: BleakClient) -> None:
        if client is not self._client:
            # replaced or disconnected by us; the session is already torn down
            log.debug("Ignoring disconnect of stale client %s", client.address)
            return
        log.info("Device %s disconnected", client.address)
        self._client = None
        self._notifying.clear()
        self._emit(Disconnected())

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        notifying, self._notifying = self._notifying, set()
        if client is None:
            return
        try:
            if client.is_connected:
                for characteristic in notifying:
                    await client.stop_notify(characteristic)
            await client.disconnect()
        except BleakError as exc:
            log.warning("Disconnect error: %s", exc)

    def _require_client(self) -> BleakClient:
        if not self.is_connected:
            raise TransportError(ErrorKind.CONNECTION_FAILED, "not connected")
        return self._client

    def _characteristic(self, service_uuid: str, characteristic_uuid: str) -> BleakGATTCharacteristic:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            raise TransportError(ErrorKind.SERVICE_NOT_FOUND, service_uuid)
        characteristic = service.get_characteristic(characteristic_uuid)
        if characteristic is None:
            raise TransportError(ErrorKind.CHARACTERISTIC_NOT_FOUND, characteristic_uuid)
        return characteristic

    async def discover_services(self) -> None:
        # bleak resolves the service collection while connecting
        client = self._require_client()
        for service in client.services:
            log.debug("Service: %s", service.uuid)
            for characteristic in service.characteristics:
                log.debug("  Characteristic: %s %s", characteristic.uuid, characteristic.properties)
        self._emit(ServicesDiscovered())

    async def write_characteristic(self, service: str, characteristic: str, data: bytes) -> None:
        target = self._characteristic(service, characteristic)
        log.debug("Writing [%s] to %s", data.hex(" "), characteristic)
        try:
            await self._client.write_gatt_char(target, data, response=True)
        except BleakError as exc:
            raise TransportError(ErrorKind.WRITE_ERROR, str(exc)) from exc
        self._emit(WriteAcknowledged(characteristic))

    async def read_characteristic(self, service: str, characteristic: str) -> bytes:
        target = self._characteristic(service, characteristic)
        try:
            return bytes(await self._client.read_gatt_char(target))
        except BleakError as exc:
            raise TransportError(ErrorKind.READ_ERROR, str(exc)) from exc

    async def enable_notifications(self, service: str, characteristic: str) -> None:
        target = self._characteristic(service, characteristic)

        def on_notify(_sender: BleakGATTCharacteristic, data: bytearray) -> None:
            if data:
                self._emit(DataReceived(bytes(data), characteristic))

        try:
            await self._client.start_notify(target, on_notify)
        except BleakError as exc:
            raise TransportError(ErrorKind.UNKNOWN, str(exc)) from exc
        self._notifying.add(characteristic)
        log.debug("Enabled notifications for %s", characteristic)
        self._emit(NotificationEnabled(characteristic))
