"""Transport contract between the session driver and a BLE stack.

Implementations report success through events passed to the handler set
with ``set_event_handler`` and raise ``TransportError`` on failure.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Union


class ErrorKind(Enum):
    PERMISSION_DENIED = "Bluetooth permissions denied"
    BLUETOOTH_DISABLED = "Bluetooth is disabled"
    DEVICE_NOT_FOUND = "Device not found"
    CONNECTION_FAILED = "Connection failed"
    CONNECTION_TIMEOUT = "Connection timeout"
    SERVICE_NOT_FOUND = "Service not found"
    CHARACTERISTIC_NOT_FOUND = "Characteristic not found"
    WRITE_ERROR = "Write operation failed"
    READ_ERROR = "Read operation failed"
    UNKNOWN = "Unknown error occurred"


class TransportError(Exception):
    """A transport operation failed."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def message(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class ConnectionFailed:
    error: TransportError


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class ServicesDiscovered:
    pass


@dataclass(frozen=True)
class WriteAcknowledged:
    characteristic: str | None = None


@dataclass(frozen=True)
class NotificationEnabled:
    characteristic: str | None = None


@dataclass(frozen=True)
class DataReceived:
    data: bytes
    characteristic: str | None = None


@dataclass(frozen=True)
class TransportFailure:
    error: TransportError


TransportEvent = Union[
    Connected,
    ConnectionFailed,
    Disconnected,
    ServicesDiscovered,
    WriteAcknowledged,
    NotificationEnabled,
    DataReceived,
    TransportFailure,
]

EventHandler = Callable[[TransportEvent], None]


class Transport(Protocol):
    """What the session driver needs from a BLE stack."""

    def set_event_handler(self, handler: EventHandler) -> None: ...

    async def scan(self, timeout: float) -> Sequence[Any]: ...

    async def connect(self, device: Any) -> None:
        """Connect and emit Connected."""

    async def disconnect(self) -> None:
        """Disconnect; must be safe to call when not connected."""

    async def discover_services(self) -> None:
        """Emit ServicesDiscovered once services are known."""

    async def write_characteristic(self, service: str, characteristic: str, data: bytes) -> None:
        """Write with response and emit WriteAcknowledged."""

    async def read_characteristic(self, service: str, characteristic: str) -> bytes: ...

    async def enable_notifications(self, service: str, characteristic: str) -> None:
        """Subscribe, emit NotificationEnabled, then DataReceived per notification."""
