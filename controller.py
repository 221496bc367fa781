"""Drive a scale session: feed transport events to the state machine and run its effects."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from models import ScaleMeasurement, UserProfile
from protocol import (
    INACTIVITY_TIMEOUT_SECONDS,
    ArmTimer,
    CancelTimer,
    Disconnect,
    DisconnectRequested,
    Effect,
    EmitMeasurement,
    EmitStatus,
    EnableNotifications,
    Event,
    Phase,
    ProtocolStateMachine,
    Session,
    Timeout,
    WriteCommand,
)
from transport import ConnectionFailed, ErrorKind, Transport, TransportError, TransportFailure

log = logging.getLogger(__name__)

MeasurementListener = Callable[[ScaleMeasurement], None]
StatusListener = Callable[[str], None]


class ScaleController:
    """Owns one transport and the session running over it.

    Everything runs on the event loop thread: transport events, timer
    callbacks and queued GATT operations. Operations execute one at a time
    in the order the state machine asked for them.
    """

    def __init__(
        self,
        transport: Transport,
        profile: UserProfile,
        *,
        inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        sync_clock: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._machine = ProtocolStateMachine(
            profile,
            inactivity_timeout=inactivity_timeout,
            sync_clock=sync_clock,
            rng=rng,
        )
        self._measurement_listeners: list[MeasurementListener] = []
        self._status_listeners: list[StatusListener] = []
        self._operations: asyncio.Queue[Callable[[], Awaitable[None]]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._disconnected = asyncio.Event()
        transport.set_event_handler(self.handle_event)

    @property
    def session(self) -> Session:
        return self._machine.session

    def add_measurement_listener(self, listener: MeasurementListener) -> None:
        self._measurement_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def handle_event(self, event: Event) -> None:
        """Entry point for transport events and timer expiry."""
        for effect in self._machine.handle(event):
            self._apply(effect)

        if self._machine.phase is Phase.DISCONNECTED:
            self._disconnected.set()
        elif self._machine.active:
            self._disconnected.clear()

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, WriteCommand):
            command = effect.command
            log.debug("Queue write %s", command)
            self._enqueue(
                lambda: self._transport.write_characteristic(
                    command.target.service, command.target.characteristic, command.payload
                )
            )
        elif isinstance(effect, EnableNotifications):
            target = effect.target
            self._enqueue(lambda: self._transport.enable_notifications(target.service, target.characteristic))
        elif isinstance(effect, ArmTimer):
            self._cancel_timer()
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(effect.seconds, self.handle_event, Timeout())
        elif isinstance(effect, CancelTimer):
            self._cancel_timer()
        elif isinstance(effect, Disconnect):
            self._drop_pending()
            self._enqueue(self._transport.disconnect)
        elif isinstance(effect, EmitMeasurement):
            for listener in self._measurement_listeners:
                listener(effect.measurement)
        elif isinstance(effect, EmitStatus):
            self._emit_status(effect.message)
        else:
            raise TypeError(f"unknown effect: {effect!r}")

    def _emit_status(self, message: str) -> None:
        log.info(message)
        for listener in self._status_listeners:
            listener(message)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _enqueue(self, operation: Callable[[], Awaitable[None]]) -> None:
        self._operations.put_nowait(operation)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run_operations())

    def _drop_pending(self) -> None:
        while not self._operations.empty():
            self._operations.get_nowait()
            self._operations.task_done()

    async def _run_operations(self) -> None:
        while True:
            operation = await self._operations.get()
            try:
                await operation()
            except TransportError as exc:
                log.warning("Transport error (%s): %s", exc.kind.name, exc)
                self.handle_event(TransportFailure(exc))
            except Exception as exc:
                log.exception("Unexpected error in transport operation")
                self.handle_event(TransportFailure(TransportError(ErrorKind.UNKNOWN, str(exc))))
            finally:
                self._operations.task_done()

    async def drain(self) -> None:
        """Wait until all queued transport operations have run."""
        await self._operations.join()

    async def scan(self, timeout: float) -> Sequence[Any]:
        """Tear down any live session, then scan for devices."""
        if self._machine.active:
            await self.disconnect()

        self._emit_status("Scanning for scales...")
        try:
            devices = await self._transport.scan(timeout)
        except TransportError as exc:
            self.handle_event(TransportFailure(exc))
            return []

        if devices:
            self._emit_status(f"Found {len(devices)} device(s)")
        else:
            self._emit_status("No devices found")
        return devices

    async def connect(self, device: Any) -> bool:
        """Tear down any live session, connect and start the handshake.

        Returns False if the connection failed.
        """
        if self._machine.active:
            await self.disconnect()

        self._emit_status(f"Connecting to {getattr(device, 'name', None) or device}...")
        try:
            await self._transport.connect(device)
        except TransportError as exc:
            self.handle_event(ConnectionFailed(exc))
            return False

        try:
            await self._transport.discover_services()
        except TransportError as exc:
            self.handle_event(TransportFailure(exc))
        return True

    async def disconnect(self) -> None:
        self.handle_event(DisconnectRequested())
        await self.drain()

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    async def close(self) -> None:
        await self.disconnect()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
