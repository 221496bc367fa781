"""Handshake state machine for Mi Body Composition Scale sessions.

The scale replays stored measurements only after a fixed handshake:

    step 0  set display unit              auto-advance
    step 1  history-mode magic bytes      continue on the next write ack
    step 2  enable history notifications  stop until NotificationEnabled
    step 3  enable weight notifications   stop until NotificationEnabled
    step 4  send user identifier          auto-advance
    step 5  request stored measurements   stop, wait for data

``transition`` maps (session, event) to (session, effects). It does no I/O;
the caller carries out the effects against the transport and feeds the
resulting events back in.
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Union

import codec
from models import Command, ScaleMeasurement, Target, UserProfile
from transport import (
    Connected,
    ConnectionFailed,
    DataReceived,
    Disconnected,
    NotificationEnabled,
    ServicesDiscovered,
    TransportEvent,
    TransportFailure,
    WriteAcknowledged,
)

log = logging.getLogger(__name__)

INACTIVITY_TIMEOUT_SECONDS = 60.0

STEP_COUNT = 6
HISTORY_STEP = 5
NOTIFICATION_STEPS = {2: codec.HISTORY, 3: codec.WEIGHT_MEASUREMENT}
# after these steps the next step runs on the following WriteAcknowledged
WRITE_ACK_STEPS = {1}

UNIQUE_ID_MIN = 100
UNIQUE_ID_MAX = 65534


class Phase(Enum):
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    AWAITING_HISTORY = "awaiting_history"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Timeout:
    """Inactivity deadline expired."""


@dataclass(frozen=True)
class DisconnectRequested:
    """Caller asked to end the session."""


Event = Union[TransportEvent, Timeout, DisconnectRequested]


@dataclass(frozen=True)
class WriteCommand:
    command: Command


@dataclass(frozen=True)
class EnableNotifications:
    target: Target


@dataclass(frozen=True)
class ArmTimer:
    seconds: float


@dataclass(frozen=True)
class CancelTimer:
    pass


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class EmitMeasurement:
    measurement: ScaleMeasurement


@dataclass(frozen=True)
class EmitStatus:
    message: str


Effect = Union[WriteCommand, EnableNotifications, ArmTimer, CancelTimer, Disconnect, EmitMeasurement, EmitStatus]


@dataclass(frozen=True)
class Session:
    """State of one connection to the scale.

    ``step`` is the handshake step last executed (or about to be executed
    while not stopped). ``stopped`` means the machine waits for an external
    event before doing anything else.
    """
    phase: Phase = Phase.IDLE
    step: int = 0
    stopped: bool = False
    unique_id: int | None = None
    deadline: float | None = None

    @property
    def active(self) -> bool:
        return self.phase in (Phase.HANDSHAKING, Phase.AWAITING_HISTORY)


@dataclass(frozen=True)
class SessionContext:
    """Inputs the transition function needs besides the session itself."""
    profile: UserProfile
    inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS
    sync_clock: bool = False
    clock: Callable[[], float] = time.monotonic
    rng: random.Random = field(default_factory=random.Random)


def generate_unique_id(profile: UserProfile, rng: random.Random) -> int:
    """Per-session user identifier sent to the scale."""
    return rng.randint(UNIQUE_ID_MIN, UNIQUE_ID_MAX) + profile.age


def _arm(session: Session, context: SessionContext, effects: list[Effect]) -> Session:
    effects.append(ArmTimer(context.inactivity_timeout))
    return replace(session, deadline=context.clock() + context.inactivity_timeout)


def _step_effects(step: int, session: Session, context: SessionContext) -> list[Effect]:
    profile = context.profile
    if step == 0:
        effects: list[Effect] = [
            EmitStatus("Setting scale units..."),
            WriteCommand(codec.encode_set_units(profile.unit)),
        ]
        if context.sync_clock:
            effects.append(WriteCommand(codec.encode_set_time(datetime.now())))
        return effects
    if step == 1:
        return [
            EmitStatus("Preparing scale for history data..."),
            WriteCommand(codec.encode_history_mode_magic()),
        ]
    if step == 2:
        return [
            EmitStatus("Enabling history notifications..."),
            EnableNotifications(codec.HISTORY),
        ]
    if step == 3:
        return [
            EmitStatus("Enabling weight notifications..."),
            EnableNotifications(codec.WEIGHT_MEASUREMENT),
        ]
    if step == 4:
        return [
            EmitStatus("Configuring user profile for history..."),
            WriteCommand(codec.encode_user_identifier(codec.UserTag.CONFIGURE, session.unique_id)),
        ]
    if step == HISTORY_STEP:
        return [
            EmitStatus("Requesting stored measurements..."),
            WriteCommand(codec.encode_history_request()),
        ]
    raise ValueError(f"no handshake step {step}")


def _run(session: Session, context: SessionContext, effects: list[Effect]) -> Session:
    """Execute steps from ``session.step`` until the machine has to wait."""
    while session.active and not session.stopped and session.step < STEP_COUNT:
        step = session.step
        log.debug("Executing step %d", step)
        effects.extend(_step_effects(step, session, context))

        if step in NOTIFICATION_STEPS:
            return replace(session, stopped=True)
        if step == HISTORY_STEP:
            session = replace(session, phase=Phase.AWAITING_HISTORY, stopped=True)
            return _arm(session, context, effects)

        session = replace(session, step=step + 1)
        if step in WRITE_ACK_STEPS:
            return session
    return session


def _teardown(message: str, disconnect: bool = True) -> tuple[Session, list[Effect]]:
    effects: list[Effect] = [CancelTimer()]
    if disconnect:
        effects.append(Disconnect())
    effects.append(EmitStatus(message))
    return Session(phase=Phase.DISCONNECTED), effects


def _on_connected(session: Session, event: Connected, context: SessionContext):
    effects: list[Effect] = [EmitStatus("Connected - starting communication protocol")]
    fresh = Session(phase=Phase.HANDSHAKING, unique_id=generate_unique_id(context.profile, context.rng))
    fresh = _arm(fresh, context, effects)
    return _run(fresh, context, effects), effects


def _on_connection_failed(session: Session, event: ConnectionFailed, context: SessionContext):
    return session, [EmitStatus(f"Error: {event.error.message}")]


def _on_transport_failure(session: Session, event: TransportFailure, context: SessionContext):
    # no retry; a stuck handshake ends with the inactivity timeout
    return session, [EmitStatus(f"Error: {event.error.message}")]


def _on_disconnected(session: Session, event: Disconnected, context: SessionContext):
    if not session.active:
        return session, []
    return _teardown("Disconnected from scale", disconnect=False)


def _on_write_acknowledged(session: Session, event: WriteAcknowledged, context: SessionContext):
    if not session.active or session.stopped:
        return session, []
    effects: list[Effect] = []
    return _run(session, context, effects), effects


def _on_notification_enabled(session: Session, event: NotificationEnabled, context: SessionContext):
    if not session.active or not session.stopped:
        return session, []
    expected = NOTIFICATION_STEPS.get(session.step)
    if expected is None:
        return session, []
    if event.characteristic is not None and event.characteristic.lower() != expected.characteristic:
        log.debug("Ignoring notification ack for %s at step %d", event.characteristic, session.step)
        return session, []
    effects: list[Effect] = []
    session = replace(session, step=session.step + 1, stopped=False)
    return _run(session, context, effects), effects


def _on_services_discovered(session: Session, event: ServicesDiscovered, context: SessionContext):
    if not session.active or not session.stopped:
        return session, []
    log.debug("Services discovered, re-running step %d", session.step)
    effects: list[Effect] = []
    return _run(replace(session, stopped=False), context, effects), effects


def _on_data_received(session: Session, event: DataReceived, context: SessionContext):
    if not session.active:
        return session, []

    effects: list[Effect] = []
    session = _arm(session, context, effects)
    data = event.data

    if data and data[0] == codec.STOP_MARKER:
        effects += [
            EmitStatus("Scale finished sending data"),
            WriteCommand(codec.encode_stop_acknowledgment()),
            WriteCommand(codec.encode_user_identifier(codec.UserTag.FINAL_ACKNOWLEDGMENT, session.unique_id)),
        ]
        return session, effects

    try:
        measurement = codec.decode_measurement(data, context.profile)
    except codec.DecodeError as exc:
        log.warning("Discarding packet [%s]: %s", data.hex(" "), exc)
        effects.append(EmitStatus(f"Discarded packet: {exc}"))
        return session, effects

    if measurement is None:
        log.debug("Skipping non-final packet [%s]", data.hex(" "))
        return session, effects

    effects += [
        EmitMeasurement(measurement),
        EmitStatus(f"New measurement: {measurement.weight_kg:.2f} kg"),
    ]
    return session, effects


def _on_timeout(session: Session, event: Timeout, context: SessionContext):
    if not session.active:
        return session, []
    return _teardown(f"No data for {context.inactivity_timeout:g}s - disconnecting")


def _on_disconnect_requested(session: Session, event: DisconnectRequested, context: SessionContext):
    new_session, effects = _teardown("Disconnecting...")
    if not session.active:
        return session, effects
    return new_session, effects


_HANDLERS = {
    Connected: _on_connected,
    ConnectionFailed: _on_connection_failed,
    TransportFailure: _on_transport_failure,
    Disconnected: _on_disconnected,
    WriteAcknowledged: _on_write_acknowledged,
    NotificationEnabled: _on_notification_enabled,
    ServicesDiscovered: _on_services_discovered,
    DataReceived: _on_data_received,
    Timeout: _on_timeout,
    DisconnectRequested: _on_disconnect_requested,
}


def transition(session: Session, event: Event, context: SessionContext) -> tuple[Session, list[Effect]]:
    """Apply one event to a session and return the new session and its effects."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"unsupported event: {event!r}")
    return handler(session, event, context)


class ProtocolStateMachine:
    """Holds the current session and applies events to it."""

    def __init__(
        self,
        profile: UserProfile,
        *,
        inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        sync_clock: bool = False,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.context = SessionContext(
            profile=profile,
            inactivity_timeout=inactivity_timeout,
            sync_clock=sync_clock,
            clock=clock,
            rng=rng or random.Random(),
        )
        self.session = Session()

    def handle(self, event: Event) -> list[Effect]:
        previous = self.session
        self.session, effects = transition(self.session, event, self.context)
        if self.session.phase is not previous.phase or self.session.step != previous.step:
            log.debug(
                "%s: %s/%d -> %s/%d (stopped=%s)",
                type(event).__name__,
                previous.phase.value, previous.step,
                self.session.phase.value, self.session.step,
                self.session.stopped,
            )
        return effects

    @property
    def phase(self) -> Phase:
        return self.session.phase

    @property
    def step(self) -> int:
        return self.session.step

    @property
    def stopped(self) -> bool:
        return self.session.stopped

    @property
    def active(self) -> bool:
        return self.session.active

    @property
    def unique_id(self) -> int | None:
        return self.session.unique_id
