"""Tests for protocol module."""

import random

import pytest

import codec
from codec import UserTag
from models import Gender, ScaleUnit, UserProfile
from protocol import (
    ArmTimer,
    CancelTimer,
    Disconnect,
    DisconnectRequested,
    EmitMeasurement,
    EmitStatus,
    EnableNotifications,
    Phase,
    ProtocolStateMachine,
    Session,
    SessionContext,
    Timeout,
    WriteCommand,
    generate_unique_id,
    transition,
)
from transport import (
    Connected,
    ConnectionFailed,
    DataReceived,
    Disconnected,
    ErrorKind,
    NotificationEnabled,
    ServicesDiscovered,
    TransportError,
    TransportFailure,
    WriteAcknowledged,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def commands(effects):
    return [effect.command for effect in effects if isinstance(effect, WriteCommand)]


def notifications(effects):
    return [effect.target for effect in effects if isinstance(effect, EnableNotifications)]


def of_type(effects, kind):
    return [effect for effect in effects if isinstance(effect, kind)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine(male_profile, clock):
    return ProtocolStateMachine(male_profile, inactivity_timeout=60.0, clock=clock, rng=random.Random(7))


def run_handshake(machine):
    """Connected followed by the acks the scale sends during the handshake."""
    machine.handle(Connected())
    machine.handle(WriteAcknowledged())
    machine.handle(NotificationEnabled())
    machine.handle(NotificationEnabled())
    machine.handle(WriteAcknowledged())


class TestHandshake:
    """Step sequencing from Connected to awaiting history."""

    def test_initial_state(self, machine):
        """Nothing is active before the transport reports a connection."""
        assert machine.phase is Phase.IDLE
        assert machine.active is False
        assert machine.unique_id is None

    def test_connected_runs_steps_0_and_1(self, machine, male_profile):
        """Connected sends set-units and the history-mode magic, then waits for a write ack."""
        effects = machine.handle(Connected())

        assert commands(effects) == [
            codec.encode_set_units(male_profile.unit),
            codec.encode_history_mode_magic(),
        ]
        assert notifications(effects) == []
        assert of_type(effects, ArmTimer) == [ArmTimer(60.0)]
        assert machine.phase is Phase.HANDSHAKING
        assert machine.active is True
        assert machine.step == 2
        assert machine.stopped is False

    def test_deadline_armed_on_connect(self, machine, clock):
        """Connected sets the inactivity deadline."""
        machine.handle(Connected())

        assert machine.session.deadline == clock.now + 60.0

    def test_write_ack_enables_history_notifications(self, machine):
        """First write ack runs step 2 and stops."""
        machine.handle(Connected())
        effects = machine.handle(WriteAcknowledged(codec.WEIGHT_CUSTOM_CONFIG_CHARACTERISTIC))

        assert notifications(effects) == [codec.HISTORY]
        assert machine.step == 2
        assert machine.stopped is True

    def test_write_ack_ignored_while_stopped(self, machine):
        """Further write acks do nothing while waiting for a notification ack."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        effects = machine.handle(WriteAcknowledged())

        assert effects == []
        assert machine.step == 2

    def test_history_notification_enables_weight_notifications(self, machine):
        """Notification ack for step 2 runs step 3 and stops again."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        effects = machine.handle(NotificationEnabled(codec.HISTORY_CHARACTERISTIC))

        assert notifications(effects) == [codec.WEIGHT_MEASUREMENT]
        assert machine.step == 3
        assert machine.stopped is True

    def test_weight_notification_finishes_handshake(self, machine):
        """Notification ack for step 3 sends the user id and the history request."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        machine.handle(NotificationEnabled(codec.HISTORY_CHARACTERISTIC))
        effects = machine.handle(NotificationEnabled(codec.WEIGHT_MEASUREMENT_CHARACTERISTIC))

        assert commands(effects) == [
            codec.encode_user_identifier(UserTag.CONFIGURE, machine.unique_id),
            codec.encode_history_request(),
        ]
        assert of_type(effects, ArmTimer) == [ArmTimer(60.0)]
        assert machine.phase is Phase.AWAITING_HISTORY

    def test_full_sequence_reaches_step_5(self, machine):
        """Connected, write ack, two notification acks and a write ack end at step 5, stopped."""
        run_handshake(machine)

        assert machine.step == 5
        assert machine.stopped is True
        assert machine.active is True
        assert machine.phase is Phase.AWAITING_HISTORY

    def test_steps_never_decrease(self, machine):
        """Step index only grows and stays below 6."""
        events = [
            Connected(), WriteAcknowledged(), WriteAcknowledged(), NotificationEnabled(),
            ServicesDiscovered(), NotificationEnabled(), WriteAcknowledged(), NotificationEnabled(),
            WriteAcknowledged(), ServicesDiscovered(),
        ]
        steps = []
        for event in events:
            machine.handle(event)
            steps.append(machine.step)

        assert steps == sorted(steps)
        assert max(steps) == 5

    def test_mismatched_notification_ignored(self, machine):
        """A notification ack for another characteristic does not advance."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        effects = machine.handle(NotificationEnabled(codec.WEIGHT_MEASUREMENT_CHARACTERISTIC))

        assert effects == []
        assert machine.step == 2
        assert machine.stopped is True

    def test_notification_ack_is_case_insensitive(self, machine):
        """Characteristic UUIDs compare without case."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        machine.handle(NotificationEnabled(codec.HISTORY_CHARACTERISTIC.upper()))

        assert machine.step == 3

    def test_services_discovered_reruns_current_step(self, machine):
        """Service discovery while stopped re-issues the pending step."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())
        effects = machine.handle(ServicesDiscovered())

        assert notifications(effects) == [codec.HISTORY]
        assert machine.step == 2
        assert machine.stopped is True

    def test_services_discovered_ignored_when_not_stopped(self, machine):
        """Service discovery before any stop does nothing."""
        machine.handle(Connected())

        assert machine.handle(ServicesDiscovered()) == []
        assert machine.step == 2

    def test_set_units_uses_profile_unit(self, clock):
        """Step 0 writes the profile's unit code."""
        profile = UserProfile(gender=Gender.FEMALE, age=25, height_cm=160, unit=ScaleUnit.CATTY)
        machine = ProtocolStateMachine(profile, clock=clock, rng=random.Random(1))

        effects = machine.handle(Connected())

        assert commands(effects)[0].payload == bytes([0x06, 0x04, 0x00, 0x02])

    def test_sync_clock_writes_time(self, male_profile, clock):
        """With clock sync the current time is written after the unit."""
        machine = ProtocolStateMachine(male_profile, sync_clock=True, clock=clock, rng=random.Random(1))

        effects = machine.handle(Connected())

        targets = [command.target for command in commands(effects)]
        assert targets == [codec.CUSTOM_CONFIG, codec.CURRENT_TIME, codec.HISTORY]
        assert machine.step == 2

    def test_status_messages(self, machine):
        """Every step reports what it is doing."""
        effects = machine.handle(Connected())

        messages = [effect.message for effect in of_type(effects, EmitStatus)]
        assert messages == [
            "Connected - starting communication protocol",
            "Setting scale units...",
            "Preparing scale for history data...",
        ]


class TestUniqueId:
    """Per-session user identifier."""

    def test_range(self, male_profile):
        """Random base in [100, 65534] plus the user's age."""
        rng = random.Random(3)
        for _ in range(200):
            unique_id = generate_unique_id(male_profile, rng)
            assert 100 + 30 <= unique_id <= 65534 + 30

    def test_stable_within_session(self, machine):
        """Step 4 and the final acknowledgment use the same id."""
        run_handshake(machine)
        unique_id = machine.unique_id

        effects = machine.handle(DataReceived(b"\x03"))

        assert commands(effects)[1] == codec.encode_user_identifier(UserTag.FINAL_ACKNOWLEDGMENT, unique_id)
        assert machine.unique_id == unique_id

    def test_new_id_per_session(self, machine):
        """Each connection draws a new id."""
        machine.handle(Connected())
        first = machine.unique_id
        machine.handle(Disconnected())
        machine.handle(Connected())

        assert machine.unique_id is not None
        assert machine.unique_id != first


class TestDataReceived:
    """Inbound packets."""

    def test_stop_marker_sends_epilogue(self, machine):
        """Scale stop marker is acknowledged, not decoded."""
        run_handshake(machine)

        effects = machine.handle(DataReceived(bytes([0x03, 0x00])))

        assert [command.payload[0] for command in commands(effects)] == [0x03, 0x04]
        assert of_type(effects, EmitMeasurement) == []
        assert machine.phase is Phase.AWAITING_HISTORY

    def test_measurement_emitted(self, machine, make_packet):
        """A final packet becomes a measurement."""
        run_handshake(machine)

        effects = machine.handle(DataReceived(make_packet(14000, impedance=400)))

        (emitted,) = of_type(effects, EmitMeasurement)
        assert emitted.measurement.weight_kg == pytest.approx(70.0)
        assert emitted.measurement.has_body_composition is True
        assert EmitStatus("New measurement: 70.00 kg") in effects

    def test_unstable_packet_skipped(self, machine, make_packet):
        """Non-final packets produce nothing but a timer reset."""
        run_handshake(machine)

        effects = machine.handle(DataReceived(make_packet(14000, stabilized=False)))

        assert effects == [ArmTimer(60.0)]

    def test_malformed_packet_reported(self, machine):
        """Decode errors become a status note and the session carries on."""
        run_handshake(machine)

        effects = machine.handle(DataReceived(bytes([0x22, 0x01, 0x02])))

        (status,) = of_type(effects, EmitStatus)
        assert status.message.startswith("Discarded packet:")
        assert of_type(effects, EmitMeasurement) == []
        assert machine.active is True

    def test_data_resets_deadline(self, machine, clock, make_packet):
        """Every packet pushes the inactivity deadline out."""
        run_handshake(machine)
        clock.now += 45.0

        machine.handle(DataReceived(make_packet(14000, stabilized=False)))

        assert machine.session.deadline == clock.now + 60.0

    def test_data_during_handshake_is_decoded(self, machine, make_packet):
        """Live packets are accepted before the history request."""
        machine.handle(Connected())

        effects = machine.handle(DataReceived(make_packet(13000)))

        assert len(of_type(effects, EmitMeasurement)) == 1
        assert machine.step == 2

    def test_data_after_disconnect_ignored(self, machine, make_packet):
        """Late packets after a disconnect are dropped."""
        run_handshake(machine)
        machine.handle(Disconnected())

        assert machine.handle(DataReceived(make_packet(14000))) == []


class TestTeardown:
    """Timeout, disconnects and failures."""

    def test_timeout_disconnects(self, machine):
        """Inactivity timeout forces a disconnect."""
        run_handshake(machine)

        effects = machine.handle(Timeout())

        assert of_type(effects, Disconnect) == [Disconnect()]
        assert of_type(effects, CancelTimer) == [CancelTimer()]
        assert machine.phase is Phase.DISCONNECTED
        assert machine.active is False
        assert machine.stopped is False
        assert machine.step == 0

    def test_second_timeout_is_noop(self, machine):
        """A timer firing after the disconnect does nothing."""
        run_handshake(machine)
        machine.handle(Timeout())

        assert machine.handle(Timeout()) == []
        assert machine.phase is Phase.DISCONNECTED

    def test_transport_disconnect(self, machine):
        """Transport-side disconnect ends the session without another disconnect call."""
        run_handshake(machine)

        effects = machine.handle(Disconnected())

        assert of_type(effects, Disconnect) == []
        assert EmitStatus("Disconnected from scale") in effects
        assert machine.phase is Phase.DISCONNECTED

    def test_disconnect_after_timeout_is_noop(self, machine):
        """The transport's disconnect event after a timeout is ignored."""
        run_handshake(machine)
        machine.handle(Timeout())

        assert machine.handle(Disconnected()) == []

    def test_disconnect_requested(self, machine):
        """Caller-requested disconnect tears the session down."""
        machine.handle(Connected())

        effects = machine.handle(DisconnectRequested())

        assert of_type(effects, Disconnect) == [Disconnect()]
        assert machine.phase is Phase.DISCONNECTED

    def test_disconnect_requested_when_idle(self, machine):
        """Disconnect is still issued without a session, state is unchanged."""
        effects = machine.handle(DisconnectRequested())

        assert of_type(effects, Disconnect) == [Disconnect()]
        assert machine.phase is Phase.IDLE

    def test_stray_events_after_disconnect(self, machine):
        """Acks arriving after a disconnect are ignored."""
        run_handshake(machine)
        machine.handle(Disconnected())

        for event in (WriteAcknowledged(), NotificationEnabled(), ServicesDiscovered(), Timeout()):
            assert machine.handle(event) == []
        assert machine.phase is Phase.DISCONNECTED

    def test_write_failure_reported_without_retry(self, machine):
        """Transport failures are reported and the machine stays where it is."""
        machine.handle(Connected())
        machine.handle(WriteAcknowledged())

        effects = machine.handle(TransportFailure(TransportError(ErrorKind.WRITE_ERROR, "boom")))

        assert effects == [EmitStatus("Error: Write operation failed")]
        assert machine.step == 2
        assert machine.stopped is True

    def test_connection_failed(self, machine):
        """Connection failures are reported and nothing starts."""
        effects = machine.handle(ConnectionFailed(TransportError(ErrorKind.CONNECTION_TIMEOUT)))

        assert effects == [EmitStatus("Error: Connection timeout")]
        assert machine.active is False


class TestTransition:
    """The pure transition function."""

    def test_does_not_mutate_input(self, male_profile):
        """Transition returns a new session and leaves the old one alone."""
        context = SessionContext(profile=male_profile, rng=random.Random(5))
        session = Session()

        new_session, effects = transition(session, Connected(), context)

        assert session == Session()
        assert new_session.phase is Phase.HANDSHAKING
        assert effects

    def test_unknown_event(self, male_profile):
        """Unsupported events raise TypeError."""
        context = SessionContext(profile=male_profile)

        with pytest.raises(TypeError):
            transition(Session(), object(), context)
