"""Encode handshake commands and decode Mi scale measurement packets."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum

from body_composition import calculate_body_composition
from models import Command, ScaleMeasurement, ScaleUnit, Target, UserProfile, to_kg

log = logging.getLogger(__name__)

# Xiaomi custom GATT UUIDs
WEIGHT_CUSTOM_SERVICE = "00001530-0000-3512-2118-0009af100700"
WEIGHT_CUSTOM_CONFIG_CHARACTERISTIC = "00001542-0000-3512-2118-0009af100700"
HISTORY_CHARACTERISTIC = "00002a2f-0000-3512-2118-0009af100700"

# Standard GATT UUIDs
BODY_COMPOSITION_SERVICE = "0000181d-0000-1000-8000-00805f9b34fb"
WEIGHT_MEASUREMENT_CHARACTERISTIC = "00002a9d-0000-1000-8000-00805f9b34fb"
CURRENT_TIME_CHARACTERISTIC = "00002a2b-0000-1000-8000-00805f9b34fb"

CUSTOM_CONFIG = Target(WEIGHT_CUSTOM_SERVICE, WEIGHT_CUSTOM_CONFIG_CHARACTERISTIC)
HISTORY = Target(BODY_COMPOSITION_SERVICE, HISTORY_CHARACTERISTIC)
WEIGHT_MEASUREMENT = Target(BODY_COMPOSITION_SERVICE, WEIGHT_MEASUREMENT_CHARACTERISTIC)
CURRENT_TIME = Target(BODY_COMPOSITION_SERVICE, CURRENT_TIME_CHARACTERISTIC)

PACKET_LENGTH = 13
DATE_WINDOW_YEARS = 20

HISTORY_REQUEST = 0x02
STOP_MARKER = 0x03
HISTORY_MODE_MAGIC = bytes([0x01, 0x96, 0x8A, 0xBD, 0x62])


class UserTag(IntEnum):
    """First byte of the user identifier command."""
    CONFIGURE = 0x01
    FINAL_ACKNOWLEDGMENT = 0x04


class DecodeError(ValueError):
    """Packet could not be turned into a measurement."""


class InvalidLengthError(DecodeError):
    def __init__(self, length: int) -> None:
        self.length = length
        super().__init__(f"expected {PACKET_LENGTH} bytes, got {length}")


class DateOutOfRangeError(DecodeError):
    def __init__(self, message: str, timestamp: datetime | None = None) -> None:
        self.timestamp = timestamp
        super().__init__(message)


def encode_set_units(unit: ScaleUnit) -> Command:
    """Set the unit shown on the scale display."""
    return Command(bytes([0x06, 0x04, 0x00, unit.value]), CUSTOM_CONFIG)


def encode_set_time(timestamp: datetime) -> Command:
    """Set the scale clock."""
    payload = bytes([
        timestamp.year & 0xFF,
        (timestamp.year >> 8) & 0xFF,
        timestamp.month,
        timestamp.day,
        timestamp.hour,
        timestamp.minute,
        timestamp.second,
        0x03, 0x00, 0x00,
    ])
    return Command(payload, CURRENT_TIME)


def encode_user_identifier(tag: UserTag, unique_id: int) -> Command:
    """Identify this client to the scale so it tracks which history we've seen."""
    payload = bytes([tag, 0xFF, 0xFF, (unique_id >> 8) & 0xFF, unique_id & 0xFF])
    return Command(payload, HISTORY)


def encode_history_request() -> Command:
    return Command(bytes([HISTORY_REQUEST]), HISTORY)


def encode_stop_acknowledgment() -> Command:
    return Command(bytes([STOP_MARKER]), HISTORY)


def encode_history_mode_magic() -> Command:
    return Command(HISTORY_MODE_MAGIC, HISTORY)


def is_bit_set(value: int, bit: int) -> bool:
    return value & (1 << bit) != 0


@dataclass(frozen=True)
class PacketFlags:
    """Control bits from the first two bytes of a measurement packet."""
    lbs_unit: bool
    impedance_present: bool
    stabilized: bool
    catty_unit: bool
    weight_removed: bool

    @classmethod
    def from_control_bytes(cls, ctrl0: int, ctrl1: int) -> "PacketFlags":
        return cls(
            lbs_unit=is_bit_set(ctrl0, 0),
            impedance_present=is_bit_set(ctrl1, 1),
            stabilized=is_bit_set(ctrl1, 5),
            catty_unit=is_bit_set(ctrl1, 6),
            weight_removed=is_bit_set(ctrl1, 7),
        )

    @property
    def is_final(self) -> bool:
        """Reading has settled and someone is still standing on the scale."""
        return self.stabilized and not self.weight_removed


def _decode_timestamp(data: bytes, now: datetime) -> datetime:
    year = int.from_bytes(data[2:4], "little")
    try:
        timestamp = datetime(year, data[4], data[5], data[6], data[7], data[8])
    except ValueError as exc:
        raise DateOutOfRangeError(f"invalid date fields: {exc}") from exc

    earliest = datetime(now.year - DATE_WINDOW_YEARS, 1, 1)
    latest = datetime(now.year + DATE_WINDOW_YEARS, 1, 1)
    if not earliest < timestamp < latest:
        raise DateOutOfRangeError(f"timestamp {timestamp.isoformat()} outside plausible range", timestamp)
    return timestamp


def decode_measurement(
    data: bytes,
    profile: UserProfile,
    now: datetime | None = None,
) -> ScaleMeasurement | None:
    """Decode a 13-byte measurement packet.

    Layout:
    - Byte 0: Control flags (bit 0 = lbs unit)
    - Byte 1: Control flags (bit 1 = impedance present, bit 5 = stabilized,
      bit 6 = catty unit, bit 7 = weight removed)
    - Bytes 2-3: Year (low byte first)
    - Bytes 4-8: Month, day, hour, minute, second
    - Bytes 9-10: Impedance (low byte first), valid only if flagged
    - Bytes 11-12: Weight raw (low byte first)

    Returns None for readings that are not final (not stabilized, or weight
    removed). Raises DecodeError for malformed packets.

    The packet's own unit flags pick the weight divisor, while the profile's
    unit picks the kg conversion. The two disagree if the scale display is
    set to a different unit than the profile; the scale protocol behaves
    this way and it is kept as is.
    """
    if len(data) != PACKET_LENGTH:
        raise InvalidLengthError(len(data))

    flags = PacketFlags.from_control_bytes(data[0], data[1])
    if not flags.is_final:
        return None

    timestamp = _decode_timestamp(data, now or datetime.now())

    weight_raw = int.from_bytes(data[11:13], "little")
    if weight_raw == 0:
        raise DecodeError("stabilized packet without weight")
    if flags.lbs_unit or flags.catty_unit:
        weight = weight_raw / 100.0
    else:
        weight = weight_raw / 200.0
    weight_kg = to_kg(weight, profile.unit)

    impedance = None
    if flags.impedance_present:
        impedance = float(int.from_bytes(data[9:11], "little"))

    if not impedance:
        return ScaleMeasurement(weight_kg=weight_kg, timestamp=timestamp, impedance_ohm=impedance)

    composition = calculate_body_composition(
        weight_kg=weight_kg,
        impedance_ohm=impedance,
        height_cm=profile.height_cm,
        age=profile.age,
        gender=profile.gender,
    )
    log.debug("Body composition for %.2f kg / %.0f ohm: %s", weight_kg, impedance, composition)

    return ScaleMeasurement(
        weight_kg=weight_kg,
        timestamp=timestamp,
        impedance_ohm=impedance,
        body_fat_pct=composition.body_fat_pct,
        water_pct=composition.water_pct,
        muscle_pct=composition.muscle_mass_kg / weight_kg * 100.0,
        bone_mass_kg=composition.bone_mass_kg,
        visceral_fat=composition.visceral_fat,
        lean_body_mass_kg=composition.lean_body_mass_kg,
    )
