"""Shared types: user profile, units, commands and decoded measurements."""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import NamedTuple


class Gender(Enum):
    """Gender as used by the body composition formulas."""
    FEMALE = 0
    MALE = 1


class ScaleUnit(Enum):
    """Display unit of the scale. Values are the wire codes of the set-units command."""
    KG = 0
    LBS = 1
    CATTY = 2

    @property
    def kg_factor(self) -> float:
        return KG_PER_UNIT[self]


KG_PER_UNIT = {
    ScaleUnit.KG: 1.0,
    ScaleUnit.LBS: 0.453592,
    ScaleUnit.CATTY: 0.5,
}


def to_kg(value: float, unit: ScaleUnit) -> float:
    """Convert a weight expressed in ``unit`` to kilograms."""
    return value * unit.kg_factor


def from_kg(weight_kg: float, unit: ScaleUnit) -> float:
    """Convert a weight in kilograms to ``unit``."""
    return weight_kg / unit.kg_factor


@dataclass(frozen=True)
class UserProfile:
    """Attributes of the person on the scale, fixed for one session."""
    gender: Gender
    age: int
    height_cm: float
    unit: ScaleUnit = ScaleUnit.KG

    def __post_init__(self) -> None:
        if self.age <= 0:
            raise ValueError(f"age must be positive, got {self.age}")
        if self.height_cm <= 0:
            raise ValueError(f"height_cm must be positive, got {self.height_cm}")

    @classmethod
    def from_dict(cls, data: dict) -> "UserProfile":
        """Build a profile from a mapping like ``config.PROFILE``.

        Gender and unit are given by name ("male", "lbs", ...). Unknown names
        raise ValueError.
        """
        try:
            gender = Gender[str(data["gender"]).upper()]
            unit = ScaleUnit[str(data.get("unit", "kg")).upper()]
        except KeyError as exc:
            raise ValueError(f"invalid profile setting: {exc}") from exc
        return cls(
            gender=gender,
            age=int(data["age"]),
            height_cm=float(data["height_cm"]),
            unit=unit,
        )


class Target(NamedTuple):
    """GATT service + characteristic a command is written to."""
    service: str
    characteristic: str


@dataclass(frozen=True)
class Command:
    """Outbound command bytes and where to write them."""
    payload: bytes
    target: Target

    def __str__(self) -> str:
        return f"[{self.payload.hex(' ')}] -> {self.target.characteristic}"


_COMPOSITION_FIELDS = (
    "body_fat_pct",
    "water_pct",
    "muscle_pct",
    "bone_mass_kg",
    "visceral_fat",
    "lean_body_mass_kg",
)


@dataclass(frozen=True)
class ScaleMeasurement:
    """Stabilized reading decoded from a measurement packet.

    Body composition fields are either all set (impedance was present and
    positive) or all None.
    """
    weight_kg: float
    timestamp: datetime
    impedance_ohm: float | None = None
    body_fat_pct: float | None = None
    water_pct: float | None = None
    muscle_pct: float | None = None
    bone_mass_kg: float | None = None
    visceral_fat: float | None = None
    lean_body_mass_kg: float | None = None

    def __post_init__(self) -> None:
        if self.weight_kg <= 0:
            raise ValueError(f"weight_kg must be positive, got {self.weight_kg}")
        present = [getattr(self, name) is not None for name in _COMPOSITION_FIELDS]
        if any(present) and not all(present):
            raise ValueError("body composition fields must be all set or all None")
        if all(present) and not (self.impedance_ohm and self.impedance_ohm > 0):
            raise ValueError("body composition requires a positive impedance")

    @property
    def has_body_composition(self) -> bool:
        return self.body_fat_pct is not None

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
