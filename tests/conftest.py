"""Shared fixtures for scale tests."""

from datetime import datetime

import pytest

from models import Gender, ScaleUnit, UserProfile

NOW = datetime(2026, 6, 1, 12, 0, 0)


def build_packet(
    weight_raw: int,
    timestamp: datetime = datetime(2026, 5, 20, 10, 30, 15),
    impedance: int | None = None,
    stabilized: bool = True,
    weight_removed: bool = False,
    lbs: bool = False,
    catty: bool = False,
) -> bytes:
    """Build a 13-byte measurement packet the way the scale sends it."""
    ctrl0 = 0x01 if lbs else 0x00
    ctrl1 = 0x00
    if impedance is not None:
        ctrl1 |= 0x02
    if stabilized:
        ctrl1 |= 0x20
    if catty:
        ctrl1 |= 0x40
    if weight_removed:
        ctrl1 |= 0x80
    return (
        bytes([ctrl0, ctrl1])
        + timestamp.year.to_bytes(2, "little")
        + bytes([timestamp.month, timestamp.day, timestamp.hour, timestamp.minute, timestamp.second])
        + (impedance or 0).to_bytes(2, "little")
        + weight_raw.to_bytes(2, "little")
    )


@pytest.fixture
def make_packet():
    return build_packet


@pytest.fixture
def male_profile() -> UserProfile:
    return UserProfile(gender=Gender.MALE, age=30, height_cm=175, unit=ScaleUnit.KG)
