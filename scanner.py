"""BLE client daemon for the Mi Body Composition Scale - logs every measurement."""

import asyncio
import logging
from collections.abc import Iterable

from bleak.backends.device import BLEDevice

from ble import BleakTransport
from config import (
    CONNECT_TIMEOUT_SECONDS,
    INACTIVITY_TIMEOUT_SECONDS,
    PROFILE,
    RESCAN_INTERVAL_SECONDS,
    SCALE_ADDRESS,
    SCALE_NAME,
    SCAN_TIMEOUT_SECONDS,
    SYNC_CLOCK,
)
from controller import ScaleController
from models import ScaleMeasurement, UserProfile

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
log = logging.getLogger(__name__)


def select_device(
    devices: Iterable[BLEDevice],
    name: str = SCALE_NAME,
    address: str | None = SCALE_ADDRESS,
) -> BLEDevice | None:
    """Pick the configured scale from scan results.

    A configured address wins over the name; names must match exactly.
    """
    for device in devices:
        if address:
            if device.address.upper() == address.upper():
                return device
        elif device.name == name:
            return device
    return None


def format_measurement(measurement: ScaleMeasurement) -> str:
    """One-line summary of a measurement for the log."""
    line = f"{measurement.timestamp:%Y-%m-%d %H:%M:%S} weight={measurement.weight_kg:.2f}kg"
    if measurement.has_body_composition:
        line += (
            f" impedance={measurement.impedance_ohm:.0f}ohm"
            f" fat={measurement.body_fat_pct:.1f}%"
            f" water={measurement.water_pct:.1f}%"
            f" muscle={measurement.muscle_pct:.1f}%"
            f" bone={measurement.bone_mass_kg:.2f}kg"
            f" visceral={measurement.visceral_fat:.1f}"
            f" lbm={measurement.lean_body_mass_kg:.1f}kg"
        )
    return line


def log_measurement(measurement: ScaleMeasurement) -> None:
    log.info("Measurement: %s", format_measurement(measurement))


async def main() -> None:
    """Scan for the scale, run a session, repeat."""
    profile = UserProfile.from_dict(PROFILE)
    transport = BleakTransport(connect_timeout=CONNECT_TIMEOUT_SECONDS)
    controller = ScaleController(
        transport,
        profile,
        inactivity_timeout=INACTIVITY_TIMEOUT_SECONDS,
        sync_clock=SYNC_CLOCK,
    )
    controller.add_measurement_listener(log_measurement)

    log.info("Looking for scale '%s'...", SCALE_ADDRESS or SCALE_NAME)
    try:
        while True:
            devices = await controller.scan(SCAN_TIMEOUT_SECONDS)
            device = select_device(devices)
            if device is not None and await controller.connect(device):
                await controller.wait_disconnected()
            await asyncio.sleep(RESCAN_INTERVAL_SECONDS)
    finally:
        await controller.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Stopped")
