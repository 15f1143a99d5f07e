import logging
import natsort
import os
import pathlib
import re
from typing import Sequence

import msgspec
import serial.tools.list_ports
import serial.tools.list_ports_common

from serial_bridge import _exceptions

log = logging.getLogger("serial_bridge.scanning")

# Raspberry Pi (RP2040 / RP2350 boards such as the Pico)
TARGET_VENDOR_ID = "2e8a"

COMMON_UART_PATHS = (
    "/dev/ttyACM0",
    "/dev/ttyUSB0",
    "/dev/ttyAMA0",
    "/dev/serial0",
    "/dev/ttyS0",
)

_COM_RE = re.compile(r"^COM(\d+)$", re.I)


class DeviceDescriptor(msgspec.Struct, frozen=True, rename="camel"):
    """What one enumeration reported about an available serial device"""

    path: str
    manufacturer: str | None = None
    serial_number: str | None = None
    vendor_id: str | None = None
    product_id: str | None = None
    location_id: str | None = None
    description: str | None = None

    def __str__(self):
        return self.path


def list_ports() -> list[DeviceDescriptor]:
    """Returns serial devices found on this system; [] if scanning fails"""

    try:
        out = _scan()
    except _exceptions.SerialScanException as ex:
        log.warning("%s (treating as no ports)", ex, exc_info=True)
        return []

    out.sort(key=natsort.natsort_keygen(key=lambda d: d.path, alg=natsort.ns.P))
    log.debug("Found %d ports", len(out))
    return out


def select_candidate(
    descriptors: Sequence[DeviceDescriptor],
) -> DeviceDescriptor | None:
    """Best-effort guess at which device is the intended microcontroller.

    Preference order: a device with the target vendor id; then the first
    conventional UART path (in COMMON_UART_PATHS order) that is present;
    then the highest-numbered COMn port. None if nothing qualifies.
    """

    for desc in descriptors:
        if _normalize_id(desc.vendor_id) == TARGET_VENDOR_ID:
            log.debug("Candidate %s (vendor %s)", desc.path, TARGET_VENDOR_ID)
            return desc

    by_path = {desc.path: desc for desc in reversed(descriptors)}
    for path in COMMON_UART_PATHS:
        if desc := by_path.get(path):
            log.debug("Candidate %s (common UART path)", path)
            return desc

    numbered = [
        (int(m[1]), desc)
        for desc in descriptors
        if (m := _COM_RE.match(desc.path))
    ]
    if numbered:
        number, desc = max(numbered, key=lambda nd: nd[0])
        log.debug("Candidate %s (highest COM number)", desc.path)
        return desc

    log.debug("No candidate among %d ports", len(descriptors))
    return None


def _scan() -> list[DeviceDescriptor]:
    if ov := os.getenv("SERIAL_BRIDGE_SCAN_OVERRIDE"):
        try:
            data = pathlib.Path(ov).read_bytes()
            out = msgspec.json.decode(data, type=list[DeviceDescriptor])
        except (OSError, msgspec.DecodeError) as ex:
            msg = f"Can't read $SERIAL_BRIDGE_SCAN_OVERRIDE {ov}"
            raise _exceptions.SerialScanException(msg) from ex

        log.debug("$SERIAL_BRIDGE_SCAN_OVERRIDE (%s): %d ports", ov, len(out))
        return out

    try:
        ports = serial.tools.list_ports.comports()
    except OSError as ex:
        raise _exceptions.SerialScanException("Can't scan serial ports") from ex

    return [_convert_port(p) for p in ports]


def _convert_port(
    p: serial.tools.list_ports_common.ListPortInfo,
) -> DeviceDescriptor:
    _NA = (None, "", "n/a")

    def text(value):
        return None if value in _NA else str(value)

    def hex_id(value):
        return None if value is None else f"{value:04x}"

    return DeviceDescriptor(
        path=p.device,
        manufacturer=text(p.manufacturer),
        serial_number=text(p.serial_number),
        vendor_id=hex_id(p.vid),
        product_id=hex_id(p.pid),
        location_id=text(p.location),
        description=text(p.description),
    )


def _normalize_id(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip().lower()
    value = value[2:] if value.startswith("0x") else value
    return value.zfill(4)
