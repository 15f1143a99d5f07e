"""
Serial-to-web bridge: one shared serial port, line framing, and fan-out of
received lines to any number of live subscribers.
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from serial_bridge._config import BridgeConfig

from serial_bridge._connection import (
    DEFAULT_BAUD,
    SerialConnection,
    SerialOptions,
)

from serial_bridge._events import (
    EVENT_KINDS,
    CloseEvent,
    CommandResult,
    DataEvent,
    ErrorEvent,
    EventKind,
    OpenEvent,
    SessionEvent,
    SessionStatus,
)

from serial_bridge._exceptions import (
    BridgeConfigInvalid,
    SerialBridgeException,
    SerialDeviceRemoved,
    SerialIoException,
    SerialNotOpen,
    SerialOpenBusy,
    SerialOpenDenied,
    SerialOpenException,
    SerialOpenNotFound,
    SerialScanException,
)

from serial_bridge._fanout import EventFanout, Subscription
from serial_bridge._framing import LineFramer, frame_lines
from serial_bridge._manager import SessionManager
from serial_bridge._scanning import DeviceDescriptor, list_ports, select_candidate
from serial_bridge._session import PortSession

__all__ = [n for n in dir() if not n.startswith("_")]
