import time
import typing
from typing import ClassVar, Literal

import msgspec

EventKind = Literal["open", "data", "error", "close"]
EVENT_KINDS: tuple[EventKind, ...] = typing.get_args(EventKind)

SessionStateName = Literal["idle", "opening", "open", "closing"]


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class OpenEvent(msgspec.Struct, frozen=True):
    """The device handle is live and lines will follow"""

    kind: ClassVar[EventKind] = "open"
    ts: int = msgspec.field(default_factory=now_ms)


class DataEvent(msgspec.Struct, frozen=True):
    """One line received from the device, without its terminator"""

    kind: ClassVar[EventKind] = "data"
    line: str


class ErrorEvent(msgspec.Struct, frozen=True):
    kind: ClassVar[EventKind] = "error"
    message: str
    error_kind: str = msgspec.field(default="error", name="kind")


class CloseEvent(msgspec.Struct, frozen=True):
    kind: ClassVar[EventKind] = "close"
    ts: int = msgspec.field(default_factory=now_ms)


SessionEvent = OpenEvent | DataEvent | ErrorEvent | CloseEvent


class CommandResult(msgspec.Struct, frozen=True, omit_defaults=True):
    """Synchronous answer to open/close/send: accepted or not, and why"""

    ok: bool
    error: str | None = None


class SessionStatus(msgspec.Struct, frozen=True):
    open: bool
    path: str | None
    baud: int
    state: SessionStateName
