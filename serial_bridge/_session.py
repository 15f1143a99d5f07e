import asyncio
import logging
from typing import Callable

from serial_bridge import _connection
from serial_bridge import _exceptions
from serial_bridge import _framing

log = logging.getLogger("serial_bridge.session")
data_log = logging.getLogger(log.name + ".data")

LineCallback = Callable[["PortSession", str], None]
FailureCallback = Callable[["PortSession", _exceptions.SerialIoException], None]


class PortSession:
    """One open device handle with a line framer bound to its input.

    The connection's I/O threads hand bytes and failures over to 'loop';
    framing and every callback run there. After close() nothing more is
    delivered, even for chunks that were already in flight.
    """

    def __init__(
        self,
        conn: _connection.SerialConnection,
        loop: asyncio.AbstractEventLoop,
        *,
        on_line: LineCallback,
        on_read_failure: FailureCallback,
        on_write_failure: FailureCallback,
        encoding: str = "utf-8",
    ):
        self.conn = conn
        self._loop = loop
        self._framer = _framing.LineFramer(encoding=encoding)
        self._on_line = on_line
        self._on_read_failure = on_read_failure
        self._on_write_failure = on_write_failure
        self._attached = False

    def __repr__(self) -> str:
        state = "attached" if self._attached else "detached"
        return f"PortSession({self.path!r}, baud={self.baud}, {state})"

    @property
    def path(self) -> str:
        return self.conn.port

    @property
    def baud(self) -> int:
        return self.conn.baud

    def start(self) -> None:
        self._attached = True
        self.conn.start(
            on_incoming=lambda data: self._post(self._incoming, data),
            on_read_failure=lambda ex: self._post(self._read_failed, ex),
            on_write_failure=lambda ex: self._post(self._write_failed, ex),
        )

    def send(self, line: str) -> None:
        """Queues 'line' plus a newline; raises SerialNotOpen if unwritable"""

        if not self._attached or not self.conn.writable:
            raise _exceptions.SerialNotOpen("Port not open", self.path)
        data_log.debug("TX: %r", line)
        self.conn.write((line + "\n").encode())

    def detach(self) -> None:
        """Stops delivering lines and drops any partial line; loop only"""

        if self._attached:
            self._attached = False
            self._framer.reset()

    def close(self) -> None:
        """Detaches, then stops I/O and releases the handle (blocks)"""

        self.detach()
        self.conn.close()

    def _post(self, handler: Callable, arg: object) -> None:
        """Runs on an I/O thread"""

        try:
            self._loop.call_soon_threadsafe(handler, arg)
        except RuntimeError:
            log.debug("Event loop gone, dropping %s I/O event", self.path)

    def _incoming(self, data: bytes) -> None:
        if not self._attached:
            return
        for line in self._framer.feed(data):
            data_log.debug("RX: %r", line)
            self._on_line(self, line)
            if not self._attached:
                break

    def _read_failed(self, ex: _exceptions.SerialIoException) -> None:
        if self._attached:
            self._on_read_failure(self, ex)

    def _write_failed(self, ex: _exceptions.SerialIoException) -> None:
        if self._attached:
            self._on_write_failure(self, ex)
