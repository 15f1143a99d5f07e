import contextlib
import errno
import logging
import os
import serial
import threading
from typing import Callable

import pydantic

from serial_bridge import _exceptions
from serial_bridge import _locking

log = logging.getLogger("serial_bridge.connection")
data_log = logging.getLogger(log.name + ".data")

DEFAULT_BAUD = 115200

_REMOVED_ERRNOS = (errno.EIO, errno.ENXIO, errno.ENODEV)

IncomingCallback = Callable[[bytes], None]
FailureCallback = Callable[[_exceptions.SerialIoException], None]


class SerialOptions(pydantic.BaseModel):
    baud: int = pydantic.Field(DEFAULT_BAUD, gt=0)
    write_timeout: float = 0.1
    lock: bool = True


class SerialConnection(contextlib.AbstractContextManager):
    """An exclusively held device handle with background reader/writer threads.

    Opening happens in the constructor and blocks, so async callers should
    run it in a worker thread. No bytes are read until start() is called
    with the callbacks that receive them; callbacks run on the I/O threads.
    """

    @pydantic.validate_call
    def __init__(self, port: str, opts: SerialOptions | int = SerialOptions()):
        if isinstance(opts, int):
            opts = SerialOptions(baud=opts)

        self.port = port
        self.baud = opts.baud
        with contextlib.ExitStack() as cleanup:
            if opts.lock:
                cleanup.enter_context(_locking.using_lock_file(port))

            log.debug("Opening %s (%s)", port, opts)
            try:
                pyserial = cleanup.enter_context(
                    serial.Serial(
                        port=port,
                        baudrate=opts.baud,
                        write_timeout=opts.write_timeout,
                    )
                )
            except (OSError, ValueError) as ex:
                raise _open_error(port, ex) from ex

            if opts.lock and hasattr(pyserial, "fileno"):
                fd = pyserial.fileno()
                cleanup.enter_context(_locking.using_fd_lock(port, fd))

            self._io = cleanup.enter_context(_IoThreads(pyserial))
            self._cleanup = cleanup.pop_all()

    def __del__(self) -> None:
        if hasattr(self, "_cleanup"):
            self._cleanup.close()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self._cleanup.__exit__(exc_type, exc_value, traceback)

    def __repr__(self) -> str:
        return f"SerialConnection({self.port!r}, baud={self.baud})"

    def start(
        self,
        on_incoming: IncomingCallback,
        on_read_failure: FailureCallback,
        on_write_failure: FailureCallback,
    ) -> None:
        self._io.start(on_incoming, on_read_failure, on_write_failure)

    def close(self) -> None:
        """Stops and joins the I/O threads, then releases the device"""

        self._cleanup.close()

    @property
    def writable(self) -> bool:
        with self._io.monitor:
            return not (self._io.stopping or self._io.exception)

    @pydantic.validate_call
    def write(self, data: bytes) -> None:
        """Queues 'data' for the writer thread (FIFO, never interleaved)"""

        with self._io.monitor:
            if self._io.stopping:
                message = "Serial port was closed"
                raise _exceptions.SerialNotOpen(message, self.port)
            elif self._io.exception:
                raise self._io.exception
            elif data:
                self._io.outgoing.extend(data)
                self._io.monitor.notify_all()


class _IoThreads(contextlib.AbstractContextManager):
    def __init__(self, pyserial: serial.Serial) -> None:
        self.threads: list[threading.Thread] = []
        self.pyserial = pyserial
        self.monitor = threading.Condition()
        self.outgoing = bytearray()
        self.stopping = False
        self.exception: None | _exceptions.SerialIoException = None

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def start(
        self,
        on_incoming: IncomingCallback,
        on_read_failure: FailureCallback,
        on_write_failure: FailureCallback,
    ) -> None:
        port = self.pyserial.port
        loops = (
            (lambda: self._readloop(on_incoming, on_read_failure), "reader"),
            (lambda: self._writeloop(on_write_failure), "writer"),
        )
        for target, n in loops:
            thread = threading.Thread(target=target, name=f"{port} {n}")
            thread.daemon = True
            thread.start()
            self.threads.append(thread)

    def stop(self) -> None:
        with self.monitor:
            self.stopping = True
            self.monitor.notify_all()

        try:
            self.pyserial.cancel_read()
            self.pyserial.cancel_write()
            log.debug("Cancelled %s I/O", self.pyserial.port)
        except (OSError, AttributeError):
            log.warning("Can't cancel %s I/O", self.pyserial.port, exc_info=True)

        log.debug("Joining %s I/O threads", self.pyserial.port)
        current = threading.current_thread()
        for thr in self.threads:
            if thr is not current:
                thr.join()
        self.threads.clear()

    def _readloop(
        self,
        on_incoming: IncomingCallback,
        on_failure: FailureCallback,
    ) -> None:
        log.debug("Starting reader")
        while not self.stopping:
            try:
                # Block for at least one byte, then grab all available
                incoming = self.pyserial.read(size=1)
                if incoming:
                    waiting = self.pyserial.in_waiting
                    if waiting > 0:
                        incoming += self.pyserial.read(size=waiting)
            except OSError as ex:
                if self.stopping:
                    break
                error = _read_error(self.pyserial.port, ex)
                data_log.warning("%s", error, exc_info=True)
                with self.monitor:
                    self.exception = error
                    self.monitor.notify_all()
                on_failure(error)
                break

            if incoming and not self.stopping:
                data_log.debug("Read %db", len(incoming))
                on_incoming(bytes(incoming))

    def _writeloop(self, on_failure: FailureCallback) -> None:
        log.debug("Starting writer")

        # Avoid blocking on writes to avoid pyserial bugs:
        # https://github.com/pyserial/pyserial/issues/280
        # https://github.com/pyserial/pyserial/issues/281
        chunk = b""
        while True:
            if chunk:
                try:
                    self.pyserial.write(chunk)
                    self.pyserial.flush()
                except OSError as ex:
                    message, port = "Serial write error", self.pyserial.port
                    error = _exceptions.SerialIoException(message, port)
                    error.__cause__ = ex
                    data_log.warning("%s", message, exc_info=True)
                    if not self.stopping:
                        on_failure(error)

            with self.monitor:
                if chunk:
                    assert self.outgoing.startswith(chunk)
                    data_log.debug("Wrote %d/%db", len(chunk), len(self.outgoing))
                    del self.outgoing[: len(chunk)]
                    self.monitor.notify_all()
                while not self.stopping and not self.exception:
                    if self.outgoing:
                        break
                    self.monitor.wait()
                if self.stopping or self.exception:
                    return
                chunk = bytes(self.outgoing[:256])


def _errno_of(ex: BaseException) -> int | None:
    seen: BaseException | None = ex
    while seen is not None:
        if isinstance(seen, OSError) and seen.errno:
            return seen.errno
        seen = seen.__cause__ or seen.__context__
    return None


def _open_error(port: str, ex: Exception) -> _exceptions.SerialOpenException:
    code = _errno_of(ex)
    if code == errno.ENOENT or (code is None and "FileNotFound" in str(ex)):
        return _exceptions.SerialOpenNotFound("No such serial device", port)
    elif code == errno.EBUSY:
        return _exceptions.SerialOpenBusy("Serial port busy (EBUSY)", port)
    elif code in (errno.EACCES, errno.EPERM) or "PermissionError" in str(ex):
        message = "Permission denied opening serial port"
        return _exceptions.SerialOpenDenied(message, port)
    else:
        return _exceptions.SerialOpenException(f"Serial port open error: {ex}", port)


def _read_error(port: str, ex: Exception) -> _exceptions.SerialIoException:
    """Classifies a reader failure as device removal or a plain I/O error"""

    if (
        _errno_of(ex) in _REMOVED_ERRNOS
        or "disconnected" in str(ex)
        or not os.path.exists(port)
    ):
        error: _exceptions.SerialIoException = _exceptions.SerialDeviceRemoved(
            "Serial device disconnected", port
        )
    else:
        error = _exceptions.SerialIoException(f"Serial read error: {ex}", port)
    error.__cause__ = ex
    return error
