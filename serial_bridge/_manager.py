import asyncio
import contextlib
import logging
from typing import Callable, Sequence

from serial_bridge import _config
from serial_bridge import _connection
from serial_bridge import _events
from serial_bridge import _exceptions
from serial_bridge import _fanout
from serial_bridge import _scanning
from serial_bridge import _session

log = logging.getLogger("serial_bridge.manager")

Scanner = Callable[[], Sequence[_scanning.DeviceDescriptor]]


class SessionManager(contextlib.AbstractAsyncContextManager):
    """Owns the one serial session of the process and everything around it.

    All methods must be called from the event loop the manager runs on;
    device I/O happens on worker threads and is handed back to that loop,
    so session state is only ever changed from one thread. open() and
    send() return at once; the outcome arrives later as events.
    """

    def __init__(
        self,
        config: _config.BridgeConfig = _config.BridgeConfig(),
        *,
        scanner: Scanner = _scanning.list_ports,
        connection_opts: _connection.SerialOptions = _connection.SerialOptions(),
    ):
        self.config = config
        self._scanner = scanner
        self._conn_opts = connection_opts
        self._fanout = _fanout.EventFanout()
        self._session: _session.PortSession | None = None
        self._state: _events.SessionStateName = "idle"
        self._baud = config.baud
        self._generation = 0
        self._opening: asyncio.Task | None = None
        self._releasing: set[asyncio.Task] = set()

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.shutdown()

    def __repr__(self) -> str:
        return f"SessionManager({self._state}, {self._session!r})"

    #
    # Startup and shutdown
    #

    async def start(self) -> bool:
        """Opens the configured port, else an auto-detected one.

        Returns True if a port ended up open. With no usable device the
        manager stays idle until someone calls open(); nothing is retried.
        """

        if path := self.config.port:
            log.info("Opening configured %s (baud=%d)", path, self.config.baud)
            if self.open(path, self.config.baud).ok and await self.settled():
                return True
            log.warning("Can't open configured %s", path)

        if not self.config.autodetect:
            log.info("Auto-detect disabled; waiting for an open request")
            return False

        found = await asyncio.to_thread(self._scanner)
        if not (candidate := _scanning.select_candidate(found)):
            log.info("No serial device detected; waiting for an open request")
            return False

        log.info("Auto-detected %s (of %d ports)", candidate.path, len(found))
        return self.open(candidate.path, self.config.baud).ok and (
            await self.settled()
        )

    async def settled(self) -> bool:
        """Waits for any pending open to finish; True if a port is open"""

        while (task := self._opening) and not task.done():
            await asyncio.wait([task])
        return self._state == "open"

    async def shutdown(self) -> None:
        self.close()
        if self._opening:
            await asyncio.wait([self._opening])
        if self._releasing:
            await asyncio.wait(list(self._releasing))
        self._fanout.close()
        log.debug("Session manager shut down")

    #
    # Session operations
    #

    def list_ports(self) -> list[_scanning.DeviceDescriptor]:
        return list(self._scanner())

    def open(
        self, path: str, baud: int = _connection.DEFAULT_BAUD
    ) -> _events.CommandResult:
        """Closes any current session and starts acquiring 'path'.

        The result only says whether the request was accepted; an 'open'
        or 'error' event follows once the device answers.
        """

        if not path:
            return _events.CommandResult(ok=False, error="No port path given")
        if baud <= 0:
            return _events.CommandResult(ok=False, error=f"Bad baud rate {baud}")

        self.close()
        loop = asyncio.get_running_loop()
        self._state, self._baud = "opening", baud
        self._generation += 1
        previous = self._opening
        self._opening = loop.create_task(
            self._acquire(self._generation, path, baud, previous),
            name=f"open {path}",
        )
        log.info("Opening %s (baud=%d)", path, baud)
        return _events.CommandResult(ok=True)

    def close(self) -> _events.CommandResult:
        """Tears down the session (if any) and always publishes 'close'"""

        self._generation += 1  # any acquisition in flight is now stale
        session, self._session = self._session, None
        if session:
            self._state = "closing"
            log.info("Closing %s", session.path)
            session.detach()
            task = asyncio.get_running_loop().create_task(
                self._release(session), name=f"close {session.path}"
            )
            self._releasing.add(task)
            task.add_done_callback(self._releasing.discard)
        self._state = "idle"
        self._publish(_events.CloseEvent())
        return _events.CommandResult(ok=True)

    def send(self, line: str) -> _events.CommandResult:
        """Queues 'line' (plus newline) for the device; failures come as events"""

        session = self._session
        try:
            if not session or self._state != "open":
                raise _exceptions.SerialNotOpen("Port not open")
            session.send(line)
        except _exceptions.SerialBridgeException as ex:
            log.warning("Send failed: %s", ex)
            return _events.CommandResult(ok=False, error=str(ex))
        return _events.CommandResult(ok=True)

    def status(self) -> _events.SessionStatus:
        is_open = self._state == "open" and self._session is not None
        return _events.SessionStatus(
            open=is_open,
            path=self._session.path if is_open and self._session else None,
            baud=self._baud,
            state=self._state,
        )

    def subscribe(
        self, kind: _events.EventKind, callback: _fanout.EventCallback
    ) -> _fanout.Subscription:
        return self._fanout.subscribe(kind, callback)

    @property
    def fanout(self) -> _fanout.EventFanout:
        return self._fanout

    #
    # Internals (all on the event loop)
    #

    async def _acquire(
        self,
        generation: int,
        path: str,
        baud: int,
        previous: asyncio.Task | None,
    ) -> None:
        if previous and not previous.done():
            await asyncio.wait([previous])  # one acquisition at a time
        if self._releasing:
            await asyncio.wait(list(self._releasing))  # let closed handles go first
        if generation != self._generation:
            log.debug("Open of %s superseded before it started", path)
            return

        opts = self._conn_opts.model_copy(update={"baud": baud})
        try:
            conn = await asyncio.to_thread(_connection.SerialConnection, path, opts)
        except OSError as ex:
            if generation == self._generation:
                log.warning("Can't open %s: %s", path, ex)
                kind = getattr(ex, "kind", "open_failed")
                self._state = "idle"
                self._publish(_events.ErrorEvent(str(ex), kind))
            return

        if generation != self._generation:
            log.debug("Open of %s superseded, releasing it", path)
            await asyncio.to_thread(conn.close)
            return

        self._session = _session.PortSession(
            conn,
            asyncio.get_running_loop(),
            on_line=self._on_line,
            on_read_failure=self._on_read_failure,
            on_write_failure=self._on_write_failure,
        )
        self._session.start()
        self._state = "open"
        log.info("Opened %s (baud=%d)", path, baud)
        self._publish(_events.OpenEvent())

    async def _release(self, session: _session.PortSession) -> None:
        try:
            await asyncio.to_thread(session.close)
        except OSError:
            log.warning("Error closing %s", session.path, exc_info=True)
        else:
            log.debug("Released %s", session.path)

    def _on_line(self, session: _session.PortSession, line: str) -> None:
        if session is self._session:
            self._publish(_events.DataEvent(line))

    def _on_read_failure(
        self,
        session: _session.PortSession,
        ex: _exceptions.SerialIoException,
    ) -> None:
        if session is not self._session:
            return
        log.warning("%s, closing", ex)
        self._publish(_events.ErrorEvent(str(ex), ex.kind))
        self.close()

    def _on_write_failure(
        self,
        session: _session.PortSession,
        ex: _exceptions.SerialIoException,
    ) -> None:
        if session is self._session:
            self._publish(_events.ErrorEvent(str(ex), ex.kind))

    def _publish(self, event: _events.SessionEvent) -> None:
        count = self._fanout.publish(event)
        log.debug("Published %r to %d subscribers", event, count)
