import asyncio
import contextlib
import io
import ok_logging_setup
import os
import pty
import pytest
import typing

import msgspec

import serial_bridge

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "serial_bridge=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("[]")
    monkeypatch.setenv("SERIAL_BRIDGE_SCAN_OVERRIDE", str(path))

    def set_ports(ports: list[serial_bridge.DeviceDescriptor]):
        path.write_bytes(msgspec.json.encode(ports))

    return set_ports


class EventRecorder:
    """Subscribes to every event kind and queues what arrives"""

    def __init__(self, manager: serial_bridge.SessionManager):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subs = [
            manager.subscribe(kind, self.queue.put_nowait)
            for kind in serial_bridge.EVENT_KINDS
        ]

    async def next(self, timeout: float = 5.0) -> serial_bridge.SessionEvent:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    async def next_kind(
        self, kind: str, timeout: float = 5.0
    ) -> serial_bridge.SessionEvent:
        while (event := await self.next(timeout)).kind != kind:
            pass
        return event

    def drain(self) -> list[serial_bridge.SessionEvent]:
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out


@pytest.fixture
def bridge_config():
    return serial_bridge.BridgeConfig(autodetect=False, keepalive=0.05)


@pytest.fixture
async def manager(bridge_config):
    async with serial_bridge.SessionManager(bridge_config) as manager:
        yield manager


@pytest.fixture
def recorder(manager):
    return EventRecorder(manager)
