"""Unit tests for serial_bridge._manager, against a pseudo-terminal."""

import asyncio
import threading
import time

import pytest

import serial_bridge
from serial_bridge import DeviceDescriptor


async def open_and_wait(manager, recorder, path, baud=115200):
    assert manager.open(path, baud).ok
    await recorder.next_kind("open")
    recorder.drain()


async def read_control(pty_serial, size: int) -> bytes:
    data = b""
    while len(data) < size:
        data += await asyncio.to_thread(pty_serial.control.read, 256)
    return data


#
# Lifecycle
#


async def test_initial_status(manager):
    status = manager.status()
    assert status == serial_bridge.SessionStatus(
        open=False, path=None, baud=115200, state="idle"
    )


async def test_open_reports_then_status(manager, recorder, pty_serial):
    result = manager.open(pty_serial.path, 57600)
    assert result == serial_bridge.CommandResult(ok=True)
    assert manager.status().state == "opening"
    assert manager.status().path is None

    assert (await recorder.next()).kind == "close"  # implicit close first
    assert (await recorder.next()).kind == "open"
    status = manager.status()
    assert status.open and status.path == pty_serial.path
    assert status.baud == 57600 and status.state == "open"


async def test_reopen_event_sequence(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    manager.open(pty_serial.path)
    kinds = [(await recorder.next()).kind, (await recorder.next()).kind]
    assert kinds == ["close", "open"]
    await asyncio.sleep(0.05)
    assert recorder.drain() == []
    assert manager.status().open


async def test_back_to_back_opens_yield_one_session(manager, recorder, pty_serial):
    manager.open(pty_serial.path)
    manager.open(pty_serial.path)
    assert await manager.settled()

    await asyncio.sleep(0.05)
    kinds = [e.kind for e in recorder.drain()]
    assert kinds == ["close", "close", "open"]


async def test_close_is_idempotent(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    assert manager.close().ok
    assert manager.close().ok
    assert [e.kind for e in recorder.drain()] == ["close", "close"]
    assert manager.status() == serial_bridge.SessionStatus(
        open=False, path=None, baud=115200, state="idle"
    )


async def test_close_releases_device_off_the_loop(
    manager, recorder, pty_serial, mocker
):
    await open_and_wait(manager, recorder, pty_serial.path)
    conn = manager._session.conn
    real_close = conn.close
    released = threading.Event()

    def slow_close():
        time.sleep(0.3)
        real_close()
        released.set()

    mocker.patch.object(conn, "close", side_effect=slow_close)
    started = time.monotonic()
    assert manager.close().ok
    assert time.monotonic() - started < 0.2
    assert manager.status().state == "idle"
    assert not released.is_set()

    await open_and_wait(manager, recorder, pty_serial.path)
    assert released.is_set()  # reopen waited for the old handle


async def test_close_while_opening_discards_handle(manager, recorder, pty_serial):
    manager.open(pty_serial.path)
    manager.close()
    assert not await manager.settled()

    await asyncio.sleep(0.05)
    assert "open" not in [e.kind for e in recorder.drain()]
    assert manager.status().state == "idle"

    await open_and_wait(manager, recorder, pty_serial.path)  # port was released


async def test_failed_open_reports_error(manager, recorder):
    assert manager.open("/dev/does-not-exist-serial-bridge").ok
    assert (await recorder.next()).kind == "close"
    error = await recorder.next()
    assert error.kind == "error"
    assert error.error_kind == "not_found"
    assert "does-not-exist" in error.message
    assert manager.status().state == "idle"
    assert not await manager.settled()


@pytest.mark.parametrize("path,baud", [("", 115200), ("/dev/ttyACM0", 0)])
async def test_rejected_open_requests(manager, recorder, path, baud):
    result = manager.open(path, baud)
    assert not result.ok and result.error
    assert manager.status().state == "idle"
    assert recorder.drain() == []


#
# Data flow
#


async def test_lines_reach_subscribers(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)

    for chunk in (b"A\r", b"\nB\nC", b""):
        pty_serial.control.write(chunk)
        await asyncio.sleep(0.02)

    assert await recorder.next() == serial_bridge.DataEvent("A")
    assert await recorder.next() == serial_bridge.DataEvent("B")
    await asyncio.sleep(0.05)
    assert recorder.drain() == []  # "C" waits for its newline

    pty_serial.control.write(b"\n")
    assert await recorder.next() == serial_bridge.DataEvent("C")


async def test_partial_line_dropped_on_close(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    pty_serial.control.write(b"half")
    await asyncio.sleep(0.05)
    manager.close()

    await open_and_wait(manager, recorder, pty_serial.path)
    pty_serial.control.write(b"whole\n")
    assert await recorder.next() == serial_bridge.DataEvent("whole")


async def test_send_before_open_fails(manager, recorder):
    result = manager.send("hello")
    assert not result.ok
    assert "not open" in result.error.lower()
    assert recorder.drain() == []


async def test_send_writes_line(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    assert manager.send("step 200").ok
    assert manager.send("led on").ok
    assert await read_control(pty_serial, 16) == b"step 200\nled on\n"


async def test_send_after_close_fails(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    manager.close()
    assert not manager.send("late").ok


async def test_write_failure_keeps_session_open(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    line = "x" * 99
    for _ in range(2000):  # far more than the pty buffers; nobody reads
        assert manager.send(line).ok

    error = await recorder.next()
    assert error.kind == "error"
    assert error.error_kind == "io_error"
    assert "write" in error.message.lower()

    await asyncio.sleep(0.05)
    assert "close" not in [e.kind for e in recorder.drain()]
    assert manager.status().state == "open"
    assert manager.send(line).ok


async def test_device_removal_tears_down(manager, recorder, pty_serial):
    await open_and_wait(manager, recorder, pty_serial.path)
    pty_serial.control.close()

    error = await recorder.next()
    assert error.kind == "error"
    assert error.error_kind in ("device_removed", "io_error")
    assert (await recorder.next()).kind == "close"
    assert manager.status().state == "idle"
    assert not manager.send("anyone?").ok


async def test_unsubscribed_callback_gets_nothing(manager, recorder, pty_serial):
    seen = []
    unsubscribe = manager.subscribe("data", seen.append)
    await open_and_wait(manager, recorder, pty_serial.path)

    pty_serial.control.write(b"one\n")
    await recorder.next_kind("data")
    unsubscribe()
    pty_serial.control.write(b"two\n")
    await recorder.next_kind("data")

    assert seen == [serial_bridge.DataEvent("one")]


#
# Startup policy
#


async def test_start_with_configured_port(pty_serial):
    config = serial_bridge.BridgeConfig(port=pty_serial.path, autodetect=False)
    async with serial_bridge.SessionManager(config) as manager:
        assert await manager.start()
        assert manager.status().path == pty_serial.path


async def test_start_falls_back_to_autodetect(pty_serial, set_scan_override):
    set_scan_override([DeviceDescriptor(path=pty_serial.path, vendor_id="2e8a")])
    config = serial_bridge.BridgeConfig(port="/dev/does-not-exist-serial-bridge")
    async with serial_bridge.SessionManager(config) as manager:
        assert await manager.start()
        assert manager.status().path == pty_serial.path


async def test_start_without_candidate_stays_idle(set_scan_override):
    set_scan_override([DeviceDescriptor(path="/dev/ttyUSB9")])
    async with serial_bridge.SessionManager(serial_bridge.BridgeConfig()) as manager:
        assert not await manager.start()
        assert manager.status().state == "idle"


async def test_start_with_autodetect_disabled(set_scan_override):
    set_scan_override([DeviceDescriptor(path="/dev/ttyACM0", vendor_id="2e8a")])
    config = serial_bridge.BridgeConfig(autodetect=False)
    async with serial_bridge.SessionManager(config) as manager:
        assert not await manager.start()
        assert manager.status().state == "idle"


async def test_shutdown_closes_and_drops_subscribers(pty_serial):
    manager = serial_bridge.SessionManager(serial_bridge.BridgeConfig())
    seen = []
    manager.subscribe("close", seen.append)
    manager.open(pty_serial.path)
    await manager.shutdown()

    assert manager.status().state == "idle"
    assert [e.kind for e in seen] == ["close", "close"]
    assert manager.fanout.subscriber_count() == 0
