import collections
import contextlib
import fcntl
import logging
import os
import termios
import threading
import typeguard
from pathlib import Path

from serial_bridge import _exceptions

log = logging.getLogger("serial_bridge.locking")

LOCK_DIR = Path("/var/lock")

# Lock files this process holds, by number of holders
_held_lock = threading.Lock()
_held: collections.Counter = collections.Counter()


def lock_path_for(port: str) -> Path:
    """UUCP-style lock file path (/var/lock/LCK..ttyACM0) for a device"""

    parts = Path(port).parts[-2:]
    if len(parts) == 2 and parts[1].isdigit() and parts[0].startswith("pt"):
        return LOCK_DIR / f"LCK..{parts[0]}.{parts[1]}"
    return LOCK_DIR / f"LCK..{parts[-1]}"


@contextlib.contextmanager
@typeguard.typechecked
def using_lock_file(port: str):
    """Holds the UUCP lock file for 'port', or raises SerialOpenBusy"""

    lock_path = lock_path_for(port)
    for _try in range(5):
        if _claim(port, lock_path):
            break
    else:
        message = "Serial port busy (lock file retries exceeded)"
        raise _exceptions.SerialOpenBusy(message, port)

    try:
        yield lock_path
    finally:
        _release(lock_path)


@contextlib.contextmanager
@typeguard.typechecked
def using_fd_lock(port: str, fd: int):
    """Holds flock(LOCK_EX) and TIOCEXCL on an open device descriptor"""

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        log.debug("Acquired flock(LOCK_EX) on %s", port)
    except BlockingIOError as exc:
        message = "Serial port busy (flock claimed)"
        raise _exceptions.SerialOpenBusy(message, port) from exc
    except OSError:
        log.warning("Can't flock %s", port, exc_info=True)

    try:
        fcntl.ioctl(fd, termios.TIOCEXCL)
        log.debug("Acquired TIOCEXCL on %s", port)
    except OSError:
        log.warning("Can't set TIOCEXCL on %s", port, exc_info=True)

    try:
        yield
    finally:
        try:
            fcntl.ioctl(fd, termios.TIOCNXCL)
        except OSError:
            log.warning("Can't clear TIOCEXCL on %s", port, exc_info=True)
        try:
            fcntl.flock(fd, fcntl.LOCK_UN | fcntl.LOCK_NB)
            log.debug("Released locks on %s", port)
        except OSError:
            log.warning("Can't release flock on %s", port, exc_info=True)


def _claim(port: str, lock_path: Path) -> bool:
    if not lock_path.parent.is_dir():
        log.debug("No lock directory %s", lock_path.parent)
        return True

    with _held_lock:
        return _claim_held(port, lock_path)


def _claim_held(port: str, lock_path: Path) -> bool:
    owner = _owner(lock_path)
    if owner == os.getpid():
        _held[lock_path] += 1
        log.debug("We already own %s (%d holders)", lock_path, _held[lock_path])
        return True
    elif owner:
        message = f"Serial port busy ({lock_path}: pid={owner})"
        raise _exceptions.SerialOpenBusy(message, port)

    try:
        with lock_path.open("xt") as lock_file:
            lock_file.write(f"{os.getpid():>10d}\n")
    except FileExistsError:
        log.warning("Conflict creating %s", lock_path)
        return False
    except OSError:
        log.warning("Can't create %s", lock_path, exc_info=True)
        return True

    _held[lock_path] += 1
    log.debug("Claimed %s", lock_path)
    return True


def _release(lock_path: Path) -> None:
    with _held_lock:
        if _held[lock_path] > 1:
            _held[lock_path] -= 1
            log.debug("Still held %s (%d holders)", lock_path, _held[lock_path])
            return

        _held.pop(lock_path, None)
        if _owner(lock_path) != os.getpid():
            return

        try:
            lock_path.unlink()
            log.debug("Released %s", lock_path)
        except OSError:
            log.warning("Can't release %s", lock_path, exc_info=True)


def _owner(lock_path: Path) -> int | None:
    """PID holding 'lock_path'; stale or garbled lock files are removed"""

    try:
        owner_pid = int(lock_path.read_text().strip())
        os.kill(owner_pid, 0)
        return owner_pid
    except FileNotFoundError:
        return None
    except (ProcessLookupError, ValueError):
        try:
            lock_path.unlink()
            log.debug("Removed stale %s", lock_path)
        except OSError:
            log.warning("Can't remove %s", lock_path, exc_info=True)
        return None
    except OSError:
        log.warning("Can't check %s", lock_path, exc_info=True)
        return None
