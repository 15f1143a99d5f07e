import logging
import threading
from typing import Callable

from serial_bridge import _events

log = logging.getLogger("serial_bridge.fanout")

EventCallback = Callable[[_events.SessionEvent], object]


class Subscription:
    """Handle for one registered callback; call it to unsubscribe"""

    def __init__(
        self,
        fanout: "EventFanout",
        kind: _events.EventKind,
        callback: EventCallback,
    ):
        self.kind = kind
        self.callback = callback
        self._fanout = fanout
        self._lock = threading.RLock()
        self._active = True

    def __repr__(self) -> str:
        state = "active" if self._active else "inactive"
        return f"Subscription({self.kind!r}, {self.callback!r}, {state})"

    def __call__(self) -> None:
        self.unsubscribe()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stops delivery; waits out a delivery in progress on another thread"""

        with self._lock:
            if not self._active:
                return
            self._active = False
        self._fanout._remove(self)

    def _deliver(self, event: _events.SessionEvent) -> None:
        with self._lock:
            if not self._active:
                return
            try:
                self.callback(event)
            except Exception:
                log.exception("Subscriber %r failed on %r", self.callback, event)


class EventFanout:
    """Multicasts session events to independent per-kind subscribers.

    Each subscriber sees every event of its kind published after it
    registered, in publication order. A failing callback is logged and does
    not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[_events.EventKind, list[Subscription]] = {
            k: [] for k in _events.EVENT_KINDS
        }
        self._closed = False

    def __repr__(self) -> str:
        with self._lock:
            counts = ", ".join(f"{k}={len(s)}" for k, s in self._subs.items())
        return f"EventFanout({counts})"

    def subscribe(
        self, kind: _events.EventKind, callback: EventCallback
    ) -> Subscription:
        if kind not in self._subs:
            raise ValueError(f"Unknown event kind {kind!r}")

        sub = Subscription(self, kind, callback)
        with self._lock:
            if self._closed:
                sub._active = False
                log.debug("Subscribe to %s after teardown ignored", kind)
            else:
                self._subs[kind].append(sub)
        return sub

    def publish(self, event: _events.SessionEvent) -> int:
        """Delivers 'event' to current subscribers; returns how many"""

        with self._lock:
            targets = list(self._subs[event.kind])

        for sub in targets:
            sub._deliver(event)
        return len(targets)

    def subscriber_count(self, kind: _events.EventKind | None = None) -> int:
        with self._lock:
            if kind:
                return len(self._subs[kind])
            return sum(len(subs) for subs in self._subs.values())

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subs = [s for kind_subs in self._subs.values() for s in kind_subs]
            for kind_subs in self._subs.values():
                kind_subs.clear()

        for sub in subs:
            sub.unsubscribe()
        log.debug("Fan-out closed (%d subscribers dropped)", len(subs))

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            try:
                self._subs[sub.kind].remove(sub)
            except ValueError:
                pass
