"""
Customer-display fan-out.

Core components receive a sink with a single `emit(event)` method. Delivery is
best-effort: a failing or slow display never blocks or fails a sale.
"""

import queue
import threading
from collections import deque
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from .logs import json_log
from .models import DisplayEvent


class DisplaySink(Protocol):
    def emit(self, event: DisplayEvent) -> None: ...


def display_event(event_type: str, **data) -> DisplayEvent:
    return DisplayEvent(type=event_type, data=data, emitted_at=datetime.now(timezone.utc))


class NullSink:
    def emit(self, event: DisplayEvent) -> None:
        return None


class RecentEventsSink:
    """Keeps the last N events with a sequence number so a second screen can poll for them."""

    def __init__(self, maxlen: int = 200):
        self._events: deque = deque(maxlen=maxlen)
        self._seq = 0
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def emit(self, event: DisplayEvent) -> None:
        with self._changed:
            self._seq += 1
            self._events.append((self._seq, event))
            self._changed.notify_all()

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def since(self, after: int = 0) -> List[Tuple[int, DisplayEvent]]:
        with self._lock:
            return [(seq, ev) for seq, ev in self._events if seq > after]

    def wait(self, after: int, timeout: float) -> List[Tuple[int, DisplayEvent]]:
        with self._changed:
            self._changed.wait_for(lambda: self._seq > after, timeout=timeout)
            return [(seq, ev) for seq, ev in self._events if seq > after]


class CustomerDisplayBroadcaster:
    """Queues events and delivers them to every sink on a background thread."""

    def __init__(self, sinks: Optional[List[DisplaySink]] = None, max_queue: int = 1000):
        self.sinks: List[DisplaySink] = list(sinks or [])
        self._queue: "queue.Queue[Optional[DisplayEvent]]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Lock()

    def add_sink(self, sink: DisplaySink) -> None:
        self.sinks.append(sink)

    def start(self) -> None:
        with self._started:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name="display-broadcaster", daemon=True)
            self._thread.start()

    def emit(self, event: DisplayEvent) -> None:
        self.start()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            json_log("warning", "display.dropped", type=event.type, reason="queue_full")

    def flush(self, timeout: float = 2.0) -> bool:
        """Block until queued events are delivered (or `timeout`)."""
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: DisplayEvent) -> None:
        for sink in list(self.sinks):
            try:
                sink.emit(event)
            except Exception as ex:
                # A broken display must not stop delivery to the others.
                json_log("warning", "display.sink_error", type=event.type, sink=type(sink).__name__, error=str(ex))
