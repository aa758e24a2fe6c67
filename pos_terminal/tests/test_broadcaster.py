import threading

from pos_terminal.app.broadcaster import CustomerDisplayBroadcaster, RecentEventsSink, display_event


class _BrokenSink:
    def emit(self, event):
        raise RuntimeError("display unplugged")


class _SlowSink:
    def __init__(self):
        self.release = threading.Event()
        self.events = []

    def emit(self, event):
        self.release.wait(5.0)
        self.events.append(event)


def test_failing_sink_does_not_stop_other_sinks():
    recent = RecentEventsSink()
    b = CustomerDisplayBroadcaster([_BrokenSink(), recent])
    try:
        b.emit(display_event("payment_start", method="cash", amount=100))
        b.emit(display_event("payment_success", method="cash", total=100))
        assert b.flush(timeout=5.0)
        assert [ev.type for _, ev in recent.since(0)] == ["payment_start", "payment_success"]
    finally:
        b.close()


def test_emit_does_not_wait_for_slow_sinks():
    slow = _SlowSink()
    b = CustomerDisplayBroadcaster([slow])
    try:
        b.emit(display_event("cart_update", items=[]))
        b.emit(display_event("cart_update", items=[]))
        assert slow.events == []
        slow.release.set()
        assert b.flush(timeout=5.0)
        assert len(slow.events) == 2
    finally:
        b.close()


def test_full_queue_drops_events():
    slow = _SlowSink()
    b = CustomerDisplayBroadcaster([slow], max_queue=1)
    try:
        for _ in range(5):
            b.emit(display_event("cart_update", items=[]))
        slow.release.set()
        assert b.flush(timeout=5.0)
        assert 1 <= len(slow.events) < 5
    finally:
        b.close()


def test_recent_events_sink_sequence_and_wait():
    sink = RecentEventsSink(maxlen=2)
    for i in range(3):
        sink.emit(display_event("cart_update", n=i))
    assert sink.last_seq == 3
    assert [seq for seq, _ in sink.since(0)] == [2, 3]
    assert sink.wait(3, timeout=0.05) == []

    threading.Timer(0.05, lambda: sink.emit(display_event("payment_start"))).start()
    got = sink.wait(3, timeout=5.0)
    assert [ev.type for _, ev in got] == ["payment_start"]
