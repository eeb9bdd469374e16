"""Tests for the NotificationBus ring buffer and its subscribers."""

import queue
import threading

from agentrelay.notifications import (
    HISTORY_ENTRY_ADDED,
    MESSAGE_APPENDED,
    STATE_CHANGED,
    NotificationBus,
)


class TestNotificationBus:
    def test_emit_and_counter(self):
        bus = NotificationBus(maxlen=100)
        assert bus.counter == 0

        note = bus.emit(MESSAGE_APPENDED, "chat-1", {"from": "user"})
        assert bus.counter == 1
        assert note.seq == 1
        assert note.scope_id == "chat-1"

        bus.emit(STATE_CHANGED, "chat-1", "idle")
        assert bus.counter == 2

    def test_get_all_by_kind(self):
        bus = NotificationBus(maxlen=100)
        bus.emit(MESSAGE_APPENDED, "c", "first")
        bus.emit(STATE_CHANGED, "c", "idle")
        bus.emit(MESSAGE_APPENDED, "c", "second")

        assert len(bus.get_all()) == 3
        assert [n.payload for n in bus.get_all(MESSAGE_APPENDED)] == ["first", "second"]

    def test_get_since(self):
        bus = NotificationBus(maxlen=100)
        for i in range(5):
            bus.emit(STATE_CHANGED, "c", i)

        since = bus.get_since(3)
        assert [n.seq for n in since] == [4, 5]
        assert bus.get_since(5) == []

    def test_maxlen_eviction(self):
        bus = NotificationBus(maxlen=3)
        for i in range(5):
            bus.emit(STATE_CHANGED, "c", i)

        assert [n.payload for n in bus.get_all()] == [2, 3, 4]
        assert bus.counter == 5

    def test_subscriber_receives(self):
        bus = NotificationBus(maxlen=100)
        q = bus.subscribe()

        bus.emit(MESSAGE_APPENDED, "c", "live")

        note = q.get(timeout=1)
        assert note.payload == "live"
        assert note.seq == 1

    def test_subscriber_kind_filter(self):
        bus = NotificationBus(maxlen=100)
        q = bus.subscribe(HISTORY_ENTRY_ADDED)

        bus.emit(MESSAGE_APPENDED, "c", "ignored")
        bus.emit(HISTORY_ENTRY_ADDED, "c", "kept")

        assert q.get_nowait().payload == "kept"
        assert q.empty()

    def test_subscriber_full_queue(self):
        bus = NotificationBus(maxlen=2000)
        q = bus.subscribe()

        for i in range(600):
            bus.emit(STATE_CHANGED, "c", i)

        count = 0
        while not q.empty():
            q.get_nowait()
            count += 1
        assert count == 500

    def test_unsubscribe(self):
        bus = NotificationBus(maxlen=100)
        q = bus.subscribe()
        bus.unsubscribe(q)

        bus.emit(STATE_CHANGED, "c")
        assert q.empty()

    def test_unsubscribe_unknown_queue(self):
        bus = NotificationBus(maxlen=100)
        bus.unsubscribe(queue.Queue())

    def test_callbacks(self):
        bus = NotificationBus(maxlen=100)
        seen = []
        off = bus.on(STATE_CHANGED, seen.append)

        bus.emit(STATE_CHANGED, "c", "busy")
        bus.emit(MESSAGE_APPENDED, "c", "skip")
        off()
        bus.emit(STATE_CHANGED, "c", "idle")
        off()

        assert [n.payload for n in seen] == ["busy"]

    def test_failing_callback_does_not_stop_others(self, caplog):
        bus = NotificationBus(maxlen=100)
        seen = []

        def broken(note):
            raise RuntimeError("boom")

        bus.on(None, broken)
        bus.on(None, seen.append)
        bus.emit(STATE_CHANGED, "c", "idle")

        assert len(seen) == 1
        assert "Notification callback failed" in caplog.text

    def test_thread_safety(self):
        bus = NotificationBus(maxlen=500)
        q = bus.subscribe()
        errors = []

        def writer():
            try:
                for i in range(200):
                    bus.emit(MESSAGE_APPENDED, f"c{i % 5}", i)
            except Exception as e:
                errors.append(e)

        def reader():
            try:
                for _ in range(200):
                    bus.get_all()
                    bus.get_since(0)
                    bus.counter
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=writer),
            threading.Thread(target=writer),
            threading.Thread(target=reader),
            threading.Thread(target=reader),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(errors) == 0
        assert bus.counter == 400
        assert len({n.seq for n in bus.get_all()}) == 400
        assert q.qsize() == 400
