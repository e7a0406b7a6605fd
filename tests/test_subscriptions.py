"""
Tests for the PushBus pub/sub channel.
"""

import logging
import threading

from store.subscriptions import PushBus, PushEvent


class TestPushBus:
    def test_topic_listeners(self):
        bus = PushBus()
        seen = []
        bus.on("inventory", seen.append)
        assert bus.publish("inventory", {"stock": 3}, source="warehouse") == 1
        assert bus.publish("prices", {"price": 1}) == 0

        [event] = seen
        assert event.topic == "inventory"
        assert event.changes == {"stock": 3}
        assert event.source == "warehouse"
        assert event.at.tzinfo is not None

    def test_catch_all_runs_first(self):
        bus = PushBus()
        order = []
        bus.on("t", lambda e: order.append("topic"))
        bus.on_all(lambda e: order.append("all"))
        bus.emit(PushEvent("t", {}))
        assert order == ["all", "topic"]

    def test_off(self):
        bus = PushBus()
        seen = []
        bus.on("t", seen.append)
        bus.on_all(seen.append)
        bus.off("t", seen.append)
        bus.off_all(seen.append)
        bus.off("never", seen.append)
        assert bus.publish("t", {"x": 1}) == 0
        assert seen == []

    def test_changes_are_copied(self):
        bus = PushBus()
        seen = []
        bus.on("t", seen.append)
        changes = {"x": 1}
        bus.publish("t", changes)
        changes["x"] = 2
        assert seen[0].changes == {"x": 1}

    def test_failing_listener_is_logged_and_skipped(self, caplog):
        bus = PushBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.on("t", broken)
        bus.on("t", seen.append)
        with caplog.at_level(logging.ERROR, logger="store.subscriptions"):
            assert bus.publish("t", {"x": 1}) == 1
        assert len(seen) == 1
        assert "listener bug" in caplog.text

    def test_concurrent_publishers(self):
        bus = PushBus()
        seen = []
        lock = threading.Lock()

        def record(event):
            with lock:
                seen.append(event.changes["n"])

        bus.on("t", record)
        threads = [threading.Thread(target=bus.publish, args=("t", {"n": i}))
                   for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(seen) == list(range(20))
