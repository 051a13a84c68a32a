import unittest

from driveindex.core.event_bus import EventBus, Events


class TestEventBus(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus()
        self.received = []

    def test_failing_handler_does_not_stop_others(self):
        def broken(_):
            raise RuntimeError("handler bug")

        self.bus.subscribe(Events.SYNC_STARTED, broken)
        self.bus.subscribe(Events.SYNC_STARTED, self.received.append)
        self.bus.emit(Events.SYNC_STARTED, {"n": 1})
        self.assertEqual(self.received, [{"n": 1}])

    def test_subscribe_is_deduplicated_and_unsubscribe_stops_delivery(self):
        self.bus.subscribe("evt", self.received.append)
        self.bus.subscribe("evt", self.received.append)
        self.bus.emit("evt", 1)
        self.assertEqual(self.received, [1])

        self.bus.unsubscribe("evt", self.received.append)
        self.bus.unsubscribe("evt", self.received.append)
        self.bus.emit("evt", 2)
        self.assertEqual(self.received, [1])

    def test_events_are_routed_by_type(self):
        self.bus.subscribe(Events.CIRCUIT_OPENED, self.received.append)
        self.bus.emit(Events.CIRCUIT_CLOSED, "closed")
        self.bus.emit(Events.CIRCUIT_OPENED, "opened")
        self.assertEqual(self.received, ["opened"])

    def test_clear_drops_all_subscribers(self):
        self.bus.subscribe("evt", self.received.append)
        self.bus.clear()
        self.bus.emit("evt", 1)
        self.assertEqual(self.received, [])


if __name__ == "__main__":
    unittest.main()
