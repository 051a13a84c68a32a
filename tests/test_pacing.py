import random
import unittest

from driveindex.core.pacing import RequestPacer


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestRequestPacer(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.sleeps = []

        def sleep(seconds):
            self.sleeps.append(seconds)
            self.clock.now += seconds

        self.sleep = sleep

    def test_minimum_interval_between_calls(self):
        pacer = RequestPacer(base_delay=10, jitter=0, sleep=self.sleep, clock=self.clock)
        self.assertEqual(pacer.wait(), 10.0)

        self.clock.now += 4
        self.assertEqual(pacer.wait(), 6.0)

        self.clock.now += 15
        self.assertEqual(pacer.wait(), 0.0)
        self.assertEqual(self.sleeps, [10.0, 6.0])

    def test_jitter_stays_in_range(self):
        pacer = RequestPacer(base_delay=10, jitter=5, sleep=self.sleep, clock=self.clock, rng=random.Random(7))
        for _ in range(20):
            interval = pacer.next_interval()
            self.assertGreaterEqual(interval, 10.0)
            self.assertLessEqual(interval, 15.0)

    def test_forked_streams_do_not_share_state(self):
        pacer = RequestPacer(base_delay=10, jitter=0, sleep=self.sleep, clock=self.clock)
        pacer.wait()
        forked = pacer.fork()
        self.assertEqual(forked.wait(), 10.0)
        self.assertEqual(forked.base_delay, pacer.base_delay)

    def test_from_settings(self):
        pacer = RequestPacer.from_settings({"request_base_delay_seconds": 2, "request_jitter_seconds": 0})
        self.assertEqual(pacer.next_interval(), 2.0)


if __name__ == "__main__":
    unittest.main()
