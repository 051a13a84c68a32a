"""
Request Pacing
Minimum interval between requests of one scrape stream
"""
import random
import threading
import time
from typing import Callable, Optional


class RequestPacer:
    """
    Enforces base_delay + uniform(0, jitter) between consecutive calls.

    The first call waits the full interval too, so a fresh stream never
    bursts. Each pacer is one stream; independent pacers never block each other.
    """

    def __init__(
        self,
        base_delay: float = 10.0,
        jitter: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay = max(0.0, float(base_delay))
        self.jitter = max(0.0, float(jitter))
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RequestPacer":
        return cls(
            base_delay=settings.get("request_base_delay_seconds", 10.0),
            jitter=settings.get("request_jitter_seconds", 5.0),
            **kwargs,
        )

    def next_interval(self) -> float:
        return self.base_delay + (self._rng.uniform(0.0, self.jitter) if self.jitter else 0.0)

    def wait(self) -> float:
        """Sleep until the interval since the previous call has passed; returns the time slept"""
        with self._lock:
            interval = self.next_interval()
            if self._last_call is None:
                delay = interval
            else:
                delay = max(0.0, interval - (self._clock() - self._last_call))
            if delay > 0:
                self._sleep(delay)
            self._last_call = self._clock()
            return delay

    def fork(self) -> "RequestPacer":
        """Independent pacer with the same policy"""
        return RequestPacer(
            base_delay=self.base_delay,
            jitter=self.jitter,
            sleep=self._sleep,
            clock=self._clock,
            rng=random.Random(self._rng.random()),
        )
