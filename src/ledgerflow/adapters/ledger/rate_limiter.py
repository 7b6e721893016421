import random
import threading
import time


class SimpleRateLimiter:
    def __init__(self, requests_per_sec: float) -> None:
        if requests_per_sec <= 0:
            raise ValueError("requests_per_sec must be > 0")
        self._min_interval = 1.0 / requests_per_sec
        self._last_ts = 0.0
        # requests run on worker threads
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            now = time.time()
            elapsed = now - self._last_ts
            sleep_for = self._min_interval - elapsed
            if sleep_for > 0:
                time.sleep(sleep_for)
            self._last_ts = time.time()


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 10.0, jitter: bool = False) -> float:
    t = min(cap, base * (2 ** attempt))
    if jitter:
        t *= 0.7 + random.random() * 0.6
    return t
