import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Protocol


class RateLimiter(Protocol):
    window_seconds: int

    def try_acquire(self, key: str) -> bool:
        ...

    def reset(self) -> None:
        ...


class InMemoryRateLimiter:
    """Sliding-window limiter kept in process memory.

    Suitable for a single instance only; counts are lost on restart and are
    not shared between workers. Keys whose hits have all left the window are
    dropped on every call, so memory tracks recent clients only.
    """

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def _evict(self, window_start: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def try_acquire(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._evict(now - self.window_seconds)
            hits = self._hits.get(key)
            if hits is None:
                hits = self._hits[key] = deque()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
