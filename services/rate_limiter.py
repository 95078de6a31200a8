import logging
import math
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """Allows at most ``max_requests`` hits per key within any ``window`` seconds.

    Each key keeps a deque of its hit timestamps. Keys with nothing left in
    the window are swept out once per window so idle clients do not pile up.
    """

    def __init__(self, max_requests: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = clock()

    def hit(self, key: str) -> Optional[int]:
        """Records a hit for ``key``.

        Returns None when the hit is allowed, otherwise the number of seconds
        until the oldest hit leaves the window.
        """
        now = self.clock()
        if now - self._last_sweep >= self.window:
            self._sweep(now)

        q = self._hits[key]
        while q and now - q[0] >= self.window:
            q.popleft()
        if len(q) >= self.max_requests:
            return max(1, math.ceil(self.window - (now - q[0])))
        q.append(now)
        return None

    def _sweep(self, now: float):
        stale = [key for key, q in self._hits.items() if not q or now - q[-1] >= self.window]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def __len__(self):
        return len(self._hits)


class RateLimitRule:
    """A limiter applied to every request whose path starts with ``prefix``."""

    def __init__(self, prefix: str, limiter: SlidingWindowLimiter, message: str):
        self.prefix = prefix
        self.limiter = limiter
        self.message = message

    def matches(self, path: str) -> bool:
        return path == self.prefix.rstrip('/') or path.startswith(self.prefix)
