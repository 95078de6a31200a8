import logging
import time
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SegmentCache:
    """Size-bounded cache of segment bytes keyed by the concealed URL.

    Entries older than ``ttl`` are treated exactly like missing ones and are
    dropped on read. When a put would exceed ``max_size`` the oldest inserted
    entries are evicted first (insertion order, not access recency).
    """

    def __init__(self, max_size: int, ttl: float = 30, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl = ttl
        self.clock = clock
        # key -> (payload, content_type, inserted_at); dict order is insertion order
        self._entries: Dict[str, Tuple[bytes, Optional[str], float]] = {}
        self.current_size = 0

    def lookup(self, key: str) -> Optional[Tuple[bytes, Optional[str]]]:
        """Returns ``(payload, content_type)`` for a fresh entry, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, content_type, inserted_at = entry
        if self.clock() - inserted_at >= self.ttl:
            self._remove(key)
            return None
        return payload, content_type

    def get(self, key: str) -> Optional[bytes]:
        entry = self.lookup(key)
        return entry[0] if entry is not None else None

    def put(self, key: str, payload: bytes, content_type: str = None) -> bool:
        """Stores a payload; returns False when it is too large to ever fit."""
        size = len(payload)
        if key in self._entries:
            self._remove(key)
        if size > self.max_size:
            logger.debug(f"Segment of {size} bytes exceeds cache ceiling, not cached")
            return False

        while self._entries and self.current_size + size > self.max_size:
            oldest_key = next(iter(self._entries))
            self._remove(oldest_key)

        self._entries[key] = (payload, content_type, self.clock())
        self.current_size += size
        return True

    def _remove(self, key: str):
        payload, _, _ = self._entries.pop(key)
        self.current_size -= len(payload)

    def clear(self):
        self._entries.clear()
        self.current_size = 0

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    def stats(self) -> dict:
        return {
            "size": self.current_size,
            "entryCount": len(self._entries),
            "maxSize": self.max_size,
        }
