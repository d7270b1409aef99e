"""In-process replay cache for webhook deliveries.

Best effort only: it is lost on restart and bounded in size. The database
unique constraints are what actually prevent duplicate events.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from threading import Lock

from switchyard.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class ReplayCache:
    def __init__(self, window_seconds: int = 300, max_entries: int = 50000, clock: Clock = utcnow):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window = timedelta(seconds=window_seconds)
        self.max_entries = max(1, int(max_entries))
        self.clock = clock
        self._seen: OrderedDict[str, datetime] = OrderedDict()
        self._lock = Lock()

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._seen:
            key, first_seen = next(iter(self._seen.items()))
            if first_seen > cutoff and len(self._seen) <= self.max_entries:
                break
            self._seen.popitem(last=False)

    def seen(self, channel: str, event_id: str) -> bool:
        """Record ``(channel, event_id)``; True when it was already seen within the window."""
        key = f"{channel}:{event_id}"
        now = self.clock()
        with self._lock:
            self._evict(now)
            first_seen = self._seen.get(key)
            if first_seen is not None and now - first_seen < self.window:
                logger.warning("Replay detected for %s", key)
                return True
            self._seen[key] = now
            self._seen.move_to_end(key)
            if len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return False

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
