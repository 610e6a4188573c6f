"""
In-memory cache of raw (offset-free) prayer time sets keyed by
(date, location cell, convention).

- at most one build in flight per key; concurrent callers wait for it
- a result whose computation started earlier never replaces a newer entry
- an entry whose date is not "today" reads as absent
"""
import logging
import threading
import time
from concurrent.futures import Future
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .types import CacheEntry, CacheKey, Coordinates, PrayerTimeSet, location_cell

logger = logging.getLogger(__name__)


def make_key(day: date, coords: Coordinates, convention: str, cell_size: float = 0.05) -> CacheKey:
    return CacheKey(day, location_cell(coords, cell_size), convention)


class PrayerTimeCache:
    def __init__(
        self,
        today: Optional[Callable[[], date]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            today: returns the current local calendar date (for rollover)
            clock: monotonic clock used to stamp computation start
        """
        self._today = today or date.today
        self._clock = clock or time.monotonic
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._in_flight: Dict[CacheKey, Tuple[float, Future]] = {}
        self._lock = threading.RLock()

    def set_today(self, today: Callable[[], date]) -> None:
        self._today = today

    def get(self, key: CacheKey) -> Optional[PrayerTimeSet]:
        entry = self.entry(key)
        return entry.value if entry is not None else None

    def entry(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or key.date != self._today():
            return None
        return entry

    def put(self, key: CacheKey, value: PrayerTimeSet, started_at: Optional[float] = None) -> bool:
        """Store value; returns False when a newer computation already committed."""
        if started_at is None:
            started_at = self._clock()
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current.started_at > started_at:
                logger.info(f"Discarding late result for {key}: a newer computation already committed")
                return False
            self._entries[key] = CacheEntry(key, value, datetime.now(timezone.utc), started_at)
        logger.debug(f"Cached prayer times for {key}")
        return True

    def invalidate(self, predicate: Callable[[CacheKey], bool]) -> int:
        """Drop every entry whose key matches predicate; returns the number dropped."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cached prayer time set(s)")
        return len(doomed)

    def purge_expired(self) -> int:
        today = self._today()
        return self.invalidate(lambda k: k.date != today)

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_build(self, key: CacheKey, build: Callable[[], PrayerTimeSet], force: bool = False) -> PrayerTimeSet:
        """
        Cached value for key, or the result of build(). Callers arriving while a
        build for key is running wait for it instead of starting another.
        force starts a fresh build even if one is cached or in flight.
        """
        with self._lock:
            running = None
            if not force:
                cached = self.get(key)
                if cached is not None:
                    return cached
                running = self._in_flight.get(key)
            if running is None:
                token = (self._clock(), Future())
                self._in_flight[key] = token

        if running is not None:
            logger.debug(f"Waiting on in-flight computation for {key}")
            return running[1].result()

        started_at, future = token

        try:
            value = build()
        except Exception as e:
            self._finish(key, token)
            future.set_exception(e)
            raise

        self.put(key, value, started_at)
        self._finish(key, token)
        # A newer build may have committed meanwhile; hand out what the cache holds
        result = self.get(key) or value
        future.set_result(result)
        return result

    def _finish(self, key: CacheKey, token: Tuple[float, Future]) -> None:
        with self._lock:
            if self._in_flight.get(key) is token:
                del self._in_flight[key]
