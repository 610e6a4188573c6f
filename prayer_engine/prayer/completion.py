import threading
from datetime import date
from typing import Dict, Set

from .types import PRAYER_NAMES


class CompletionTracker:
    """Which prayers were marked complete, per calendar day. Older days are dropped."""

    def __init__(self):
        self._completed: Dict[date, Set[str]] = {}
        self._lock = threading.Lock()

    def mark(self, day: date, prayer: str, completed: bool = True) -> None:
        if prayer not in PRAYER_NAMES:
            raise ValueError(f"Unknown prayer: {prayer}")
        with self._lock:
            for old in [d for d in self._completed if d < day]:
                del self._completed[old]
            done = self._completed.setdefault(day, set())
            if completed:
                done.add(prayer)
            else:
                done.discard(prayer)

    def completed(self, day: date) -> Dict[str, bool]:
        with self._lock:
            done = self._completed.get(day, set())
            return {name: name in done for name in PRAYER_NAMES}
