"""
Background tasks: daily recompute just after local midnight and a periodic
location check.
"""
import logging

from prayer_engine.core.task import BaseTask, TaskType, parse_local_time
from prayer_engine.prayer.errors import PrayerEngineError

REFRESH_TASK_NAME = "prayer_times_refresh"
LOCATION_TASK_NAME = "prayer_location_check"

DEFAULT_REFRESH_TIME = "00:05"

logger = logging.getLogger(__name__)


class PrayerTimesTask(BaseTask):
    """Recompute today's prayer times (new date, fresh location) and reconcile alerts."""

    recoverable_errors = (PrayerEngineError,)

    def __init__(self, engine, refresh_time: str = DEFAULT_REFRESH_TIME, tz_name: str = "UTC"):
        try:
            parse_local_time(refresh_time)
        except ValueError:
            logger.error(f"Invalid refresh_time {refresh_time!r}, using {DEFAULT_REFRESH_TIME}")
            refresh_time = DEFAULT_REFRESH_TIME
        super().__init__(REFRESH_TASK_NAME, TaskType.DAILY, {"time": refresh_time, "timezone": tz_name})
        self.engine = engine

    def execute(self):
        view = self.engine.refresh()
        self.logger.info(f"Prayer times refreshed for {view.date} ({view.convention})")
        return view


class LocationCheckTask(BaseTask):
    """Poll the location; a significant move recomputes and reschedules alerts."""

    recoverable_errors = (PrayerEngineError,)

    def __init__(self, engine, interval_seconds: int = 900):
        super().__init__(LOCATION_TASK_NAME, TaskType.INTERVAL_SECONDS, {"interval_seconds": int(interval_seconds)})
        self.engine = engine

    def execute(self) -> bool:
        moved = self.engine.check_location()
        if moved:
            self.logger.info("Location changed; prayer times recomputed")
        return moved
