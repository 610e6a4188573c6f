"""
Schedules for background work, persisted in TaskSchedule so they survive restarts.

DAILY runs at a wall-clock time in a named timezone ({"time": "00:05",
"timezone": "Asia/Riyadh"}); the UTC instant is worked out for each day, so the
run stays at 00:05 local across DST changes. INTERVAL_SECONDS runs a fixed
number of seconds after the previous run ({"interval_seconds": 900}).

Stored datetimes are naive UTC.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from queue import Queue
from typing import Any, Dict, Optional, Tuple, Type

import pytz
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from prayer_engine.core.db import session_scope
from prayer_engine.core.models import TaskSchedule

logger = logging.getLogger(__name__)


class TaskType:
    DAILY = "daily"
    INTERVAL_SECONDS = "interval_seconds"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_local_time(value: Any) -> Tuple[int, int]:
    """'HH:MM' -> (hour, minute). Raises ValueError for anything that is not a time of day."""
    hour_text, _, minute_text = str(value).strip().partition(":")
    hour, minute = int(hour_text), int(minute_text or 0)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Not a time of day: {value!r}")
    return hour, minute


def _local_to_utc(day: date, at: time, tz) -> datetime:
    # is_dst=False puts a time inside a spring-forward gap on the standard offset
    return tz.localize(datetime.combine(day, at), is_dst=False).astimezone(pytz.utc).replace(tzinfo=None)


def next_daily_run(local_time: str, tz_name: str, after: datetime) -> datetime:
    """First occurrence of local_time in tz_name strictly after `after` (naive UTC)."""
    tz = pytz.timezone(tz_name)
    at = time(*parse_local_time(local_time))
    local_day = pytz.utc.localize(after).astimezone(tz).date()
    candidate = _local_to_utc(local_day, at, tz)
    if candidate <= after:
        candidate = _local_to_utc(local_day + timedelta(days=1), at, tz)
    return candidate


def compute_next_run(schedule_type: str, schedule_config: Optional[Dict[str, Any]], last_run: Optional[datetime]) -> datetime:
    """Next run (naive UTC) after last_run, or after now when the task never ran."""
    config = schedule_config or {}
    after = last_run or utc_now()
    if schedule_type == TaskType.DAILY:
        return next_daily_run(config.get("time", "00:00"), config.get("timezone") or "UTC", after)
    if schedule_type == TaskType.INTERVAL_SECONDS:
        return after + timedelta(seconds=int(config.get("interval_seconds", 900)))
    raise ValueError(f"Unknown schedule type: {schedule_type}")


def _get_row(session, task_name: str) -> Optional[TaskSchedule]:
    return session.execute(select(TaskSchedule).where(TaskSchedule.task_name == task_name)).scalars().first()


def get_next_run_from_db(task_name: str) -> Optional[datetime]:
    """next_run_at for a task; None (run now) when there is no row, it was never run, or the DB is unreadable."""
    try:
        with session_scope() as session:
            row = _get_row(session, task_name)
            return row.next_run_at if row else None
    except SQLAlchemyError as e:
        logger.error(f"Could not read schedule for {task_name}: {e}")
        return None


def save_schedule(task_name: str, schedule_type: str, schedule_config: Dict[str, Any]) -> None:
    """
    Create the schedule row (next_run_at null, so the first run is immediate)
    or update it. A changed schedule moves next_run_at to match, counted from
    the last run.
    """
    with session_scope() as session:
        row = _get_row(session, task_name)
        if row is None:
            session.add(TaskSchedule(task_name=task_name, schedule_type=schedule_type, schedule_config=schedule_config))
            logger.info(f"Created schedule for {task_name}: {schedule_type} {schedule_config}")
            return
        if row.schedule_type == schedule_type and row.schedule_config == schedule_config:
            return
        row.schedule_type = schedule_type
        row.schedule_config = schedule_config
        if row.next_run_at is not None:
            row.next_run_at = compute_next_run(schedule_type, schedule_config, row.last_run_at)
        logger.info(f"Schedule for {task_name} changed to {schedule_type} {schedule_config}, next run {row.next_run_at}")


def update_after_run(task_name: str, error: Optional[str] = None) -> None:
    """Record a run (and its error, if any) and move next_run_at forward."""
    with session_scope() as session:
        row = _get_row(session, task_name)
        if row is None:
            return
        now = utc_now()
        row.last_run_at = now
        row.last_error = error
        row.next_run_at = compute_next_run(row.schedule_type, row.schedule_config, now)


class BaseTask(ABC):
    """
    A scheduled unit of work. Subclasses implement execute(); run() is what the
    TaskManager calls and takes care of bookkeeping and the result queue.
    Exceptions listed in recoverable_errors are recorded on the schedule row
    and reported as a None result.
    """

    recoverable_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self, task_name: str, schedule_type: str, schedule_config: Dict[str, Any]):
        self.task_name = task_name
        self.schedule_type = schedule_type
        self.schedule_config = schedule_config
        self.logger = logging.getLogger(self.__class__.__name__)

    def ensure_scheduled(self) -> None:
        save_schedule(self.task_name, self.schedule_type, self.schedule_config)

    @abstractmethod
    def execute(self) -> Any:
        pass

    def run(self, config: Dict[str, Any], result_queue: Queue, **kwargs: Any) -> None:
        try:
            result = self.execute()
        except self.recoverable_errors as e:
            self.logger.exception(f"{self.task_name} failed: {e}")
            update_after_run(self.task_name, error=str(e))
            result_queue.put((self.task_name, None))
            return
        update_after_run(self.task_name)
        result_queue.put((self.task_name, result))
