"""
Single place for scheduling: in-memory timers and DB-backed registered tasks.
"""
import logging
import threading
from datetime import datetime, timezone
from queue import Queue
from threading import Timer
from typing import Any, Callable, Dict, List, Optional

from prayer_engine.core.task import get_next_run_from_db


class TaskManager:
    def __init__(self):
        self.tasks: Dict[str, Timer] = {}
        self.result_queue = Queue()
        self.logger = logging.getLogger("TaskManager")
        self._lock = threading.RLock()
        self._registered_tasks: Dict[str, Callable[..., None]] = {}
        self._registered_config: Dict[str, tuple] = {}  # task_name -> (config, config_data)
        self._stopped = False

    def schedule_task(self, name: str, callback: Callable, delay: float, one_time: bool = True) -> bool:
        """Schedule a task to run after delay seconds. Replaces any pending task with the same name."""
        try:
            with self._lock:
                if self._stopped:
                    self.logger.warning(f"Not scheduling {name}: task manager stopped")
                    return False
                self.logger.info(f"Scheduling task {name} with delay {delay:.0f} seconds")
                if name in self.tasks:
                    self.logger.info(f"Cancelling existing task {name}")
                    self.tasks[name].cancel()

                scheduled_time = datetime.now().timestamp() + delay
                timer = Timer(delay, self._run_task, args=(name, callback, delay, one_time))
                timer.daemon = True
                timer.scheduled_time = scheduled_time

                self.tasks[name] = timer
                timer.start()
            self.logger.debug(f"Timer started for {name}, scheduled for {datetime.fromtimestamp(scheduled_time)}")
            return True
        except Exception as e:
            self.logger.error(f"Error scheduling task {name}: {e}")
            return False

    def cancel_task(self, name: str) -> bool:
        """Cancel a pending task. Returns False if nothing was pending under that name."""
        with self._lock:
            timer = self.tasks.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        self.logger.info(f"Cancelled task {name}")
        return True

    def _run_task(self, name: str, callback: Callable, delay: float, one_time: bool) -> None:
        """Run the task and reschedule if needed."""
        with self._lock:
            timer = self.tasks.get(name)
            if one_time and timer is not None and timer is threading.current_thread():
                del self.tasks[name]
        try:
            callback()
            if not one_time:
                self.schedule_task(name, callback, delay, one_time)
        except Exception as e:
            self.logger.error(f"Error running task {name}: {e}")

    def register_task(self, task_name: str, runnable: Callable[..., None]) -> None:
        """Register a runnable. runnable(config, result_queue, **kwargs) does the work and updates next_run in DB."""
        self._registered_tasks[task_name] = runnable
        self.logger.debug(f"Registered task: {task_name}")

    def schedule_registered_task(
        self,
        task_name: str,
        config: Dict[str, Any],
        config_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Schedule a registered task: run at next_run from DB (or immediately if past due).
        After running, the runnable updates next_run in DB; we reschedule again for the new next_run.
        """
        if task_name not in self._registered_tasks:
            self.logger.warning(f"No task registered: {task_name}")
            return
        self._registered_config[task_name] = (config, config_data)
        next_run = get_next_run_from_db(task_name)
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        # If next_run_at is null (no row or column null), run immediately
        if next_run is None:
            delay = 0
        else:
            delay = max(0, int((next_run - now).total_seconds()))
        callback = lambda: self._run_registered_and_reschedule(task_name)
        self.schedule_task(task_name, callback, delay, one_time=True)

    def _run_registered_and_reschedule(self, task_name: str) -> None:
        """Run the registered runnable then reschedule for next_run from DB."""
        self.run_task_now(task_name)
        config, config_data = self._registered_config.get(task_name, (None, None))
        if config is not None:
            self.schedule_registered_task(task_name, config, config_data)

    def get_active_timers(self) -> List[Dict[str, Any]]:
        """Return list of active timer names and their next run time (for API)."""
        result = []
        with self._lock:
            items = list(self.tasks.items())
        for name, timer in items:
            if getattr(timer, "scheduled_time", None) is not None:
                next_run = datetime.fromtimestamp(timer.scheduled_time, tz=timezone.utc)
                result.append({"name": name, "next_run_at": next_run})
        return result

    def run_task_now(
        self,
        task_name: str,
        config: Optional[Dict[str, Any]] = None,
        config_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Run a registered task once immediately (e.g. manual refresh). Puts result on result_queue."""
        runnable = self._registered_tasks.get(task_name)
        if not runnable:
            self.logger.warning(f"No task registered: {task_name}")
            return
        if config is None:
            config, registered_data = self._registered_config.get(task_name, ({}, None))
            config_data = config_data if config_data is not None else registered_data
        try:
            if config_data is not None:
                runnable(config, self.result_queue, config_data=config_data)
            else:
                runnable(config, self.result_queue)
        except Exception as e:
            self.logger.exception(f"Run task now {task_name} failed: {e}")

    def stop(self) -> None:
        """Stop all scheduled tasks."""
        with self._lock:
            self._stopped = True
            timers = list(self.tasks.values())
            self.tasks.clear()
        for timer in timers:
            timer.cancel()
