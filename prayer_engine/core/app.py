import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from prayer_engine.api.server import run_api_server
from prayer_engine.prayer.engine import PrayerTimeEngine
from prayer_engine.prayer.errors import LocationUnavailable
from prayer_engine.prayer.location import LocationService, StaticLocationProvider, timezone_for
from prayer_engine.prayer.notifications import NotificationScheduler, TimerNotificationTransport
from prayer_engine.prayer.settings import PrayerSettings
from prayer_engine.prayer.task import LocationCheckTask, PrayerTimesTask
from prayer_engine.prayer.types import Coordinates, OffsetSet

from .config import Config
from .db import close_db, init_db
from .task_manager import TaskManager

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'


class PrayerEngineApp:
    def __init__(self, config_path: Optional[str] = None, watch_config: bool = True):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = Config(config_path=config_path, watch=watch_config)
        self._setup_logging()
        self._stop_event = threading.Event()

        # Initialize database (before tasks so TaskSchedule exists)
        init_db(self.config.data)

        self.task_manager = TaskManager()
        settings = PrayerSettings.from_config(self.config.data)
        location_service = LocationService(
            StaticLocationProvider(self.config.get_section("location")),
            timeout=settings.location_timeout,
        )
        scheduler = NotificationScheduler(TimerNotificationTransport(self.task_manager), language=settings.language)
        self.engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        self.tasks = []

        self.config.register_change_callback(self.handle_config_change)

    def _setup_logging(self) -> None:
        """Configure logging to write to both file and stdout"""
        log_config = self.config.get_section("logging")
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
        root_logger.setLevel(getattr(logging, str(log_config.get("level", "INFO")).upper(), logging.INFO))

        formatter = logging.Formatter(LOG_FORMAT)

        log_file = log_config.get("file")
        if log_file:
            Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(Path(log_file).expanduser())
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        logging.info("Prayer engine starting...")

    def initialize_tasks(self) -> None:
        """Register the daily refresh and location check with the task manager."""
        location_config = self.config.get_section("location")
        prayer_config = self.config.get_section("prayer")
        tz = timezone_for(self._schedule_location(), self.engine.settings.timezone)

        self.tasks = [
            PrayerTimesTask(self.engine, prayer_config.get("refresh_time", "00:05"), str(tz)),
            LocationCheckTask(self.engine, location_config.get("poll_interval_seconds", 900)),
        ]
        for task in self.tasks:
            task.ensure_scheduled()
            self.task_manager.register_task(task.task_name, task.run)
            self.task_manager.schedule_registered_task(task.task_name, prayer_config, self.config.data)

    def _schedule_location(self) -> Coordinates:
        """Where "local midnight" is: the configured location, else the last known one, else the default."""
        location_service = self.engine.location_service
        try:
            return location_service.provider.get_location()
        except LocationUnavailable as e:
            fallback = location_service.last_known or location_service.default
            self.logger.warning(f"No location for the refresh schedule ({e}); using {fallback}")
            return fallback

    def start(self) -> None:
        view = self.engine.warm_start()
        if view is not None:
            self.logger.info(f"Showing stored prayer times for {view.date} until recomputed")
        self.initialize_tasks()
        run_api_server(self)

    def run(self) -> None:
        """Start everything and block until interrupted."""
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                self._drain_results()
        except KeyboardInterrupt:
            self.logger.info("Interrupted")
        finally:
            self.stop()

    def _drain_results(self) -> None:
        queue = self.task_manager.result_queue
        while not queue.empty():
            task_name, result = queue.get_nowait()
            self.logger.debug(f"Task result for {task_name}: {result}")

    def handle_config_change(self, new_config: Dict[str, Any]) -> None:
        """Handle configuration changes"""
        self.logger.info("Handling config change")
        try:
            self.engine.location_service.provider = StaticLocationProvider(new_config.get("location") or {})
            self.engine.apply_config(new_config)
            self.engine.get_prayer_times()
            if self.tasks:
                # Location, timezone or refresh time may have moved local midnight
                self.initialize_tasks()
        except Exception as e:
            self.logger.error(f"Error handling config change: {e}", exc_info=True)

    def save_offsets(self, offsets: OffsetSet) -> None:
        """Write offsets changed through the API back to the config file."""
        self.config.data.setdefault("prayer", {})["offsets"] = offsets.to_dict()
        self.config.save()

    def stop(self) -> None:
        self._stop_event.set()
        self.task_manager.stop()
        self.engine.shutdown()
        self.config.cleanup()
        close_db()
        logging.info("Prayer engine stopped")
