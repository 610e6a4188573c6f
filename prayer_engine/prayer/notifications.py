"""
Prayer alert scheduling. NotificationScheduler keeps the set of pending alerts
equal to the future prayers of the latest resolved PrayerTimeSet; the
transport only knows how to register and cancel one-shot alerts.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import namedtuple
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .errors import SchedulingFailure
from .types import ARABIC_NAMES, AlertRequest, PrayerTimeSet, ScheduledAlert

logger = logging.getLogger(__name__)

MESSAGES = {
    "en": {
        "title": "{name} Prayer Time",
        "body": "It's time for {name} prayer ({arabic})",
    },
    "ar": {
        "title": "حان وقت صلاة {arabic}",
        "body": "حان الآن موعد أذان {arabic}",
    },
}

ReconcileResult = namedtuple("ReconcileResult", ["scheduled", "canceled", "kept", "warnings"])


def alert_text(prayer_name: str, language: str = "en") -> Dict[str, str]:
    """Localized title/body for a prayer alert; unknown languages fall back to English."""
    messages = MESSAGES.get(language) or MESSAGES["en"]
    values = {"name": prayer_name, "arabic": ARABIC_NAMES.get(prayer_name, prayer_name)}
    return {key: template.format(**values) for key, template in messages.items()}


class NotificationTransport(ABC):
    """Platform side of notifications: registers and cancels one-shot alerts."""

    on_fired: Optional[Callable[[str], None]] = None

    def bind(self, on_fired: Callable[[str], None]) -> None:
        """Register the callback invoked with the handle of an alert that fired."""
        self.on_fired = on_fired

    @abstractmethod
    def schedule(self, request: AlertRequest) -> str:
        """Register an alert and return its handle. Raise SchedulingFailure on error."""
        pass

    @abstractmethod
    def cancel(self, handle: str) -> None:
        """Cancel a pending alert. Raise SchedulingFailure on error."""
        pass


class TimerNotificationTransport(NotificationTransport):
    """Delivers alerts in-process via TaskManager timers."""

    def __init__(self, task_manager, deliver: Optional[Callable[[AlertRequest], None]] = None):
        self.task_manager = task_manager
        self.deliver = deliver or self._log_delivery
        self.logger = logging.getLogger(self.__class__.__name__)

    def schedule(self, request: AlertRequest) -> str:
        handle = f"prayer_alert_{request.prayer_name.lower()}_{uuid.uuid4().hex[:8]}"
        delay = (request.firing_instant - datetime.now(timezone.utc)).total_seconds()
        ok = self.task_manager.schedule_task(
            handle,
            lambda: self._fire(handle, request),
            max(0.0, delay),
        )
        if not ok:
            raise SchedulingFailure(f"Could not start timer for {request.prayer_name}")
        return handle

    def cancel(self, handle: str) -> None:
        self.task_manager.cancel_task(handle)

    def _fire(self, handle: str, request: AlertRequest) -> None:
        try:
            self.deliver(request)
        finally:
            if self.on_fired:
                self.on_fired(handle)

    def _log_delivery(self, request: AlertRequest) -> None:
        self.logger.info(f"{request.title}: {request.body}")


class NotificationScheduler:
    def __init__(self, transport: NotificationTransport, language: str = "en", retries: int = 1):
        self.transport = transport
        self.language = language
        self.retries = retries
        self._alerts: Dict[str, ScheduledAlert] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)
        transport.bind(self.mark_fired)

    def reconcile(self, new_set: PrayerTimeSet, now: datetime) -> ReconcileResult:
        """
        Cancel alerts that no longer match new_set, then schedule one alert for
        each future prayer not already covered. Matching alerts are left alone,
        so repeating the call with the same inputs schedules nothing.

        An alert whose cancel fails stays tracked and blocks its replacement;
        the cancel is tried again on the next reconcile.
        """
        desired = {name: instant for name, instant in new_set.times.items() if instant > now}
        scheduled: List[ScheduledAlert] = []
        canceled: List[ScheduledAlert] = []
        kept: List[ScheduledAlert] = []
        warnings: List[str] = []

        with self._lock:
            for name, alert in list(self._alerts.items()):
                if desired.get(name) == alert.firing_instant:
                    kept.append(alert)
                    continue
                warning = self._cancel(alert)
                if warning:
                    warnings.append(warning)
                    continue
                del self._alerts[name]
                canceled.append(alert)

            for name, instant in desired.items():
                if name in self._alerts:
                    continue
                text = alert_text(name, self.language)
                request = AlertRequest(name, instant, text["title"], text["body"])
                handle, warning = self._schedule(request)
                if handle is None:
                    warnings.append(warning)
                    continue
                alert = ScheduledAlert(name, instant, handle)
                self._alerts[name] = alert
                scheduled.append(alert)

        if scheduled or canceled:
            self.logger.info(
                f"Reconciled alerts for {new_set.date}: {len(scheduled)} scheduled, "
                f"{len(canceled)} canceled, {len(kept)} kept"
            )
        return ReconcileResult(scheduled, canceled, kept, warnings)

    def mark_fired(self, handle: str) -> None:
        """Scheduled -> Fired -> removed."""
        with self._lock:
            for name, alert in list(self._alerts.items()):
                if alert.handle == handle:
                    del self._alerts[name]
                    self.logger.info(f"Alert fired for {name} at {alert.firing_instant.isoformat()}")
                    return

    def cancel_all(self) -> List[str]:
        """Cancel every pending alert; ones the transport refused stay tracked."""
        warnings = []
        with self._lock:
            for name, alert in list(self._alerts.items()):
                warning = self._cancel(alert)
                if warning:
                    warnings.append(warning)
                    continue
                del self._alerts[name]
        return warnings

    def active_alerts(self) -> List[ScheduledAlert]:
        with self._lock:
            return sorted(self._alerts.values(), key=lambda a: a.firing_instant)

    def _schedule(self, request: AlertRequest):
        last_error = None
        for attempt in range(self.retries + 1):
            try:
                return self.transport.schedule(request), None
            except SchedulingFailure as e:
                last_error = e
                self.logger.warning(f"Scheduling {request.prayer_name} alert failed (attempt {attempt + 1}): {e}")
        return None, f"Could not schedule {request.prayer_name} notification: {last_error}"

    def _cancel(self, alert: ScheduledAlert) -> Optional[str]:
        last_error = None
        for attempt in range(self.retries + 1):
            try:
                self.transport.cancel(alert.handle)
                return None
            except SchedulingFailure as e:
                last_error = e
                self.logger.warning(f"Canceling {alert.prayer_name} alert failed (attempt {attempt + 1}): {e}")
        return f"Could not cancel {alert.prayer_name} notification: {last_error}"
