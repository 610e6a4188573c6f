import threading
import time
from datetime import date, datetime, timezone

import pytest

from prayer_engine.core.db import close_db, init_db
from prayer_engine.prayer.errors import LocationUnavailable, SchedulingFailure
from prayer_engine.prayer.location import LocationProvider, LocationService
from prayer_engine.prayer.notifications import NotificationScheduler, NotificationTransport
from prayer_engine.prayer.settings import PrayerSettings
from prayer_engine.prayer.types import Coordinates

MECCA = Coordinates(21.4225, 39.8262)


class FakeLocationProvider(LocationProvider):
    """Returns coords, or raises LocationUnavailable when coords is None; delay simulates a slow fix."""

    def __init__(self, coords=MECCA, delay=0.0):
        self.coords = coords
        self.delay = delay
        self.calls = 0

    def get_location(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.coords is None:
            raise LocationUnavailable("no fix")
        return self.coords


class RecordingTransport(NotificationTransport):
    """Keeps scheduled requests in memory; fail_next / fail_cancels make the next N schedule / cancel calls raise."""

    def __init__(self):
        self.pending = {}
        self.scheduled = []
        self.canceled = []
        self.fail_next = 0
        self.fail_cancels = 0
        self._counter = 0
        self._lock = threading.Lock()

    def schedule(self, request):
        with self._lock:
            if self.fail_next:
                self.fail_next -= 1
                raise SchedulingFailure("platform refused")
            self._counter += 1
            handle = f"alert-{self._counter}"
            self.pending[handle] = request
            self.scheduled.append(handle)
            return handle

    def cancel(self, handle):
        with self._lock:
            if self.fail_cancels:
                self.fail_cancels -= 1
                raise SchedulingFailure("platform refused")
            self.pending.pop(handle, None)
            self.canceled.append(handle)

    def fire(self, handle):
        with self._lock:
            self.pending.pop(handle)
        self.on_fired(handle)


@pytest.fixture
def database():
    """Fresh in-memory SQLite database per test."""
    init_db(db_url="sqlite://")
    yield
    close_db()


@pytest.fixture
def provider():
    return FakeLocationProvider()


@pytest.fixture
def location_service(provider):
    service = LocationService(provider, timeout=2.0)
    yield service
    service.shutdown()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def scheduler(transport):
    return NotificationScheduler(transport)


@pytest.fixture
def settings():
    return PrayerSettings(convention_id="UmmAlQura", timezone="Asia/Riyadh")


@pytest.fixture
def june_first_morning():
    """2024-06-01 00:30 UTC, 03:30 in Mecca: before Fajr."""
    return datetime(2024, 6, 1, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def june_first():
    return date(2024, 6, 1)
