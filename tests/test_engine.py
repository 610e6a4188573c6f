import re
from datetime import date, datetime, timedelta, timezone

import pytest
import pytz
from sqlalchemy import select

from prayer_engine.core.db import session_scope
from prayer_engine.prayer.astronomy import AstronomicalCalculator
from prayer_engine.prayer.engine import PrayerTimeEngine
from prayer_engine.prayer.errors import InvalidOffsetConfiguration, SourceUnavailable
from prayer_engine.prayer.location import LocationQuality, LocationService
from prayer_engine.prayer.models import PrayerTimesRecord
from prayer_engine.prayer.settings import PrayerSettings
from prayer_engine.prayer.sources import AstronomicalSource, PrayerTimeSource
from prayer_engine.prayer.types import PRAYER_NAMES, Coordinates, OffsetSet

from .conftest import MECCA, FakeLocationProvider

MORNING = datetime(2024, 6, 1, 0, 30, tzinfo=timezone.utc)
EVENING = datetime(2024, 6, 1, 13, 0, tzinfo=timezone.utc)


class ShiftedSource(PrayerTimeSource):
    name = "shifted"

    def __init__(self, minutes, fail=False):
        self.minutes = minutes
        self.fail = fail
        self.calls = 0

    def get_prayer_times(self, coords, day, convention, tz=None):
        self.calls += 1
        if self.fail:
            raise SourceUnavailable("offline")
        base = AstronomicalCalculator().compute(coords, day, convention, tz)
        return base.with_times({k: v + timedelta(minutes=self.minutes) for k, v in base.times.items()})


class CountingSource(AstronomicalSource):
    name = "counting"

    def __init__(self):
        super().__init__()
        self.calls = 0

    def get_prayer_times(self, coords, day, convention, tz=None):
        self.calls += 1
        return super().get_prayer_times(coords, day, convention, tz)


@pytest.fixture
def source():
    return CountingSource()


@pytest.fixture
def engine(settings, location_service, scheduler, source):
    engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler, sources=[source])
    yield engine
    engine.shutdown()


def _instants(view):
    return {p.name: p.instant for p in view.prayers}


class TestGetPrayerTimes:
    def test_view_contents(self, engine):
        view = engine.get_prayer_times(MORNING)
        assert view.date == date(2024, 6, 1)
        assert view.location == MECCA
        assert view.convention == "UmmAlQura"
        assert view.timezone == "Asia/Riyadh"
        assert view.location_quality == LocationQuality.FRESH
        assert [p.name for p in view.prayers] == list(PRAYER_NAMES)
        assert [p.arabic_name for p in view.prayers][0] == "الفجر"
        assert all(p.confidence == 1.0 for p in view.prayers)
        assert all(re.match(r"^\d{1,2}:\d{2} (AM|PM)$", p.formatted) for p in view.prayers)
        assert view.prayers[0].formatted.endswith("AM")
        assert view.warnings == []

    def test_second_call_served_from_cache(self, engine, source, transport):
        first = engine.get_prayer_times(MORNING)
        scheduled = len(transport.scheduled)
        second = engine.get_prayer_times(MORNING)
        assert source.calls == 1
        assert _instants(first) == _instants(second)
        assert len(transport.scheduled) == scheduled == 5

    def test_refresh_recomputes_without_duplicate_alerts(self, engine, source, transport):
        engine.get_prayer_times(MORNING)
        engine.refresh(MORNING)
        assert source.calls == 2
        assert len(transport.pending) == 5
        assert transport.canceled == []

    def test_alerts_only_for_future_prayers(self, engine):
        engine.get_prayer_times(EVENING)
        assert [a.prayer_name for a in engine.alerts()] == ["Maghrib", "Isha"]

    def test_next_prayer(self, engine):
        engine.get_prayer_times(EVENING)
        assert engine.next_prayer(EVENING).name == "Maghrib"
        assert engine.next_prayer(EVENING + timedelta(hours=12)) is None

    def test_date_rollover(self, engine, source):
        engine.get_prayer_times(MORNING)
        view = engine.get_prayer_times(MORNING + timedelta(days=1))
        assert view.date == date(2024, 6, 2)
        assert source.calls == 2
        assert len(engine.cache) == 1

    def test_unknown_convention_falls_back(self, location_service, scheduler):
        settings = PrayerSettings(convention_id="Atlantis", timezone="Asia/Riyadh")
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        view = engine.get_prayer_times(MORNING)
        assert view.convention == "MuslimWorldLeague"

    def test_notifications_disabled(self, location_service, scheduler, transport):
        settings = PrayerSettings(convention_id="UmmAlQura", timezone="Asia/Riyadh", notifications_enabled=False)
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        engine.get_prayer_times(MORNING)
        assert transport.scheduled == []

    def test_scheduling_failure_is_advisory(self, engine, transport):
        transport.fail_next = 2
        view = engine.get_prayer_times(MORNING)
        assert len(view.prayers) == 5
        assert len(view.warnings) == 1
        assert "Fajr" in view.warnings[0]


class TestLocation:
    def test_significant_move_invalidates_old_cell(self, engine, provider, source):
        engine.get_prayer_times(MORNING)
        provider.coords = Coordinates(MECCA.latitude + 0.45, MECCA.longitude)
        view = engine.get_prayer_times(MORNING)
        assert view.location == provider.coords
        assert source.calls == 2
        assert len(engine.cache) == 1

    def test_jitter_reuses_cache(self, engine, provider, source):
        engine.get_prayer_times(MORNING)
        provider.coords = Coordinates(MECCA.latitude + 0.0005, MECCA.longitude)
        engine.get_prayer_times(MORNING)
        assert source.calls == 1

    def test_check_location_reports_move(self, engine, provider):
        engine.get_prayer_times(MORNING)
        assert engine.check_location(MORNING) is False
        provider.coords = Coordinates(MECCA.latitude + 0.45, MECCA.longitude)
        assert engine.check_location(MORNING) is True

    def test_unavailable_location_lowers_confidence(self, engine, provider):
        engine.get_prayer_times(MORNING)
        provider.coords = None
        view = engine.get_prayer_times(MORNING)
        assert view.location == MECCA
        assert view.location_quality == LocationQuality.LAST_KNOWN
        assert all(p.confidence == pytest.approx(0.8) for p in view.prayers)

    def test_default_location_when_never_located(self, settings, scheduler):
        service = LocationService(FakeLocationProvider(coords=None), timeout=1.0)
        engine = PrayerTimeEngine(settings, service, scheduler=scheduler)
        try:
            view = engine.get_prayer_times(MORNING)
        finally:
            engine.shutdown()
        assert view.location_quality == LocationQuality.DEFAULT
        assert all(p.confidence == pytest.approx(0.3) for p in view.prayers)


class TestOffsets:
    def test_update_offsets_shifts_and_reconciles(self, engine, transport):
        before = _instants(engine.get_prayer_times(MORNING))
        view = engine.update_offsets({"fajr": 10, "isha": -5}, MORNING)
        after = _instants(view)
        assert after["Fajr"] - before["Fajr"] == timedelta(minutes=10)
        assert after["Isha"] - before["Isha"] == timedelta(minutes=-5)
        for name in ("Dhuhr", "Asr", "Maghrib"):
            assert after[name] == before[name]
        assert len(transport.canceled) == 2
        assert {r.firing_instant for r in transport.pending.values()} == set(after.values())

    def test_offset_change_does_not_recompute(self, engine, source):
        engine.get_prayer_times(MORNING)
        engine.update_offsets(OffsetSet(dhuhr=2), MORNING)
        assert source.calls == 1

    def test_out_of_range_keeps_prior_offsets(self, engine):
        engine.update_offsets(OffsetSet(fajr=5), MORNING)
        with pytest.raises(InvalidOffsetConfiguration):
            engine.update_offsets({"fajr": 61}, MORNING)
        assert engine.settings.offsets == OffsetSet(fajr=5)

    def test_order_inverting_offsets_rejected(self, settings, location_service, scheduler):
        # UmmAlQura Isha is 90 minutes after Maghrib; +60/-60 would swap them
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        engine.get_prayer_times(MORNING)
        with pytest.raises(InvalidOffsetConfiguration):
            engine.update_offsets(OffsetSet(maghrib=60, isha=-60), MORNING)
        assert engine.settings.offsets == OffsetSet()


class TestSettingsChanges:
    def test_convention_change_invalidates_other_conventions(self, engine, settings, source):
        engine.get_prayer_times(MORNING)
        engine.apply_settings(PrayerSettings(convention_id="MuslimWorldLeague", timezone="Asia/Riyadh"))
        assert len(engine.cache) == 0
        view = engine.get_prayer_times(MORNING)
        assert view.convention == "MuslimWorldLeague"
        assert source.calls == 2

    def test_apply_config_with_bad_offsets_keeps_current(self, engine):
        engine.update_offsets(OffsetSet(asr=4), MORNING)
        engine.apply_config({
            "location": {"timezone": "Asia/Riyadh"},
            "prayer": {"convention": "UmmAlQura", "offsets": {"asr": 300}},
        })
        assert engine.settings.offsets == OffsetSet(asr=4)

    def test_disabling_notifications_cancels_alerts(self, engine, settings, transport):
        engine.get_prayer_times(MORNING)
        engine.apply_settings(PrayerSettings(convention_id="UmmAlQura", timezone="Asia/Riyadh", notifications_enabled=False))
        assert transport.pending == {}
        assert engine.alerts() == []


class TestCompletion:
    def test_mark_completed_shows_in_view(self, engine):
        engine.get_prayer_times(MORNING)
        engine.mark_completed("Fajr", now=MORNING)
        view = engine.get_prayer_times(MORNING)
        assert [p.completed for p in view.prayers] == [True, False, False, False, False]

    def test_completion_resets_next_day(self, engine):
        engine.get_prayer_times(MORNING)
        engine.mark_completed("Fajr", now=MORNING)
        view = engine.get_prayer_times(MORNING + timedelta(days=1))
        assert not any(p.completed for p in view.prayers)


class TestConsensus:
    def test_agreeing_sources(self, settings, location_service, scheduler):
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler,
                                  sources=[AstronomicalSource(), ShiftedSource(0)])
        view = engine.get_prayer_times(MORNING)
        assert all(p.confidence == 1.0 for p in view.prayers)

    def test_disagreeing_sources_lower_confidence(self, settings, location_service, scheduler):
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler,
                                  sources=[AstronomicalSource(), ShiftedSource(5)])
        view = engine.get_prayer_times(MORNING)
        assert all(p.confidence == pytest.approx(0.5) for p in view.prayers)

    def test_failed_source_skipped(self, settings, location_service, scheduler):
        failing = ShiftedSource(30, fail=True)
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler,
                                  sources=[AstronomicalSource(), failing])
        view = engine.get_prayer_times(MORNING)
        assert failing.calls == 1
        assert all(p.confidence == 1.0 for p in view.prayers)


@pytest.mark.usefixtures("database")
class TestWarmStart:
    def test_cold_start_uses_stored_times(self, settings, scheduler):
        first_source = CountingSource()
        first = PrayerTimeEngine(settings, LocationService(FakeLocationProvider()), scheduler=scheduler,
                                 sources=[first_source])
        expected = _instants(first.get_prayer_times(MORNING))
        first.shutdown()

        # Location is slow to come back after restart; stored times are shown meanwhile
        second_source = CountingSource()
        service = LocationService(FakeLocationProvider(coords=None), timeout=0.5)
        second = PrayerTimeEngine(settings, service, scheduler=scheduler, sources=[second_source])
        try:
            view = second.warm_start(MORNING)
        finally:
            second.shutdown()
        assert view is not None
        assert _instants(view) == expected
        assert view.location_quality == LocationQuality.LAST_KNOWN
        assert second_source.calls == 0

    def test_nothing_stored(self, settings, location_service, scheduler):
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        assert engine.warm_start(MORNING) is None

    def test_without_database(self, settings, location_service, scheduler):
        from prayer_engine.core.db import close_db

        close_db()
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        assert engine.warm_start(MORNING) is None


class TestLocalDate:
    def test_apia_times_fall_on_local_date(self, scheduler):
        apia = Coordinates(-13.8333, -171.7667)
        settings = PrayerSettings(convention_id="MuslimWorldLeague", timezone="Pacific/Apia")
        service = LocationService(FakeLocationProvider(coords=apia))
        engine = PrayerTimeEngine(settings, service, scheduler=scheduler)
        # 08:00 on 2024-06-01 in Apia (UTC+13)
        now = datetime(2024, 5, 31, 19, 0, tzinfo=timezone.utc)
        try:
            view = engine.get_prayer_times(now)
        finally:
            engine.shutdown()
        tz = pytz.timezone("Pacific/Apia")
        assert view.date == date(2024, 6, 1)
        assert {p.instant.astimezone(tz).date() for p in view.prayers} == {date(2024, 6, 1)}
        assert engine.next_prayer(now).name == "Dhuhr"


class TestAutoConvention:
    def test_auto_uses_regional_convention(self, location_service, scheduler):
        settings = PrayerSettings(convention_id="auto", timezone="Asia/Riyadh")
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        assert engine.get_prayer_times(MORNING).convention == "UmmAlQura"

    def test_switch_to_auto_invalidates_cache(self, engine):
        engine.get_prayer_times(MORNING)
        engine.apply_settings(PrayerSettings(convention_id="auto", timezone="Asia/Riyadh"))
        assert len(engine.cache) == 0


@pytest.mark.usefixtures("database")
class TestStoredPruning:
    def _stored_dates(self):
        with session_scope() as session:
            return sorted(r.prayer_date for r in session.execute(select(PrayerTimesRecord)).scalars())

    def test_rollover_prunes_rows_older_than_yesterday(self, settings, location_service, scheduler):
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        try:
            for days in range(4):
                engine.get_prayer_times(MORNING + timedelta(days=days))
        finally:
            engine.shutdown()
        assert self._stored_dates() == [date(2024, 6, 3), date(2024, 6, 4)]

    def test_same_day_keeps_rows(self, settings, location_service, scheduler):
        engine = PrayerTimeEngine(settings, location_service, scheduler=scheduler)
        try:
            engine.get_prayer_times(MORNING)
            engine.refresh(MORNING)
        finally:
            engine.shutdown()
        assert self._stored_dates() == [date(2024, 6, 1)]
