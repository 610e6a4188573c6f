from datetime import datetime, timedelta, timezone

import pytz

from prayer_engine.prayer.display import build_view, format_time, format_time_until, next_prayer, round_to_minute

from .test_consensus import BASE, make_set

RIYADH = pytz.timezone("Asia/Riyadh")


class TestFormatting:
    def test_format_time_local_twelve_hour(self):
        assert format_time(datetime(2024, 6, 1, 1, 11, tzinfo=timezone.utc), RIYADH) == "4:11 AM"
        assert format_time(datetime(2024, 6, 1, 9, 19, tzinfo=timezone.utc), RIYADH) == "12:19 PM"
        assert format_time(datetime(2024, 6, 1, 21, 5, tzinfo=timezone.utc), RIYADH) == "12:05 AM"

    def test_rounds_to_nearest_minute(self):
        assert format_time(datetime(2024, 6, 1, 1, 11, 31, tzinfo=timezone.utc), RIYADH) == "4:12 AM"
        assert round_to_minute(datetime(2024, 6, 1, 1, 11, 29)) == datetime(2024, 6, 1, 1, 11)

    def test_time_until(self):
        now = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
        assert format_time_until(now + timedelta(hours=2, minutes=5), now) == "2h 5m"
        assert format_time_until(now + timedelta(minutes=5, seconds=40), now) == "5m"
        assert format_time_until(now - timedelta(minutes=1), now) == "Passed"


class TestView:
    def test_build_view(self):
        view = build_view(make_set(confidence={"Asr": 0.5}), RIYADH, {"Fajr": True},
                          confidence_factor=0.8, location_quality="last_known", warnings=["w"])
        assert [p.completed for p in view.prayers] == [True, False, False, False, False]
        assert view.prayers[2].confidence == 0.4
        assert view.prayers[0].confidence == 0.8
        assert view.timezone == "Asia/Riyadh"
        assert view.warnings == ["w"]

    def test_next_prayer(self):
        view = build_view(make_set(), RIYADH, {})
        assert next_prayer(view, BASE["Dhuhr"]).name == "Asr"
        assert next_prayer(view, BASE["Fajr"] - timedelta(minutes=1)).name == "Fajr"
        assert next_prayer(view, BASE["Isha"]) is None
