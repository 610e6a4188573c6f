"""
What the UI receives: adjusted times, formatted in the location's timezone,
with completion flags and a confidence that also reflects location quality.
"""
from collections import namedtuple
from datetime import datetime, timedelta
from typing import List, Optional

from .types import ARABIC_NAMES, PrayerTimeSet

PrayerEntry = namedtuple(
    "PrayerEntry",
    [
        "name",         # "Fajr" .. "Isha"
        "arabic_name",
        "instant",      # aware datetime, not rounded
        "formatted",    # "5:04 AM" in the location's timezone
        "completed",    # bool from CompletionTracker
        "confidence",   # 0..1
    ],
)

PrayerTimesView = namedtuple(
    "PrayerTimesView",
    [
        "date",
        "location",
        "convention",
        "timezone",         # tz name used for formatting
        "location_quality",
        "prayers",          # List[PrayerEntry] in prayer order
        "warnings",         # non-fatal advisories (e.g. notification scheduling)
    ],
)


def round_to_minute(instant: datetime) -> datetime:
    return (instant + timedelta(seconds=30)).replace(second=0, microsecond=0)


def format_time(instant: datetime, tz) -> str:
    """12-hour clock text, rounded to the nearest minute."""
    local = round_to_minute(instant.astimezone(tz))
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


def format_time_until(instant: datetime, now: datetime) -> str:
    diff = instant - now
    if diff.total_seconds() < 0:
        return "Passed"
    total_minutes = int(diff.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def build_view(
    times: PrayerTimeSet,
    tz,
    completed: dict,
    confidence_factor: float = 1.0,
    location_quality: str = "fresh",
    warnings: Optional[List[str]] = None,
) -> PrayerTimesView:
    prayers = [
        PrayerEntry(
            name=name,
            arabic_name=ARABIC_NAMES[name],
            instant=instant,
            formatted=format_time(instant, tz),
            completed=bool(completed.get(name, False)),
            confidence=round(times.confidence[name] * confidence_factor, 4),
        )
        for name, instant in times
    ]
    return PrayerTimesView(
        date=times.date,
        location=times.location,
        convention=times.convention,
        timezone=str(tz),
        location_quality=location_quality,
        prayers=prayers,
        warnings=list(warnings or []),
    )


def next_prayer(view: PrayerTimesView, now: datetime) -> Optional[PrayerEntry]:
    """First prayer after now; None once Isha has passed (tomorrow's Fajr needs tomorrow's set)."""
    for entry in view.prayers:
        if entry.instant > now:
            return entry
    return None
