"""
User minute offsets, applied on top of raw (cached) prayer times.
"""
from datetime import timedelta

from .errors import CalculationError, InvalidOffsetConfiguration
from .types import PRAYER_NAMES, OffsetSet, PrayerTimeSet


class OffsetAdjuster:
    def apply(self, times: PrayerTimeSet, offsets: OffsetSet) -> PrayerTimeSet:
        """Return a new set shifted per prayer; the input is left untouched."""
        shifted = {
            name: times.times[name] + timedelta(minutes=offsets.minutes(name))
            for name in PRAYER_NAMES
        }
        try:
            return times.with_times(shifted)
        except CalculationError as e:
            raise InvalidOffsetConfiguration(f"Offsets {offsets.to_dict()} invert prayer order: {e}") from e

    def validate(self, times: PrayerTimeSet, offsets: OffsetSet) -> None:
        """Raise InvalidOffsetConfiguration if offsets cannot be applied to times."""
        self.apply(times, offsets)
