"""
Error taxonomy for the prayer-time engine. Everything derives from PrayerEngineError.
"""


class PrayerEngineError(Exception):
    """Base class for all prayer engine errors."""


class InvalidCoordinates(PrayerEngineError, ValueError):
    """Latitude/longitude outside [-90, 90] / [-180, 180]."""


class UnknownConvention(PrayerEngineError, KeyError):
    """Convention id not present in the registry."""

    def __init__(self, convention_id: str):
        super().__init__(convention_id)
        self.convention_id = convention_id

    def __str__(self) -> str:
        return f"Unknown calculation convention: {self.convention_id!r}"


class LocationUnavailable(PrayerEngineError):
    """Location provider could not produce a reading."""


class InvalidOffsetConfiguration(PrayerEngineError, ValueError):
    """Offset out of range, or an offset set that would invert prayer order."""


class SchedulingFailure(PrayerEngineError):
    """Notification transport could not register or cancel an alert."""


class CalculationError(PrayerEngineError):
    """A computed time set broke the Fajr < Dhuhr < Asr < Maghrib < Isha ordering."""


class SourceUnavailable(PrayerEngineError):
    """An external prayer time source failed to answer."""
