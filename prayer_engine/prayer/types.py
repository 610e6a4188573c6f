"""
Value types shared by the prayer engine. All of them are immutable; "updates"
always produce a new value.
"""
import numbers
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Tuple

from .errors import CalculationError, InvalidCoordinates, InvalidOffsetConfiguration

PRAYER_NAMES: Tuple[str, ...] = ("Fajr", "Dhuhr", "Asr", "Maghrib", "Isha")

ARABIC_NAMES = {
    "Fajr": "الفجر",
    "Dhuhr": "الظهر",
    "Asr": "العصر",
    "Maghrib": "المغرب",
    "Isha": "العشاء",
}

MAX_OFFSET_MINUTES = 60


class AsrMethod(str, Enum):
    """Shadow-length rule for Asr: factor 1 (Standard) or 2 (Hanafi)."""
    STANDARD = "Standard"
    HANAFI = "Hanafi"

    @property
    def shadow_factor(self) -> int:
        return 2 if self is AsrMethod.HANAFI else 1


class HighLatitudeRule(str, Enum):
    """How Fajr/Isha are bounded when twilight never gets deep enough."""
    MIDDLE_OF_THE_NIGHT = "MiddleOfTheNight"
    SEVENTH_OF_THE_NIGHT = "SeventhOfTheNight"
    TWILIGHT_ANGLE = "TwilightAngle"

    def night_portion(self, angle: float) -> float:
        """Fraction of the night that Fajr/Isha may be away from sunrise/sunset."""
        if self is HighLatitudeRule.SEVENTH_OF_THE_NIGHT:
            return 1 / 7.0
        if self is HighLatitudeRule.TWILIGHT_ANGLE:
            return angle / 60.0
        return 1 / 2.0


@dataclass(frozen=True)
class Coordinates:
    """Geographic position in decimal degrees."""

    latitude: float
    longitude: float

    def __post_init__(self):
        lat, lon = self.latitude, self.longitude
        if not all(isinstance(v, numbers.Real) and not isinstance(v, bool) for v in (lat, lon)):
            raise InvalidCoordinates(f"Coordinates must be numbers, got ({lat!r}, {lon!r})")
        if lat != lat or lon != lon:
            raise InvalidCoordinates(f"Coordinates must be numbers, got ({lat}, {lon})")
        if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
            raise InvalidCoordinates(
                f"Latitude must be between -90 and 90, longitude between -180 and 180: ({lat}, {lon})"
            )

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class CalculationConvention:
    """
    One school's parameters. Angles are degrees below the horizon.
    isha_interval (minutes after Maghrib) replaces isha_angle when set.
    adjustments are per-prayer minute safety margins baked into the convention.
    """

    id: str
    name: str
    fajr_angle: float
    isha_angle: Optional[float] = None
    isha_interval: Optional[int] = None
    maghrib_angle: Optional[float] = None
    asr_method: AsrMethod = AsrMethod.STANDARD
    high_latitude_rule: HighLatitudeRule = HighLatitudeRule.MIDDLE_OF_THE_NIGHT
    adjustments: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def adjustment(self, prayer: str) -> int:
        return int(self.adjustments.get(prayer, 0))


@dataclass(frozen=True)
class PrayerTimeSet:
    """
    Five absolute (tz-aware) instants for one local calendar date plus a
    per-prayer confidence in [0, 1].
    """

    date: date
    location: Coordinates
    convention: str
    times: Mapping[str, datetime]
    confidence: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        # Freeze the mappings so a cached value can be handed out safely
        times = {name: self.times[name] for name in PRAYER_NAMES if name in self.times}
        if len(times) != len(PRAYER_NAMES):
            missing = [n for n in PRAYER_NAMES if n not in self.times]
            raise CalculationError(f"Prayer time set is missing {missing}")
        confidence = {name: float(self.confidence.get(name, 1.0)) for name in PRAYER_NAMES}
        object.__setattr__(self, "times", MappingProxyType(times))
        object.__setattr__(self, "confidence", MappingProxyType(confidence))
        check_order(self.times)

    def __iter__(self) -> Iterator[Tuple[str, datetime]]:
        return iter(self.times.items())

    def with_times(self, times: Mapping[str, datetime]) -> "PrayerTimeSet":
        return PrayerTimeSet(self.date, self.location, self.convention, times, self.confidence)

    def with_confidence(self, confidence: Mapping[str, float]) -> "PrayerTimeSet":
        return PrayerTimeSet(self.date, self.location, self.convention, self.times, confidence)

    def to_dict(self) -> Dict:
        """JSON-serializable form used for persistence."""
        return {
            "date": self.date.isoformat(),
            "location": self.location.to_dict(),
            "convention": self.convention,
            "times": {k: v.isoformat() for k, v in self.times.items()},
            "confidence": dict(self.confidence),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PrayerTimeSet":
        return cls(
            date=date.fromisoformat(data["date"]),
            location=Coordinates(**data["location"]),
            convention=data["convention"],
            times={k: datetime.fromisoformat(v) for k, v in data["times"].items()},
            confidence=data.get("confidence") or {},
        )


def check_order(times: Mapping[str, datetime]) -> None:
    """Raise CalculationError unless Fajr < Dhuhr < Asr < Maghrib < Isha."""
    for earlier, later in zip(PRAYER_NAMES, PRAYER_NAMES[1:]):
        if not times[earlier] < times[later]:
            raise CalculationError(
                f"Prayer order violated: {earlier} {times[earlier].isoformat()} "
                f">= {later} {times[later].isoformat()}"
            )


@dataclass(frozen=True)
class OffsetSet:
    """User-owned per-prayer minute offsets, each in [-60, 60]."""

    fajr: int = 0
    dhuhr: int = 0
    asr: int = 0
    maghrib: int = 0
    isha: int = 0

    def __post_init__(self):
        for name in ("fajr", "dhuhr", "asr", "maghrib", "isha"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidOffsetConfiguration(f"Offset for {name} must be an integer, got {value!r}")
            if not -MAX_OFFSET_MINUTES <= value <= MAX_OFFSET_MINUTES:
                raise InvalidOffsetConfiguration(
                    f"Offset for {name} must be within [-{MAX_OFFSET_MINUTES}, {MAX_OFFSET_MINUTES}], got {value}"
                )

    def minutes(self, prayer: str) -> int:
        return getattr(self, prayer.lower())

    def to_dict(self) -> Dict[str, int]:
        return {name.lower(): self.minutes(name) for name in PRAYER_NAMES}

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "OffsetSet":
        data = {str(k).lower(): v for k, v in (data or {}).items()}
        unknown = set(data) - {"fajr", "dhuhr", "asr", "maghrib", "isha"}
        if unknown:
            raise InvalidOffsetConfiguration(f"Unknown prayer offsets: {sorted(unknown)}")
        return cls(**data)


# Quantized coordinates; index = round(degrees / cell size)
LocationCell = namedtuple("LocationCell", ["lat_index", "lon_index", "size"])

CacheKey = namedtuple("CacheKey", ["date", "cell", "convention"])

# Entries are replaced, never mutated. started_at orders racing computations.
CacheEntry = namedtuple("CacheEntry", ["key", "value", "created_at", "started_at"])

ScheduledAlert = namedtuple("ScheduledAlert", ["prayer_name", "firing_instant", "handle"])

# What the notification transport receives for one alert
AlertRequest = namedtuple("AlertRequest", ["prayer_name", "firing_instant", "title", "body"])


def location_cell(coords: Coordinates, size: float = 0.05) -> LocationCell:
    """Snap coordinates to a coarse grid so GPS jitter maps to the same cell."""
    return LocationCell(
        int(round(coords.latitude / size)),
        int(round(coords.longitude / size)),
        size,
    )
