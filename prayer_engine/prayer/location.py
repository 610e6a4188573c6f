"""
Location: great-circle change detection, provider interface, and a service that
bounds how long we wait for a fix.
"""
import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, Optional

import pytz
from timezonefinder import TimezoneFinder

from .errors import InvalidCoordinates, LocationUnavailable
from .types import Coordinates

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088

DEFAULT_CHANGE_THRESHOLD_KM = 5.0

# Used when no reading has ever succeeded (Masjid al-Haram)
DEFAULT_LOCATION = Coordinates(21.4225, 39.8262)


class LocationQuality:
    """Where a location fix came from."""
    FRESH = "fresh"
    LAST_KNOWN = "last_known"
    DEFAULT = "default"


# Multiplier applied to displayed confidence per quality
QUALITY_CONFIDENCE = {
    LocationQuality.FRESH: 1.0,
    LocationQuality.LAST_KNOWN: 0.8,
    LocationQuality.DEFAULT: 0.3,
}

LocationFix = namedtuple("LocationFix", ["coords", "quality"])


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Haversine great-circle distance."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class LocationChangeDetector:
    """Stateless: the caller owns "last known location"."""

    def __init__(self, threshold_km: float = DEFAULT_CHANGE_THRESHOLD_KM):
        if threshold_km <= 0:
            raise ValueError("threshold_km must be positive")
        self.threshold_km = threshold_km

    def is_significant(self, previous: Coordinates, current: Coordinates) -> bool:
        return distance_km(previous, current) > self.threshold_km


class LocationProvider(ABC):
    """Source of the device location."""

    @abstractmethod
    def get_location(self) -> Coordinates:
        """Return current coordinates or raise LocationUnavailable."""
        pass


class StaticLocationProvider(LocationProvider):
    """Location taken from the config's location section."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get_location(self) -> Coordinates:
        lat = self.config.get("latitude", self.config.get("lat"))
        lon = self.config.get("longitude", self.config.get("lon"))
        if lat is None or lon is None:
            raise LocationUnavailable("Latitude and longitude must be configured")
        try:
            return Coordinates(float(lat), float(lon))
        except (TypeError, ValueError, InvalidCoordinates) as e:
            raise LocationUnavailable(f"Invalid configured location ({lat}, {lon}): {e}") from e


class LocationService:
    """
    Wraps a provider with a bounded wait. On failure or timeout falls back to
    the last known location, then to DEFAULT_LOCATION.
    """

    def __init__(
        self,
        provider: LocationProvider,
        timeout: float = 10.0,
        last_known: Optional[Coordinates] = None,
        default: Coordinates = DEFAULT_LOCATION,
    ):
        self.provider = provider
        self.timeout = timeout
        self.default = default
        self._last_known = last_known
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="location")
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def last_known(self) -> Optional[Coordinates]:
        with self._lock:
            return self._last_known

    def remember(self, coords: Coordinates) -> None:
        with self._lock:
            self._last_known = coords

    def acquire(self) -> LocationFix:
        future = self._executor.submit(self.provider.get_location)
        try:
            coords = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            self.logger.warning(f"Location request timed out after {self.timeout}s")
            return self._fallback()
        except LocationUnavailable as e:
            self.logger.warning(f"Location unavailable: {e}")
            return self._fallback()
        self.remember(coords)
        return LocationFix(coords, LocationQuality.FRESH)

    def _fallback(self) -> LocationFix:
        last = self.last_known
        if last is not None:
            self.logger.info(f"Using last known location {last}")
            return LocationFix(last, LocationQuality.LAST_KNOWN)
        self.logger.info(f"Using default location {self.default}")
        return LocationFix(self.default, LocationQuality.DEFAULT)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


_timezone_finder = None


def timezone_for(coords: Coordinates, configured: Optional[str] = None):
    """pytz timezone for coords: the configured name if given, else a timezonefinder lookup, else UTC."""
    global _timezone_finder
    if configured:
        try:
            return pytz.timezone(configured)
        except pytz.UnknownTimeZoneError:
            logger.error(f"Unknown timezone {configured!r}, looking it up from coordinates")
    if _timezone_finder is None:
        _timezone_finder = TimezoneFinder()
    name = _timezone_finder.timezone_at(lng=coords.longitude, lat=coords.latitude)
    if not name:
        logger.warning(f"No timezone found for {coords}, using UTC")
        return pytz.utc
    return pytz.timezone(name)
