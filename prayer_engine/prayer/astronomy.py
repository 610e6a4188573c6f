"""
Solar-position prayer time calculation.

Times are carried as float hours since 00:00 UT of the requested date and only
turned into datetimes at the end; nothing is rounded here. Angles are radians
internally; convention parameters arrive in degrees and are converted once.
"""
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Optional, Tuple

from .errors import CalculationError, InvalidCoordinates
from .types import CalculationConvention, Coordinates, PRAYER_NAMES, PrayerTimeSet

logger = logging.getLogger(__name__)

TWO_PI = 2 * math.pi

# Refraction + solar semi-diameter at the horizon
SUNRISE_ALTITUDE = math.radians(-0.833)

# Below this much daylight or darkness the day is treated as polar
MIN_SEGMENT_HOURS = 1.0

POLAR_LATITUDE_STEP = 0.5

# Gap used when a degenerate day has to be forced back into order
MIN_PRAYER_GAP_HOURS = 1 / 60.0


def julian_day(day: date) -> float:
    """Julian day number at 00:00 UT of the given calendar date."""
    y, m = day.year, day.month
    if m <= 2:
        y -= 1
        m += 12
    a = math.floor(y / 100)
    b = 2 - a + math.floor(a / 4)
    return math.floor(365.25 * (y + 4716)) + math.floor(30.6001 * (m + 1)) + day.day + b - 1524.5


def sun_position(jd: float) -> Tuple[float, float]:
    """Return (declination in radians, equation of time in hours) for a Julian day."""
    d = jd - 2451545.0
    g = math.radians(357.529 + 0.98560028 * d) % TWO_PI
    q = math.radians(280.459 + 0.98564736 * d) % TWO_PI
    ecliptic_lon = q + math.radians(1.915) * math.sin(g) + math.radians(0.020) * math.sin(2 * g)
    obliquity = math.radians(23.439 - 0.00000036 * d)

    right_ascension = math.atan2(
        math.cos(obliquity) * math.sin(ecliptic_lon), math.cos(ecliptic_lon)
    ) % TWO_PI
    declination = math.asin(math.sin(obliquity) * math.sin(ecliptic_lon))

    # Wrap into (-pi, pi] before converting to hours
    eqt = (q - right_ascension + math.pi) % TWO_PI - math.pi
    return declination, eqt * 12 / math.pi


def hour_angle(altitude: float, latitude: float, declination: float) -> Optional[float]:
    """
    Hours between solar noon and the moment the sun crosses altitude.
    None when the sun never reaches that altitude on this day.
    """
    denominator = math.cos(latitude) * math.cos(declination)
    if abs(denominator) < 1e-12:
        return None
    cos_h = (math.sin(altitude) - math.sin(latitude) * math.sin(declination)) / denominator
    if cos_h < -1 or cos_h > 1:
        return None
    return math.degrees(math.acos(cos_h)) / 15.0


def ut_date_for(day: date, longitude: float, tz) -> date:
    """
    UT date whose solar transit falls on local date day in tz. Differs from day
    only where the zone offset is far from longitude/15 (Samoa, Tonga, Kiribati).
    """
    noon = datetime.combine(day, time(12))
    local_noon = tz.localize(noon) if hasattr(tz, "localize") else noon.replace(tzinfo=tz)
    offset_hours = local_noon.utcoffset().total_seconds() / 3600.0
    return day - timedelta(days=round((offset_hours - longitude / 15.0) / 24.0))


class SolarDay:
    """Solar geometry for one date at one (possibly substituted) latitude."""

    def __init__(self, day: date, latitude_deg: float, longitude_deg: float, iterations: int = 2):
        self.jd0 = julian_day(day)
        self.latitude = math.radians(latitude_deg)
        self.longitude_deg = longitude_deg
        self.iterations = iterations

    def _position(self, hours: float) -> Tuple[float, float]:
        return sun_position(self.jd0 + hours / 24.0)

    def transit(self, guess: Optional[float] = None) -> float:
        t = 12 - self.longitude_deg / 15.0 if guess is None else guess
        for _ in range(self.iterations):
            _, eqt = self._position(t)
            t = 12 - self.longitude_deg / 15.0 - eqt
        return t

    def time_at_altitude(self, altitude: float, guess: float, after_noon: bool) -> Optional[float]:
        t = guess
        for _ in range(self.iterations):
            declination, eqt = self._position(t)
            h = hour_angle(altitude, self.latitude, declination)
            if h is None:
                return None
            noon = 12 - self.longitude_deg / 15.0 - eqt
            t = noon + h if after_noon else noon - h
        return t

    def asr(self, shadow_factor: int, guess: float) -> Optional[float]:
        t = guess
        for _ in range(self.iterations):
            declination, eqt = self._position(t)
            zenith_at_noon = abs(self.latitude - declination)
            if zenith_at_noon >= math.pi / 2:
                return None
            altitude = math.atan(1.0 / (shadow_factor + math.tan(zenith_at_noon)))
            h = hour_angle(altitude, self.latitude, declination)
            if h is None:
                return None
            t = 12 - self.longitude_deg / 15.0 - eqt + h
        return t

    def sunrise_sunset(self) -> Optional[Tuple[float, float]]:
        noon = self.transit()
        sunrise = self.time_at_altitude(SUNRISE_ALTITUDE, noon - 6, after_noon=False)
        sunset = self.time_at_altitude(SUNRISE_ALTITUDE, noon + 6, after_noon=True)
        if sunrise is None or sunset is None:
            return None
        daylight = sunset - sunrise
        if daylight < MIN_SEGMENT_HOURS or 24 - daylight < MIN_SEGMENT_HOURS:
            return None
        return sunrise, sunset


class AstronomicalCalculator:
    """
    Pure calculator: the same coordinates, date and convention always give the
    same PrayerTimeSet.
    """

    def __init__(self, iterations: int = 2):
        self.iterations = iterations

    def compute(self, coords: Coordinates, day: date, convention: CalculationConvention, tz=None) -> PrayerTimeSet:
        """
        Prayer times for the local calendar date day. With tz the solar day is
        chosen so the times fall on day in that zone; without it day is taken
        as a UT date.
        """
        if not isinstance(coords, Coordinates):
            raise InvalidCoordinates(f"Expected Coordinates, got {coords!r}")
        ut_day = day if tz is None else ut_date_for(day, coords.longitude, tz)
        hours = self.compute_hours(coords, ut_day, convention)
        midnight_utc = datetime.combine(ut_day, time(0), tzinfo=timezone.utc)
        times = {name: midnight_utc + timedelta(hours=hours[name]) for name in PRAYER_NAMES}
        return PrayerTimeSet(
            date=day,
            location=coords,
            convention=convention.id,
            times=times,
            confidence={name: 1.0 for name in PRAYER_NAMES},
        )

    def compute_hours(self, coords: Coordinates, day: date, convention: CalculationConvention) -> Dict[str, float]:
        """Prayer times as float hours after 00:00 UT of day."""
        solar, (sunrise, sunset) = self._solar_day(coords, day)
        night = 24 - (sunset - sunrise)
        rule = convention.high_latitude_rule

        dhuhr = solar.transit()

        asr = solar.asr(convention.asr_method.shadow_factor, dhuhr + 3)
        if asr is None or not dhuhr < asr < sunset:
            asr = dhuhr + (sunset - dhuhr) / 2

        fajr_angle = math.radians(convention.fajr_angle)
        fajr = solar.time_at_altitude(-fajr_angle, sunrise - 1.5, after_noon=False)
        safe_fajr = sunrise - rule.night_portion(convention.fajr_angle) * night
        if fajr is None or fajr < safe_fajr:
            fajr = safe_fajr

        maghrib = sunset
        if convention.maghrib_angle is not None:
            angled = solar.time_at_altitude(-math.radians(convention.maghrib_angle), sunset + 0.25, after_noon=True)
            if angled is not None:
                maghrib = angled

        if convention.isha_interval is not None:
            isha = sunset + convention.isha_interval / 60.0
        else:
            isha = solar.time_at_altitude(-math.radians(convention.isha_angle), sunset + 1.5, after_noon=True)
            safe_isha = sunset + rule.night_portion(convention.isha_angle) * night
            if isha is None or isha > safe_isha:
                isha = safe_isha
        if maghrib >= isha:
            maghrib = sunset

        hours = {"Fajr": fajr, "Dhuhr": dhuhr, "Asr": asr, "Maghrib": maghrib, "Isha": isha}
        for name in PRAYER_NAMES:
            hours[name] += convention.adjustment(name) / 60.0

        return _enforce_order(hours, coords, day)

    def _solar_day(self, coords: Coordinates, day: date) -> Tuple[SolarDay, Tuple[float, float]]:
        """
        Solar geometry at the observer's latitude, or at the nearest latitude
        (towards the equator) where the sun both rises and sets.
        """
        latitude = coords.latitude
        while True:
            solar = SolarDay(day, latitude, coords.longitude, self.iterations)
            rise_set = solar.sunrise_sunset()
            if rise_set is not None:
                if latitude != coords.latitude:
                    logger.warning(
                        f"No usable sunrise/sunset at latitude {coords.latitude} on {day}; "
                        f"using nearest latitude {latitude}"
                    )
                return solar, rise_set
            if abs(latitude) < POLAR_LATITUDE_STEP:
                raise CalculationError(f"No sunrise/sunset found for {coords} on {day}")
            latitude = round(latitude - math.copysign(POLAR_LATITUDE_STEP, latitude), 6)


def _enforce_order(hours: Dict[str, float], coords: Coordinates, day: date) -> Dict[str, float]:
    """Push any prayer that fell onto/before its predecessor to just after it."""
    previous = None
    for name in PRAYER_NAMES:
        if previous is not None and hours[name] <= hours[previous]:
            logger.warning(
                f"{name} fell before {previous} at {coords} on {day}; shifting to keep prayer order"
            )
            hours[name] = hours[previous] + MIN_PRAYER_GAP_HOURS
        previous = name
    return hours

