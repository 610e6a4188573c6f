"""
Static registry of calculation conventions. Adding a convention is a code change:
the angles decide whether a prayer time is correct, so they are never loaded
from user data.
"""
import logging
from types import MappingProxyType
from typing import Dict, Iterable, Optional, Tuple

from .errors import UnknownConvention
from .types import AsrMethod, CalculationConvention, Coordinates, HighLatitudeRule

logger = logging.getLogger(__name__)

DEFAULT_CONVENTION_ID = "MuslimWorldLeague"

# "<id>+Hanafi" addresses the Hanafi Asr variant of any convention
VARIANT_SEPARATOR = "+"

# Configured convention that picks the regional default for the current location
AUTO_CONVENTION = "auto"


def _convention(id: str, name: str, fajr: float, isha: Optional[float] = None, **kwargs) -> CalculationConvention:
    adjustments = MappingProxyType(dict(kwargs.pop("adjustments", {})))
    return CalculationConvention(id=id, name=name, fajr_angle=fajr, isha_angle=isha,
                                 adjustments=adjustments, **kwargs)


_CONVENTIONS: Tuple[CalculationConvention, ...] = (
    _convention("MuslimWorldLeague", "Muslim World League", 18, 17,
                adjustments={"Dhuhr": 1}),
    _convention("NorthAmerica", "Islamic Society of North America (ISNA)", 15, 15,
                adjustments={"Dhuhr": 1}),
    _convention("Egyptian", "Egyptian General Authority", 19.5, 17.5,
                adjustments={"Dhuhr": 1}),
    _convention("Karachi", "University of Islamic Sciences, Karachi", 18, 18,
                adjustments={"Dhuhr": 1}),
    _convention("UmmAlQura", "Umm al-Qura University, Makkah", 18.5, isha_interval=90),
    _convention("Dubai", "Dubai", 18.2, 18.2,
                adjustments={"Dhuhr": 3, "Asr": 3, "Maghrib": 3}),
    _convention("Qatar", "Qatar", 18, isha_interval=90),
    _convention("Kuwait", "Kuwait", 18, 17.5),
    _convention("MoonsightingCommittee", "Moonsighting Committee", 18, 18,
                adjustments={"Dhuhr": 5, "Maghrib": 3}),
    _convention("Singapore", "Singapore", 20, 18,
                adjustments={"Dhuhr": 1}),
    _convention("Tehran", "Institute of Geophysics, University of Tehran", 17.7, 14,
                maghrib_angle=4.5),
    _convention("Turkey", "Turkey", 18, 17,
                adjustments={"Dhuhr": 5, "Asr": 4, "Maghrib": 7}),
)


def _validate(convention: CalculationConvention) -> None:
    angles = [convention.fajr_angle, convention.isha_angle, convention.maghrib_angle]
    for angle in angles:
        if angle is not None and not 0 <= angle <= 30:
            raise ValueError(f"Convention {convention.id}: angle {angle} outside [0, 30]")
    if (convention.isha_angle is None) == (convention.isha_interval is None):
        raise ValueError(f"Convention {convention.id}: exactly one of isha_angle/isha_interval required")


class ConventionRegistry:
    """Read-only lookup over a fixed set of conventions."""

    def __init__(self, conventions: Iterable[CalculationConvention] = _CONVENTIONS):
        entries: Dict[str, CalculationConvention] = {}
        for convention in conventions:
            _validate(convention)
            if convention.id in entries:
                raise ValueError(f"Duplicate convention id: {convention.id}")
            entries[convention.id] = convention
        self._entries = MappingProxyType(entries)
        self._ids = tuple(entries)

    def get(self, convention_id: str) -> CalculationConvention:
        """Return the convention for id, or its "+Hanafi" variant."""
        base_id, _, variant = str(convention_id or "").partition(VARIANT_SEPARATOR)
        base = self._entries.get(base_id)
        if base is None:
            raise UnknownConvention(convention_id)
        if not variant:
            return base
        try:
            asr_method = AsrMethod(variant)
        except ValueError:
            raise UnknownConvention(convention_id) from None
        if asr_method is base.asr_method:
            return base
        return _variant(base, asr_method)

    def list(self) -> Tuple[str, ...]:
        return self._ids

    def __contains__(self, convention_id: str) -> bool:
        try:
            self.get(convention_id)
        except UnknownConvention:
            return False
        return True

    def get_or_default(self, convention_id: str) -> CalculationConvention:
        """Lookup that logs and falls back to the default convention instead of failing."""
        try:
            return self.get(convention_id)
        except UnknownConvention as e:
            logger.warning(f"{e}; falling back to {DEFAULT_CONVENTION_ID}")
            return self.get(DEFAULT_CONVENTION_ID)


def _variant(base: CalculationConvention, asr_method: AsrMethod) -> CalculationConvention:
    return CalculationConvention(
        id=f"{base.id}{VARIANT_SEPARATOR}{asr_method.value}",
        name=f"{base.name} ({asr_method.value} Asr)",
        fajr_angle=base.fajr_angle,
        isha_angle=base.isha_angle,
        isha_interval=base.isha_interval,
        maghrib_angle=base.maghrib_angle,
        asr_method=asr_method,
        high_latitude_rule=base.high_latitude_rule,
        adjustments=base.adjustments,
    )


def convention_id(base_id: str, asr_method: AsrMethod = AsrMethod.STANDARD) -> str:
    """Build the registry id for a convention plus Asr rule."""
    if asr_method is AsrMethod.STANDARD:
        return base_id
    return f"{base_id}{VARIANT_SEPARATOR}{asr_method.value}"


def recommend_convention(coords: Coordinates) -> str:
    """Regional default convention for a location."""
    lat, lon = coords.latitude, coords.longitude
    if 25 <= lat <= 72 and -170 <= lon <= -50:
        return "NorthAmerica"
    if 12 <= lat <= 42 and 25 <= lon <= 63:
        return "UmmAlQura"
    if 35 <= lat <= 71 and -10 <= lon <= 40:
        return "MuslimWorldLeague"
    if -10 <= lat <= 28 and 95 <= lon <= 141:
        return "Singapore"
    return DEFAULT_CONVENTION_ID


def resolve_convention_id(configured: str, coords: Coordinates) -> str:
    """Replace "auto" (or "auto+Hanafi") with the regional convention for coords."""
    base_id, separator, variant = str(configured or "").partition(VARIANT_SEPARATOR)
    if base_id != AUTO_CONVENTION:
        return configured
    return f"{recommend_convention(coords)}{separator}{variant}"


# Process-wide registry, built once at import
REGISTRY = ConventionRegistry()
