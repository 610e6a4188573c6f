"""
PrayerSettings: the explicit configuration value passed into the engine.
Built from the YAML config; rebuilt (never mutated) on reload.
"""
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .conventions import DEFAULT_CONVENTION_ID, convention_id
from .errors import InvalidOffsetConfiguration
from .location import DEFAULT_CHANGE_THRESHOLD_KM
from .types import AsrMethod, OffsetSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrayerSettings:
    convention_id: str = DEFAULT_CONVENTION_ID
    offsets: OffsetSet = field(default_factory=OffsetSet)
    sources: Tuple[str, ...] = ("astronomical",)
    source_config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    timezone: Optional[str] = None
    cell_size: float = 0.05
    change_threshold_km: float = DEFAULT_CHANGE_THRESHOLD_KM
    location_timeout: float = 10.0
    notifications_enabled: bool = True
    language: str = "en"

    def with_offsets(self, offsets: OffsetSet) -> "PrayerSettings":
        return replace(self, offsets=offsets)

    @classmethod
    def from_config(cls, data: Dict[str, Any], previous: Optional["PrayerSettings"] = None) -> "PrayerSettings":
        """
        Read the prayer/location/notifications sections. Invalid offsets are
        rejected and the previous offsets (or zero offsets) stay in effect.
        """
        prayer = data.get("prayer") or {}
        location = data.get("location") or {}
        notifications = data.get("notifications") or {}

        try:
            asr_method = AsrMethod(prayer.get("asr_method", AsrMethod.STANDARD.value))
        except ValueError:
            logger.error(f"Unknown asr_method {prayer.get('asr_method')!r}, using Standard")
            asr_method = AsrMethod.STANDARD

        try:
            offsets = OffsetSet.from_dict(prayer.get("offsets"))
        except InvalidOffsetConfiguration as e:
            offsets = previous.offsets if previous else OffsetSet()
            logger.error(f"Rejected offsets from config: {e}; keeping {offsets.to_dict()}")

        sources = prayer.get("sources") or ["astronomical"]
        if isinstance(sources, str):
            sources = [sources]

        return cls(
            convention_id=convention_id(prayer.get("convention", DEFAULT_CONVENTION_ID), asr_method),
            offsets=offsets,
            sources=tuple(sources),
            source_config=MappingProxyType(dict(prayer.get("source_config") or {})),
            timezone=location.get("timezone"),
            cell_size=float(prayer.get("cell_size_degrees", 0.05)),
            change_threshold_km=float(location.get("change_threshold_km", DEFAULT_CHANGE_THRESHOLD_KM)),
            location_timeout=float(location.get("timeout_seconds", 10)),
            notifications_enabled=bool(notifications.get("enable", True)),
            language=notifications.get("language", "en"),
        )
