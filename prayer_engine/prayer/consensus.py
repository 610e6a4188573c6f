"""
Merge prayer time sets from several conventions or sources into one.

Per prayer: the lower median of the candidates wins (robust to a single
outlier source, and earlier on ties); confidence falls linearly with the
largest distance of any candidate from that median.
"""
import logging
from datetime import datetime
from typing import Dict, List, Sequence

from .types import PRAYER_NAMES, PrayerTimeSet

logger = logging.getLogger(__name__)

FULL_DISAGREEMENT_MINUTES = 10.0


class ConsensusResolver:
    def __init__(self, full_disagreement_minutes: float = FULL_DISAGREEMENT_MINUTES):
        if full_disagreement_minutes <= 0:
            raise ValueError("full_disagreement_minutes must be positive")
        self.full_disagreement_minutes = full_disagreement_minutes

    def resolve(self, results: Sequence[PrayerTimeSet]) -> PrayerTimeSet:
        results = list(results)
        if not results:
            raise ValueError("resolve() needs at least one prayer time set")

        first = results[0]
        for other in results[1:]:
            if other.date != first.date or other.location != first.location:
                raise ValueError(
                    f"Cannot merge prayer times for {other.date}/{other.location} "
                    f"with {first.date}/{first.location}"
                )

        if len(results) == 1:
            return first.with_confidence({name: 1.0 for name in PRAYER_NAMES})

        times: Dict[str, datetime] = {}
        confidence: Dict[str, float] = {}
        for name in PRAYER_NAMES:
            candidates = sorted(r.times[name] for r in results)
            chosen = lower_median(candidates)
            spread = max(abs((c - chosen).total_seconds()) for c in candidates) / 60.0
            times[name] = chosen
            confidence[name] = self.confidence_for(spread)
            if spread > self.full_disagreement_minutes:
                logger.warning(f"{name}: sources disagree by {spread:.1f} minutes")

        logger.debug(f"Resolved {len(results)} sources; confidence {confidence}")
        return PrayerTimeSet(
            date=first.date,
            location=first.location,
            convention=_merged_convention(results),
            times=times,
            confidence=confidence,
        )

    def confidence_for(self, max_deviation_minutes: float) -> float:
        score = 1.0 - max_deviation_minutes / self.full_disagreement_minutes
        return max(0.0, min(1.0, score))


def lower_median(sorted_values: List[datetime]) -> datetime:
    """Middle value; for an even count the earlier of the two middle values."""
    return sorted_values[(len(sorted_values) - 1) // 2]


def _merged_convention(results: Sequence[PrayerTimeSet]) -> str:
    ids: List[str] = []
    for r in results:
        if r.convention not in ids:
            ids.append(r.convention)
    return ids[0] if len(ids) == 1 else ",".join(ids)
