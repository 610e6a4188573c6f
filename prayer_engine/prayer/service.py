"""
Service layer: save and load resolved prayer time sets from DB.
"""
import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import and_, delete, select

from prayer_engine.core.db import session_scope
from prayer_engine.prayer.errors import PrayerEngineError
from prayer_engine.prayer.models import PrayerTimesRecord
from prayer_engine.prayer.types import CacheKey, PrayerTimeSet

logger = logging.getLogger(__name__)


def _key_filter(key: CacheKey):
    return and_(
        PrayerTimesRecord.prayer_date == key.date,
        PrayerTimesRecord.cell_lat == key.cell.lat_index,
        PrayerTimesRecord.cell_lon == key.cell.lon_index,
        PrayerTimesRecord.cell_size == key.cell.size,
        PrayerTimesRecord.convention == key.convention,
    )


def save_prayer_times(key: CacheKey, times: PrayerTimeSet) -> None:
    """Replace the stored set for this cache key."""
    computed_at = datetime.now(timezone.utc).replace(tzinfo=None)
    with session_scope() as session:
        session.execute(delete(PrayerTimesRecord).where(_key_filter(key)))
        session.add(
            PrayerTimesRecord(
                prayer_date=key.date,
                cell_lat=key.cell.lat_index,
                cell_lon=key.cell.lon_index,
                cell_size=key.cell.size,
                convention=key.convention,
                computed_at=computed_at,
                data=times.to_dict(),
            )
        )


def load_prayer_times(key: CacheKey) -> Optional[PrayerTimeSet]:
    """Stored set for this exact key, or None."""
    with session_scope() as session:
        row = session.execute(select(PrayerTimesRecord).where(_key_filter(key))).scalars().first()
        if row is None:
            return None
        data = row.data
    try:
        return PrayerTimeSet.from_dict(data)
    except (KeyError, TypeError, ValueError, PrayerEngineError) as e:
        logger.error(f"Ignoring unreadable stored prayer times for {key}: {e}")
        return None


def get_latest_prayer_times_record() -> Optional[PrayerTimesRecord]:
    """Most recently computed row (for API serialization)."""
    with session_scope() as session:
        return (
            session.execute(
                select(PrayerTimesRecord)
                .order_by(PrayerTimesRecord.computed_at.desc())
                .limit(1)
            )
            .scalars().first()
        )


def delete_prayer_times_before(day: date) -> int:
    """Remove rows for dates before day; returns the number removed."""
    with session_scope() as session:
        result = session.execute(delete(PrayerTimesRecord).where(PrayerTimesRecord.prayer_date < day))
        return result.rowcount or 0
