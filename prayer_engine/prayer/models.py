"""
SQLAlchemy model for persisted prayer time sets: one row per cache key, so a
cold start can show times before recomputation finishes.
"""
from sqlalchemy import Column, Date, DateTime, Float, Integer, JSON, String

from prayer_engine.core.db import Base


class PrayerTimesRecord(Base):
    """One raw (offset-free) resolved set. data is PrayerTimeSet.to_dict()."""
    __tablename__ = "prayer_times_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prayer_date = Column(Date, nullable=False, index=True)
    cell_lat = Column(Integer, nullable=False)
    cell_lon = Column(Integer, nullable=False)
    cell_size = Column(Float, nullable=False)
    convention = Column(String(128), nullable=False, index=True)
    computed_at = Column(DateTime(timezone=False), nullable=False, index=True)
    data = Column(JSON, nullable=False)
