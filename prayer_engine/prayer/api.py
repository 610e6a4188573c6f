"""
Prayer times API. Mounted at /api/prayer/.
Stored records serialize from the ORM through Pydantic from_attributes.
"""
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict

from .display import PrayerTimesView, format_time_until, next_prayer
from .errors import CalculationError, InvalidOffsetConfiguration
from .service import get_latest_prayer_times_record
from .types import PRAYER_NAMES, OffsetSet

logger = logging.getLogger(__name__)


class CoordinatesResponse(BaseModel):
    latitude: float
    longitude: float


class PrayerEntryResponse(BaseModel):
    name: str
    arabic_name: str
    instant: dt.datetime
    formatted: str
    completed: bool
    confidence: float
    time_until: Optional[str] = None


class PrayerTimesResponse(BaseModel):
    """Adjusted prayer times for today, ready for display."""

    date: dt.date
    location: CoordinatesResponse
    convention: str
    timezone: str
    location_quality: str
    prayers: List[PrayerEntryResponse]
    next_prayer: Optional[str] = None
    warnings: List[str] = []


class ConventionResponse(BaseModel):
    id: str
    name: str
    fajr_angle: float
    isha_angle: Optional[float] = None
    isha_interval: Optional[int] = None
    maghrib_angle: Optional[float] = None
    asr_method: str
    high_latitude_rule: str
    adjustments: Dict[str, int] = {}


class PrayerTimesRecordResponse(BaseModel):
    """Pydantic view of PrayerTimesRecord; serializes from ORM."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    prayer_date: Optional[dt.date] = None
    convention: Optional[str] = None
    computed_at: Optional[dt.datetime] = None
    data: Optional[Dict[str, Any]] = None


class OffsetsModel(BaseModel):
    fajr: int = 0
    dhuhr: int = 0
    asr: int = 0
    maghrib: int = 0
    isha: int = 0


class AlertResponse(BaseModel):
    prayer_name: str
    firing_instant: dt.datetime
    handle: str


def _times_response(view: PrayerTimesView, now: dt.datetime) -> PrayerTimesResponse:
    upcoming = next_prayer(view, now)
    prayers = []
    for entry in view.prayers:
        prayers.append(PrayerEntryResponse(**entry._asdict(), time_until=format_time_until(entry.instant, now)))
    return PrayerTimesResponse(
        date=view.date,
        location=CoordinatesResponse(**view.location.to_dict()),
        convention=view.convention,
        timezone=view.timezone,
        location_quality=view.location_quality,
        prayers=prayers,
        next_prayer=upcoming.name if upcoming else None,
        warnings=view.warnings,
    )


def get_router(engine_app) -> APIRouter:
    """Return router for the prayer engine; mounted with prefix /api/prayer."""
    router = APIRouter(tags=["Prayer Times"])
    engine = engine_app.engine

    def _now() -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)

    @router.get("/times", response_model=PrayerTimesResponse)
    def get_times() -> PrayerTimesResponse:
        """Today's adjusted prayer times at the current location."""
        now = _now()
        try:
            view = engine.get_prayer_times(now)
        except CalculationError as e:
            logger.error(f"Prayer times unavailable: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return _times_response(view, now)

    @router.post("/refresh", response_model=PrayerTimesResponse)
    def refresh() -> PrayerTimesResponse:
        """Recompute today's prayer times, bypassing the cache."""
        now = _now()
        try:
            view = engine.refresh(now)
        except CalculationError as e:
            logger.error(f"Prayer times refresh failed: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return _times_response(view, now)

    @router.get("/conventions", response_model=List[ConventionResponse])
    def list_conventions() -> List[ConventionResponse]:
        return [
            ConventionResponse(
                id=c.id,
                name=c.name,
                fajr_angle=c.fajr_angle,
                isha_angle=c.isha_angle,
                isha_interval=c.isha_interval,
                maghrib_angle=c.maghrib_angle,
                asr_method=c.asr_method.value,
                high_latitude_rule=c.high_latitude_rule.value,
                adjustments=dict(c.adjustments),
            )
            for c in engine.conventions()
        ]

    @router.get("/offsets", response_model=OffsetsModel)
    def get_offsets() -> OffsetsModel:
        return OffsetsModel(**engine.settings.offsets.to_dict())

    @router.put("/offsets", response_model=OffsetsModel)
    def put_offsets(body: OffsetsModel) -> OffsetsModel:
        """Replace the per-prayer minute offsets. Rejected offsets leave the current ones in effect."""
        try:
            offsets = OffsetSet(**body.model_dump())
            engine.update_offsets(offsets, _now())
        except InvalidOffsetConfiguration as e:
            raise HTTPException(status_code=422, detail=str(e))
        save_offsets = getattr(engine_app, "save_offsets", None)
        if callable(save_offsets):
            save_offsets(offsets)
        return OffsetsModel(**offsets.to_dict())

    @router.post("/completed/{prayer}", response_model=PrayerTimesResponse)
    def mark_completed(prayer: str, completed: bool = True) -> PrayerTimesResponse:
        """Mark (or unmark with ?completed=false) a prayer as done today."""
        name = prayer.capitalize()
        if name not in PRAYER_NAMES:
            raise HTTPException(status_code=404, detail=f"Unknown prayer: {prayer}")
        now = _now()
        engine.mark_completed(name, completed, now)
        return _times_response(engine.get_prayer_times(now), now)

    @router.get("/alerts", response_model=List[AlertResponse])
    def list_alerts() -> List[AlertResponse]:
        """Pending prayer alerts, soonest first."""
        return [AlertResponse(**alert._asdict()) for alert in engine.alerts()]

    @router.get("/stored", response_model=PrayerTimesRecordResponse)
    def get_stored() -> PrayerTimesRecordResponse:
        """Latest persisted raw prayer times (ORM serialized via Pydantic)."""
        record = get_latest_prayer_times_record()
        if record is None:
            raise HTTPException(status_code=404, detail="No prayer times stored")
        return PrayerTimesRecordResponse.model_validate(record)

    return router
