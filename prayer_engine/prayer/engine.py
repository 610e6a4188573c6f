"""
PrayerTimeEngine: one call from "where am I, what time is it" to the adjusted
prayer times the UI shows, with alerts reconciled against the same set.

Flow per request:
    location -> change detection -> cache (single flight per key)
    -> sources -> consensus -> persist -> offsets -> reconcile -> view
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from prayer_engine.core import db
from . import service
from .astronomy import AstronomicalCalculator
from .cache import PrayerTimeCache, make_key
from .completion import CompletionTracker
from .consensus import ConsensusResolver
from .conventions import AUTO_CONVENTION, REGISTRY, VARIANT_SEPARATOR, ConventionRegistry, resolve_convention_id
from .display import PrayerEntry, PrayerTimesView, build_view, next_prayer
from .errors import CalculationError, InvalidCoordinates, InvalidOffsetConfiguration, SourceUnavailable
from .location import (
    QUALITY_CONFIDENCE,
    LocationChangeDetector,
    LocationService,
    timezone_for,
)
from .notifications import NotificationScheduler
from .offsets import OffsetAdjuster
from .settings import PrayerSettings
from .sources import PrayerTimeSource, create_sources
from .types import CalculationConvention, Coordinates, OffsetSet, PrayerTimeSet, ScheduledAlert, location_cell

# Entries restored from storage lose to any computation made in this process
_RESTORED_STARTED_AT = float("-inf")

# Stored rows older than yesterday are pruned on each new local date
STORED_DAYS_BEHIND = 1


class PrayerTimeEngine:
    def __init__(
        self,
        settings: PrayerSettings,
        location_service: LocationService,
        scheduler: Optional[NotificationScheduler] = None,
        registry: ConventionRegistry = REGISTRY,
        calculator: Optional[AstronomicalCalculator] = None,
        sources: Optional[List[PrayerTimeSource]] = None,
        completion: Optional[CompletionTracker] = None,
        persist: bool = True,
        clock=None,
    ):
        """
        Args:
            settings: explicit configuration; replaced through apply_settings/update_offsets
            location_service: bounded-wait location with last-known/default fallback
            scheduler: alert reconciler; None disables notifications entirely
            sources: defaults to the ones named in settings.sources
            persist: write resolved sets to the DB (when it is initialized)
            clock: returns the current aware UTC datetime
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.registry = registry
        self.calculator = calculator or AstronomicalCalculator()
        self.location_service = location_service
        self.scheduler = scheduler
        self.completion = completion or CompletionTracker()
        self.persist = persist
        self.resolver = ConsensusResolver()
        self.adjuster = OffsetAdjuster()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._settings = settings
        self._custom_sources = sources is not None
        self.sources = sources if sources is not None else self._build_sources(settings)
        self.detector = LocationChangeDetector(settings.change_threshold_km)

        self._local_date: Optional[date] = None
        self.cache = PrayerTimeCache(today=self._cache_today)
        self._lock = threading.RLock()
        self._reconcile_lock = threading.Lock()
        self._reference_location: Optional[Coordinates] = None
        self._tz = None
        self._last_raw: Optional[PrayerTimeSet] = None
        self._last_view: Optional[PrayerTimesView] = None

    @property
    def settings(self) -> PrayerSettings:
        with self._lock:
            return self._settings

    def now(self) -> datetime:
        return self._clock()

    @property
    def last_view(self) -> Optional[PrayerTimesView]:
        return self._last_view

    def _cache_today(self) -> date:
        if self._local_date is None:
            return date.today()
        return self._local_date

    def _build_sources(self, settings: PrayerSettings) -> List[PrayerTimeSource]:
        return create_sources(list(settings.sources), dict(settings.source_config), self.calculator)

    def get_prayer_times(self, now: Optional[datetime] = None, force: bool = False) -> PrayerTimesView:
        """
        Adjusted prayer times for today at the current location. force bypasses
        the cache and recomputes; a concurrent older computation can never
        overwrite the result.
        """
        now = now or self.now()
        settings = self.settings
        fix = self.location_service.acquire()
        self._observe_location(fix.coords, settings)

        convention = self.registry.get_or_default(resolve_convention_id(settings.convention_id, fix.coords))
        tz = timezone_for(fix.coords, settings.timezone)
        today = now.astimezone(tz).date()
        self._roll_over(today)
        self._tz = tz

        key = make_key(today, fix.coords, convention.id, settings.cell_size)
        raw = self.cache.get_or_build(
            key,
            lambda: self._compute_and_store(key, fix.coords, today, convention, tz),
            force=force,
        )

        warnings: List[str] = []
        with self._reconcile_lock:
            # Another computation may have committed after ours; use what the cache holds now
            raw = self.cache.get(key) or raw
            self._last_raw = raw
            adjusted = self._apply_offsets(raw, settings.offsets, warnings)
            if self.scheduler is not None and settings.notifications_enabled:
                result = self.scheduler.reconcile(adjusted, now)
                warnings.extend(result.warnings)

        view = build_view(
            adjusted,
            tz,
            self.completion.completed(today),
            confidence_factor=QUALITY_CONFIDENCE[fix.quality],
            location_quality=fix.quality,
            warnings=warnings,
        )
        self._last_view = view
        self.logger.debug(f"Prayer times for {today} at {fix.coords} ({fix.quality}): {adjusted.to_dict()['times']}")
        return view

    def refresh(self, now: Optional[datetime] = None) -> PrayerTimesView:
        """Explicit refresh: recompute even if today's set is cached."""
        self.logger.info("Refreshing prayer times")
        return self.get_prayer_times(now, force=True)

    def _roll_over(self, today: date) -> None:
        if self._local_date == today:
            return
        previous = self._local_date
        self._local_date = today
        if previous is not None:
            self.logger.info(f"Date rolled over from {previous} to {today}")
            self.cache.purge_expired()
        self._prune_stored(today - timedelta(days=STORED_DAYS_BEHIND))

    def _prune_stored(self, keep_from: date) -> None:
        if not (self.persist and db.is_initialized()):
            return
        try:
            removed = service.delete_prayer_times_before(keep_from)
        except SQLAlchemyError as e:
            self.logger.warning(f"Could not prune stored prayer times: {e}")
            return
        if removed:
            self.logger.info(f"Pruned {removed} stored prayer time rows before {keep_from}")

    def _observe_location(self, coords: Coordinates, settings: PrayerSettings) -> bool:
        """Invalidate cached sets for other cells when the location moved significantly."""
        with self._lock:
            reference = self._reference_location
            if reference is None:
                self._reference_location = coords
                return False
            if not self.detector.is_significant(reference, coords):
                return False
            self._reference_location = coords
        cell = location_cell(coords, settings.cell_size)
        self.logger.info(f"Significant location change {reference} -> {coords}")
        self.cache.invalidate(lambda k: k.cell != cell)
        return True

    def _compute_and_store(
        self, key, coords: Coordinates, day: date, convention: CalculationConvention, tz=None
    ) -> PrayerTimeSet:
        resolved = self._compute(coords, day, convention, tz)
        if self.persist and db.is_initialized():
            try:
                service.save_prayer_times(key, resolved)
            except SQLAlchemyError as e:
                self.logger.warning(f"Could not persist prayer times for {key}: {e}")
        return resolved

    def _compute(self, coords: Coordinates, day: date, convention: CalculationConvention, tz=None) -> PrayerTimeSet:
        sources = list(self.sources)
        if len(sources) == 1:
            return self.resolver.resolve([sources[0].get_prayer_times(coords, day, convention, tz=tz)])

        results: List[PrayerTimeSet] = []
        with ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="prayer-source") as pool:
            futures = [
                (source, pool.submit(source.get_prayer_times, coords, day, convention, tz=tz))
                for source in sources
            ]
            for source, future in futures:
                try:
                    results.append(future.result())
                except (SourceUnavailable, CalculationError) as e:
                    self.logger.warning(f"Source {source.name} skipped: {e}")
        if not results:
            raise CalculationError(f"No source produced prayer times for {day} at {coords}")
        self.logger.info(f"Resolving {len(results)} of {len(sources)} sources for {day}")
        return self.resolver.resolve(results)

    def _apply_offsets(self, raw: PrayerTimeSet, offsets: OffsetSet, warnings: List[str]) -> PrayerTimeSet:
        try:
            return self.adjuster.apply(raw, offsets)
        except InvalidOffsetConfiguration as e:
            self.logger.error(f"Offsets not applied for {raw.date}: {e}")
            warnings.append("Minute adjustments were not applied because they would reorder prayers")
            return raw

    def update_offsets(
        self, offsets: Union[OffsetSet, Mapping[str, Any]], now: Optional[datetime] = None
    ) -> PrayerTimesView:
        """
        Replace the user offsets. Raises InvalidOffsetConfiguration (prior
        offsets stay in effect) when a value is out of range or the offsets
        would invert today's prayer order.
        """
        if not isinstance(offsets, OffsetSet):
            offsets = OffsetSet.from_dict(offsets)
        if self._last_raw is not None:
            self.adjuster.validate(self._last_raw, offsets)
        with self._lock:
            self._settings = self._settings.with_offsets(offsets)
        self.logger.info(f"Offsets updated: {offsets.to_dict()}")
        # Raw sets are offset-free, so the cache stays valid
        return self.get_prayer_times(now)

    def apply_settings(self, settings: PrayerSettings) -> None:
        """Swap in a new settings value, invalidating whatever it makes stale."""
        with self._lock:
            previous = self._settings
            self._settings = settings

        if settings.convention_id != previous.convention_id:
            self.logger.info(f"Convention changed {previous.convention_id} -> {settings.convention_id}")
            if settings.convention_id.partition(VARIANT_SEPARATOR)[0] == AUTO_CONVENTION:
                self.cache.invalidate(lambda k: True)
            else:
                new_convention = self.registry.get_or_default(settings.convention_id).id
                self.cache.invalidate(lambda k: k.convention != new_convention)

        if settings.cell_size != previous.cell_size or settings.timezone != previous.timezone:
            self.cache.invalidate(lambda k: True)

        if not self._custom_sources and (
            settings.sources != previous.sources or dict(settings.source_config) != dict(previous.source_config)
        ):
            self.sources = self._build_sources(settings)
            self.cache.invalidate(lambda k: True)

        if settings.change_threshold_km != previous.change_threshold_km:
            self.detector = LocationChangeDetector(settings.change_threshold_km)
        self.location_service.timeout = settings.location_timeout

        if self.scheduler is not None:
            self.scheduler.language = settings.language
            if previous.notifications_enabled and not settings.notifications_enabled:
                self.scheduler.cancel_all()
            elif settings.language != previous.language:
                # Pending alerts carry the old text
                self.scheduler.cancel_all()

    def apply_config(self, data: Dict[str, Any]) -> PrayerSettings:
        """Rebuild settings from config data (hot reload); invalid offsets keep the current ones."""
        settings = PrayerSettings.from_config(data, previous=self.settings)
        self.apply_settings(settings)
        return settings

    def check_location(self, now: Optional[datetime] = None) -> bool:
        """Periodic location check; recomputes and reconciles. Returns True if the location moved significantly."""
        before = self._reference_location
        self.get_prayer_times(now)
        moved = before is not None and self._reference_location != before
        if moved:
            self.logger.info("Prayer times recomputed after location change")
        return moved

    def warm_start(self, now: Optional[datetime] = None) -> Optional[PrayerTimesView]:
        """
        Cold start: seed the last known location and today's cache entry from
        the DB so times can be shown before anything is recomputed.
        """
        if not db.is_initialized():
            return None
        now = now or self.now()
        settings = self.settings
        try:
            if self.location_service.last_known is None:
                record = service.get_latest_prayer_times_record()
                if record is not None:
                    location = (record.data or {}).get("location") or {}
                    coords = Coordinates(float(location["latitude"]), float(location["longitude"]))
                    self.location_service.remember(coords)
                    self.logger.info(f"Restored last known location {coords}")
        except (SQLAlchemyError, KeyError, TypeError, ValueError, InvalidCoordinates) as e:
            self.logger.warning(f"Could not restore last known location: {e}")

        coords = self.location_service.last_known
        if coords is None:
            return None
        convention = self.registry.get_or_default(resolve_convention_id(settings.convention_id, coords))
        today = now.astimezone(timezone_for(coords, settings.timezone)).date()
        key = make_key(today, coords, convention.id, settings.cell_size)
        try:
            stored = service.load_prayer_times(key)
        except SQLAlchemyError as e:
            self.logger.warning(f"Could not read stored prayer times: {e}")
            return None
        if stored is None:
            self.logger.info(f"No stored prayer times for {key}")
            return None
        self._roll_over(today)
        self.cache.put(key, stored, started_at=_RESTORED_STARTED_AT)
        self.logger.info(f"Warm start from stored prayer times for {today}")
        return self.get_prayer_times(now)

    def mark_completed(self, prayer: str, completed: bool = True, now: Optional[datetime] = None) -> None:
        now = now or self.now()
        tz = self._tz
        if tz is None:
            coords = self.location_service.last_known or self.location_service.default
            tz = timezone_for(coords, self.settings.timezone)
        day = now.astimezone(tz).date()
        self.completion.mark(day, prayer, completed)

    def next_prayer(self, now: Optional[datetime] = None) -> Optional[PrayerEntry]:
        if self._last_view is None:
            return None
        return next_prayer(self._last_view, now or self.now())

    def conventions(self) -> List[CalculationConvention]:
        return [self.registry.get(cid) for cid in self.registry.list()]

    def alerts(self) -> List[ScheduledAlert]:
        if self.scheduler is None:
            return []
        return self.scheduler.active_alerts()

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel_all()
        self.location_service.shutdown()
