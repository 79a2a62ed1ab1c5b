"""Sun exposure timelines built from precomputed rows with real-time fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional

from city_config import LocalTimeProvider
from precompute_store import PrecomputationStore, PrecomputedSunExposureRow, row_from_exposure
from recommendations import (
    LOW_CONFIDENCE_PERCENT,
    RecommendedTime,
    SunWindow,
    TimelineComparison,
    TimelineSummary,
    best_windows,
    compare_timelines,
    extract_sun_windows,
    summarize_timeline,
    today_recommendations,
)
from settings import EngineSettings
from shadow_engine import Patio
from solar_position import SunTimes, get_sun_times
from sun_exposure import PatioSunExposure, SunExposureCalculator, SunExposureState
from weather import ProcessedWeather

logger = logging.getLogger(__name__)

UTC = timezone.utc
PLACEHOLDER_ELEVATION = -10.0
COMPLETENESS_TARGET = 95.0
RELIABILITY_TARGET = 80.0
PRECOMPUTED_NOTE_THRESHOLD = 70.0

WeatherLookup = Callable[[Patio, datetime], Optional[ProcessedWeather]]


class DataSource(str, Enum):
    PRECOMPUTED = "precomputed"
    REALTIME = "realtime"
    # precomputed row flagged stale, used because the real-time path failed
    STALE = "stale"


@dataclass(frozen=True)
class TimelinePoint:
    timestamp: datetime
    local_time: datetime
    sun_exposure_percent: float
    state: SunExposureState
    confidence: float  # percent
    solar_elevation: float
    solar_azimuth: float
    source: DataSource
    calculation_time: timedelta | None = None

    @property
    def is_sun_visible(self) -> bool:
        return self.solar_elevation > 0


@dataclass(frozen=True)
class TimelineMetadata:
    total_windows: int
    total_sun_duration: timedelta
    daylight_hours: float
    precomputed_percent: float
    average_calculation_time: timedelta
    sun_times: SunTimes | None = None
    quality_notes: tuple[str, ...] = ()
    last_data_update: datetime | None = None


@dataclass(frozen=True)
class SunExposureTimeline:
    patio_id: int
    start: datetime
    end: datetime
    interval: timedelta
    points: tuple[TimelinePoint, ...]
    windows: tuple[SunWindow, ...]
    metadata: TimelineMetadata
    generated_at: datetime

    @property
    def point_count(self) -> int:
        return len(self.points)

    @property
    def average_confidence(self) -> float:
        if not self.points:
            return 0.0
        return sum(p.confidence for p in self.points) / len(self.points)

    @property
    def precomputed_count(self) -> int:
        return sum(1 for p in self.points if p.source == DataSource.PRECOMPUTED)

    @property
    def stale_count(self) -> int:
        return sum(1 for p in self.points if p.source == DataSource.STALE)


@dataclass(frozen=True)
class TimelineQualityAssessment:
    quality_score: float
    completeness_percent: float
    confidence_reliability: float
    high_quality_percent: float
    issues: tuple[str, ...] = field(default_factory=tuple)
    improvements: tuple[str, ...] = field(default_factory=tuple)


def point_from_exposure(exposure: PatioSunExposure) -> TimelinePoint:
    return TimelinePoint(
        timestamp=exposure.timestamp,
        local_time=exposure.local_time,
        sun_exposure_percent=exposure.sun_exposure_percent,
        state=exposure.state,
        confidence=exposure.confidence,
        solar_elevation=exposure.solar_position.elevation,
        solar_azimuth=exposure.solar_position.azimuth,
        source=DataSource.REALTIME,
        calculation_time=exposure.calculation_duration,
    )


def point_from_row(
    row: PrecomputedSunExposureRow,
    tz_provider: LocalTimeProvider,
    source: DataSource = DataSource.PRECOMPUTED,
) -> TimelinePoint:
    timestamp = _ensure_utc(row.timestamp)
    return TimelinePoint(
        timestamp=timestamp,
        local_time=tz_provider.to_local(timestamp),
        sun_exposure_percent=row.sun_exposure_percent,
        state=row.state,
        confidence=row.confidence,
        solar_elevation=row.solar_elevation,
        solar_azimuth=row.solar_azimuth,
        source=source,
        calculation_time=row.calculation_duration,
    )


def placeholder_point(timestamp: datetime, tz_provider: LocalTimeProvider) -> TimelinePoint:
    return TimelinePoint(
        timestamp=timestamp,
        local_time=tz_provider.to_local(timestamp),
        sun_exposure_percent=0.0,
        state=SunExposureState.NO_SUN,
        confidence=0.0,
        solar_elevation=PLACEHOLDER_ELEVATION,
        solar_azimuth=0.0,
        source=DataSource.REALTIME,
        calculation_time=timedelta(0),
    )


def assess_timeline_quality(timeline: SunExposureTimeline) -> TimelineQualityAssessment:
    issues = []
    improvements = []

    expected = int((timeline.end - timeline.start) / timeline.interval) + 1
    completeness = timeline.point_count / expected * 100.0 if expected else 0.0
    if completeness < COMPLETENESS_TARGET:
        issues.append(f"Timeline is only {completeness:.1f}% complete")
        improvements.append("Run precomputation pipeline to fill data gaps")

    low_confidence = sum(1 for p in timeline.points if p.confidence < LOW_CONFIDENCE_PERCENT)
    reliability = 0.0
    if timeline.point_count:
        reliability = (1.0 - low_confidence / timeline.point_count) * 100.0
    if reliability < RELIABILITY_TARGET:
        issues.append(f"Low confidence data ({low_confidence} points below 60% confidence)")
        improvements.append("Improve building height data quality")

    high_quality = 0.0
    if timeline.point_count:
        high_quality = timeline.precomputed_count / timeline.point_count * 100.0

    return TimelineQualityAssessment(
        quality_score=min(completeness * 0.5 + reliability * 0.5, 100.0),
        completeness_percent=completeness,
        confidence_reliability=reliability,
        high_quality_percent=high_quality,
        issues=tuple(issues),
        improvements=tuple(improvements),
    )


def _average_calculation_time(points: Iterable[TimelinePoint]) -> timedelta:
    times = [p.calculation_time for p in points if p.calculation_time is not None]
    if not times:
        return timedelta(0)
    return sum(times, timedelta(0)) / len(times)


class TimelineService:
    """
    Builds timelines for patios. Each slot prefers a fresh precomputed row
    within the tolerance window and falls back to the real-time calculator.
    """

    def __init__(
        self,
        calculator: SunExposureCalculator,
        patios: Mapping[int, Patio],
        store: PrecomputationStore | None = None,
        settings: EngineSettings | None = None,
        weather_lookup: WeatherLookup | None = None,
    ) -> None:
        self.calculator = calculator
        self.patios = patios
        self.store = store
        self.settings = settings or calculator.settings
        self.tz_provider = calculator.tz_provider
        self.weather_lookup = weather_lookup

    @property
    def default_resolution(self) -> timedelta:
        return timedelta(minutes=self.settings.timeline_resolution_minutes)

    def validate(self, patio_id: int, start: datetime, end: datetime, resolution: timedelta) -> None:
        if patio_id <= 0:
            raise ValueError("Invalid patio ID")
        if end <= start:
            raise ValueError("End time must be after start time")
        max_range = timedelta(hours=self.settings.max_timeline_hours)
        if end - start > max_range:
            raise ValueError(f"Timeline range cannot exceed {self.settings.max_timeline_hours} hours")
        if resolution < timedelta(minutes=1):
            raise ValueError("Resolution cannot be less than 1 minute")

    def _patio(self, patio_id: int) -> Patio:
        patio = self.patios.get(patio_id)
        if patio is None:
            raise ValueError(f"Patio {patio_id} not found")
        return patio

    def generate(
        self,
        patio_id: int,
        start: datetime,
        end: datetime,
        resolution: timedelta | None = None,
        now: datetime | None = None,
    ) -> SunExposureTimeline:
        resolution = resolution or self.default_resolution
        start = _ensure_utc(start)
        end = _ensure_utc(end)
        self.validate(patio_id, start, end, resolution)
        patio = self._patio(patio_id)
        now = _ensure_utc(now or datetime.now(UTC))

        points = []
        current = start
        while current <= end:
            points.append(self._point(patio, current, now))
            current += resolution

        windows = extract_sun_windows(patio_id, points)
        timeline = SunExposureTimeline(
            patio_id=patio_id,
            start=start,
            end=end,
            interval=resolution,
            points=tuple(points),
            windows=tuple(windows),
            metadata=self._metadata(patio, start, points, windows, now),
            generated_at=now,
        )
        logger.info(
            "Generated timeline for patio %s: %d points (%d precomputed), %d sun windows",
            patio_id, timeline.point_count, timeline.precomputed_count, len(windows),
        )
        return timeline

    def _point(self, patio: Patio, timestamp: datetime, now: datetime) -> TimelinePoint:
        row = None
        try:
            if self.store is not None:
                row = self.store.lookup(patio.patio_id, timestamp, self.settings.precompute_tolerance_minutes)
                if row is not None and not row.is_stale and not row.is_expired(now):
                    return point_from_row(row, self.tz_provider)

            weather = self.weather_lookup(patio, timestamp) if self.weather_lookup else None
            exposure = self.calculator.calculate(patio, timestamp, weather=weather, now=now)
            if self.settings.backfill_realtime and self.store is not None:
                self.store.bulk_insert([
                    row_from_exposure(
                        exposure,
                        computed_at=now,
                        retention=timedelta(days=self.settings.retention_days),
                        version=self.settings.computation_version,
                    )
                ])
            return point_from_exposure(exposure)
        except Exception:
            logger.warning(
                "Failed to generate timeline point for patio %s at %s",
                patio.patio_id, timestamp.isoformat(), exc_info=True,
            )
            if row is not None and not row.is_expired(now):
                return point_from_row(row, self.tz_provider, DataSource.STALE)
            return placeholder_point(timestamp, self.tz_provider)

    def _metadata(
        self,
        patio: Patio,
        start: datetime,
        points: list[TimelinePoint],
        windows: list[SunWindow],
        now: datetime,
    ) -> TimelineMetadata:
        precomputed = sum(1 for p in points if p.source == DataSource.PRECOMPUTED)
        precomputed_percent = precomputed / len(points) * 100.0 if points else 0.0

        notes = []
        if precomputed_percent < PRECOMPUTED_NOTE_THRESHOLD:
            notes.append("Limited precomputed data available")
        if any(p.confidence < LOW_CONFIDENCE_PERCENT for p in points):
            notes.append("Some data points have lower confidence")

        lon, lat = patio.centroid_lonlat
        sun_times = get_sun_times(self.tz_provider.to_local(start).date(), lat, lon, self.tz_provider)
        return TimelineMetadata(
            total_windows=len(windows),
            total_sun_duration=sum((w.duration for w in windows), timedelta(0)),
            daylight_hours=sun_times.day_length.total_seconds() / 3600.0,
            precomputed_percent=precomputed_percent,
            average_calculation_time=_average_calculation_time(points),
            sun_times=sun_times,
            quality_notes=tuple(notes),
            last_data_update=now,
        )

    def generate_batch(
        self,
        patio_ids: Iterable[int],
        start: datetime,
        end: datetime,
        resolution: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[SunExposureTimeline]:
        timelines = []
        for patio_id in patio_ids:
            try:
                timelines.append(self.generate(patio_id, start, end, resolution, now=now))
            except Exception:
                logger.warning("Failed to generate timeline for patio %s in batch", patio_id, exc_info=True)
        return timelines

    def _local_day(self, offset_days: int, now: datetime | None) -> tuple[datetime, datetime]:
        now = _ensure_utc(now or datetime.now(UTC))
        day = self.tz_provider.to_local(now).date() + timedelta(days=offset_days)
        start = self.tz_provider.to_utc(datetime.combine(day, time(0, 0)))
        end = self.tz_provider.to_utc(datetime.combine(day + timedelta(days=1), time(0, 0)))
        return start, end

    def today(self, patio_id: int, now: datetime | None = None) -> SunExposureTimeline:
        start, end = self._local_day(0, now)
        return self.generate(patio_id, start, end, now=now)

    def tomorrow(self, patio_id: int, now: datetime | None = None) -> SunExposureTimeline:
        start, end = self._local_day(1, now)
        return self.generate(patio_id, start, end, now=now)

    def next_12_hours(self, patio_id: int, now: datetime | None = None) -> SunExposureTimeline:
        start = _ensure_utc(now or datetime.now(UTC))
        return self.generate(patio_id, start, start + timedelta(hours=12), now=now)

    def best_windows(
        self,
        patio_id: int,
        start: datetime,
        end: datetime,
        max_windows: int = 3,
        now: datetime | None = None,
    ) -> list[SunWindow]:
        return best_windows(self.generate(patio_id, start, end, now=now), max_windows)

    def today_recommendations(self, patio_id: int, now: datetime | None = None) -> list[SunWindow]:
        return today_recommendations(self.today(patio_id, now))

    def compare(
        self,
        patio_ids: Iterable[int],
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> TimelineComparison:
        return compare_timelines(self.generate_batch(patio_ids, start, end, now=now))

    def find_best_patio(
        self,
        patio_ids: Iterable[int],
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> RecommendedTime:
        comparison = self.compare(patio_ids, start, end, now=now)
        if not comparison.best_times:
            raise LookupError("No suitable patio found for the specified time range")
        return comparison.best_times[0]

    def summary(self, timeline: SunExposureTimeline) -> TimelineSummary:
        return summarize_timeline(timeline)

    def assess_quality(self, timeline: SunExposureTimeline) -> TimelineQualityAssessment:
        return assess_timeline_quality(timeline)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
