"""Sun windows, window ranking and timeline summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import TYPE_CHECKING, Sequence

from sun_exposure import SunExposureState

if TYPE_CHECKING:
    from timeline import SunExposureTimeline, TimelinePoint

logger = logging.getLogger(__name__)

MIN_WINDOW_EXPOSURE = 20.0
MIN_WINDOW_DURATION = timedelta(minutes=15)
RECOMMENDED_MIN_DURATION = timedelta(minutes=30)
RECOMMENDED_MIN_EXPOSURE = 50.0
GOOD_SUN_EXPOSURE = 60.0
LOW_CONFIDENCE_PERCENT = 60.0

AVAILABLE_STATES = {SunExposureState.SUNNY, SunExposureState.PARTIAL}


class SunWindowQuality(IntEnum):
    POOR = 0
    FAIR = 1
    GOOD = 2
    EXCELLENT = 3

    @property
    def label(self) -> str:
        return self.name.lower()


# (quality, min average exposure %, min duration, min confidence %)
QUALITY_TIERS = (
    (SunWindowQuality.EXCELLENT, 80.0, timedelta(hours=2), 80.0),
    (SunWindowQuality.GOOD, 60.0, timedelta(hours=1), 70.0),
    (SunWindowQuality.FAIR, 40.0, timedelta(minutes=30), 60.0),
)
QUALITY_BONUS = {
    SunWindowQuality.EXCELLENT: 20.0,
    SunWindowQuality.GOOD: 10.0,
    SunWindowQuality.FAIR: 5.0,
    SunWindowQuality.POOR: 0.0,
}


@dataclass(frozen=True)
class SunWindow:
    patio_id: int
    start: datetime
    end: datetime
    local_start: datetime
    local_end: datetime
    peak_time: datetime
    local_peak_time: datetime
    peak_exposure: float
    min_exposure: float
    max_exposure: float
    average_exposure: float
    confidence: float  # percent
    point_count: int
    quality: SunWindowQuality
    description: str
    is_recommended: bool
    recommendation_reason: str
    priority_score: float

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class RecommendedTime:
    rank: int
    patio_id: int
    time: datetime
    sun_exposure: float
    confidence: float
    reason: str


@dataclass(frozen=True)
class TimelineSummary:
    average_exposure: float = 0.0
    max_exposure: float = 0.0
    min_exposure: float = 0.0
    sunny_periods: int = 0
    partial_periods: int = 0
    shaded_periods: int = 0
    no_sun_periods: int = 0
    total_sunny_time: timedelta = timedelta(0)
    total_partial_time: timedelta = timedelta(0)
    total_shaded_time: timedelta = timedelta(0)
    best_sun_period_start: datetime | None = None
    best_sun_period_duration: timedelta = timedelta(0)


@dataclass(frozen=True)
class TimelineComparison:
    timelines: list[SunExposureTimeline]
    best_patio_id: int | None
    best_time: datetime | None
    average_confidence: float
    total_sun_windows: int
    comparison_duration: timedelta
    best_times: list[RecommendedTime] = field(default_factory=list)


def window_quality(average_exposure: float, duration: timedelta, confidence: float) -> SunWindowQuality:
    for quality, min_exposure, min_duration, min_confidence in QUALITY_TIERS:
        if average_exposure >= min_exposure and duration >= min_duration and confidence >= min_confidence:
            return quality
    return SunWindowQuality.POOR


def is_recommended(quality: SunWindowQuality, duration: timedelta, average_exposure: float) -> bool:
    return (
        quality >= SunWindowQuality.GOOD
        and duration >= RECOMMENDED_MIN_DURATION
        and average_exposure >= RECOMMENDED_MIN_EXPOSURE
    )


def time_of_day(local_hour: int) -> str:
    if 6 <= local_hour < 10:
        return "Morning"
    if 10 <= local_hour < 14:
        return "Midday"
    if 14 <= local_hour < 18:
        return "Afternoon"
    if 18 <= local_hour < 21:
        return "Evening"
    return "Late"


def describe_window(local_start: datetime, quality: SunWindowQuality, duration: timedelta) -> str:
    hours = duration.total_seconds() / 3600.0
    if hours > 1:
        length = f"{hours:.1f} hours"
    else:
        length = f"{duration.total_seconds() / 60.0:.0f} minutes"
    return f"{time_of_day(local_start.hour)} sun ({quality.label} quality, {length})"


def recommendation_reason(
    recommended: bool,
    quality: SunWindowQuality,
    duration: timedelta,
    average_exposure: float,
) -> str:
    if not recommended:
        if duration < RECOMMENDED_MIN_DURATION:
            return "Too short duration for comfortable visit"
        if average_exposure < RECOMMENDED_MIN_EXPOSURE:
            return "Limited sun exposure during this period"
        return "Lower quality sun exposure"

    reason_parts = []
    if quality == SunWindowQuality.EXCELLENT:
        reason_parts.append("excellent sun exposure")
    elif quality == SunWindowQuality.GOOD:
        reason_parts.append("good sun exposure")

    if duration >= timedelta(hours=2):
        reason_parts.append("long duration")
    elif duration >= timedelta(hours=1):
        reason_parts.append("good duration")

    if average_exposure >= 80.0:
        reason_parts.append("high sun coverage")
    return ", ".join(reason_parts) if reason_parts else "Suitable sun exposure"


def priority_score(
    average_exposure: float,
    duration: timedelta,
    confidence: float,
    quality: SunWindowQuality,
) -> float:
    duration_score = min(duration.total_seconds() / 3600.0 * 25.0, 100.0)
    return (
        average_exposure * 0.4
        + duration_score * 0.3
        + confidence * 0.2
        + QUALITY_BONUS[quality] * 0.1
    )


def _qualifies(point: TimelinePoint) -> bool:
    return point.sun_exposure_percent >= MIN_WINDOW_EXPOSURE and point.state in AVAILABLE_STATES


def _build_window(
    patio_id: int,
    run: list[TimelinePoint],
    end: datetime,
    local_end: datetime,
) -> SunWindow:
    peak = max(run, key=lambda p: p.sun_exposure_percent)
    exposures = [p.sun_exposure_percent for p in run]
    average = sum(exposures) / len(exposures)
    confidence = sum(p.confidence for p in run) / len(run)
    start = run[0].timestamp
    duration = end - start

    quality = window_quality(average, duration, confidence)
    recommended = is_recommended(quality, duration, average)
    return SunWindow(
        patio_id=patio_id,
        start=start,
        end=end,
        local_start=run[0].local_time,
        local_end=local_end,
        peak_time=peak.timestamp,
        local_peak_time=peak.local_time,
        peak_exposure=peak.sun_exposure_percent,
        min_exposure=min(exposures),
        max_exposure=max(exposures),
        average_exposure=average,
        confidence=confidence,
        point_count=len(run),
        quality=quality,
        description=describe_window(run[0].local_time, quality, duration),
        is_recommended=recommended,
        recommendation_reason=recommendation_reason(recommended, quality, duration, average),
        priority_score=priority_score(average, duration, confidence, quality),
    )


def extract_sun_windows(
    patio_id: int,
    points: Sequence[TimelinePoint],
    min_duration: timedelta = MIN_WINDOW_DURATION,
) -> list[SunWindow]:
    """
    Group contiguous Sunny/Partial points (exposure >= 20%) into windows.

    A window ends at the timestamp of the first point that no longer
    qualifies, or at the last point of the timeline. Windows shorter than
    min_duration are dropped.
    """
    ordered = sorted(points, key=lambda p: p.timestamp)
    if not ordered:
        return []

    windows: list[SunWindow] = []
    run: list[TimelinePoint] = []
    for point in ordered:
        if _qualifies(point):
            run.append(point)
            continue
        if run:
            window = _build_window(patio_id, run, point.timestamp, point.local_time)
            if window.duration >= min_duration:
                windows.append(window)
        run = []

    if run:
        last = ordered[-1]
        window = _build_window(patio_id, run, last.timestamp, last.local_time)
        if window.duration >= min_duration:
            windows.append(window)

    logger.debug("Identified %d sun windows from %d points for patio %s", len(windows), len(ordered), patio_id)
    return windows


def best_windows(timeline: SunExposureTimeline, max_windows: int = 3) -> list[SunWindow]:
    ranked = sorted(
        timeline.windows,
        key=lambda w: (w.priority_score, w.average_exposure),
        reverse=True,
    )
    return ranked[:max_windows]


def today_recommendations(timeline: SunExposureTimeline) -> list[SunWindow]:
    recommended = [w for w in timeline.windows if w.is_recommended]
    recommended.sort(key=lambda w: (w.quality, w.priority_score), reverse=True)
    return recommended


def _count_runs(points: Sequence[TimelinePoint], state: SunExposureState) -> int:
    runs = 0
    in_run = False
    for point in points:
        if point.state == state:
            if not in_run:
                runs += 1
            in_run = True
        else:
            in_run = False
    return runs


def _best_sun_period(
    points: Sequence[TimelinePoint],
    interval: timedelta,
) -> tuple[datetime | None, timedelta]:
    best_start = None
    best_duration = timedelta(0)
    current_start = None
    current_duration = timedelta(0)
    for point in points:
        if point.sun_exposure_percent >= GOOD_SUN_EXPOSURE:
            if current_start is None:
                current_start = point.timestamp
                current_duration = interval
            else:
                current_duration += interval
            continue
        if current_start is not None and current_duration > best_duration:
            best_start, best_duration = current_start, current_duration
        current_start = None

    if current_start is not None and current_duration > best_duration:
        best_start, best_duration = current_start, current_duration
    return best_start, best_duration


def summarize_timeline(timeline: SunExposureTimeline) -> TimelineSummary:
    points = sorted(timeline.points, key=lambda p: p.timestamp)
    if not points:
        return TimelineSummary()

    exposures = [p.sun_exposure_percent for p in points]
    interval = timeline.interval

    def total_time(state: SunExposureState) -> timedelta:
        return interval * sum(1 for p in points if p.state == state)

    best_start, best_duration = _best_sun_period(points, interval)
    return TimelineSummary(
        average_exposure=sum(exposures) / len(exposures),
        max_exposure=max(exposures),
        min_exposure=min(exposures),
        sunny_periods=_count_runs(points, SunExposureState.SUNNY),
        partial_periods=_count_runs(points, SunExposureState.PARTIAL),
        shaded_periods=_count_runs(points, SunExposureState.SHADED),
        no_sun_periods=_count_runs(points, SunExposureState.NO_SUN),
        total_sunny_time=total_time(SunExposureState.SUNNY),
        total_partial_time=total_time(SunExposureState.PARTIAL),
        total_shaded_time=total_time(SunExposureState.SHADED),
        best_sun_period_start=best_start,
        best_sun_period_duration=best_duration,
    )


def rank_best_times(timelines: Sequence[SunExposureTimeline], limit: int = 5) -> list[RecommendedTime]:
    """Top two recommended windows per timeline, ranked by peak exposure weighted by confidence."""
    candidates = []
    for timeline in timelines:
        top = sorted(
            (w for w in timeline.windows if w.is_recommended),
            key=lambda w: w.priority_score,
            reverse=True,
        )[:2]
        candidates.extend((timeline.patio_id, w) for w in top)

    candidates.sort(key=lambda item: item[1].peak_exposure * item[1].confidence / 100.0, reverse=True)
    return [
        RecommendedTime(
            rank=idx + 1,
            patio_id=patio_id,
            time=window.local_peak_time,
            sun_exposure=window.peak_exposure,
            confidence=window.confidence,
            reason=window.recommendation_reason,
        )
        for idx, (patio_id, window) in enumerate(candidates[:limit])
    ]


def compare_timelines(timelines: Sequence[SunExposureTimeline]) -> TimelineComparison:
    timelines = list(timelines)
    if not timelines:
        return TimelineComparison(
            timelines=[],
            best_patio_id=None,
            best_time=None,
            average_confidence=0.0,
            total_sun_windows=0,
            comparison_duration=timedelta(0),
        )

    def mean_exposure(timeline: SunExposureTimeline) -> float:
        if not timeline.points:
            return 0.0
        return sum(p.sun_exposure_percent for p in timeline.points) / len(timeline.points)

    best = max(timelines, key=lambda t: (t.average_confidence, mean_exposure(t)))
    best_time = None
    if best.points:
        best_time = max(best.points, key=lambda p: p.sun_exposure_percent).local_time

    return TimelineComparison(
        timelines=timelines,
        best_patio_id=best.patio_id,
        best_time=best_time,
        average_confidence=sum(t.average_confidence for t in timelines) / len(timelines),
        total_sun_windows=sum(len(t.windows) for t in timelines),
        comparison_duration=max(t.end for t in timelines) - min(t.start for t in timelines),
        best_times=rank_best_times(timelines),
    )
