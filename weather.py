"""Weather normalisation plus spatial and temporal interpolation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)

UTC = timezone.utc

CLEAR_SKY_THRESHOLD = 20.0
CLOUDY_THRESHOLD = 70.0
OVERCAST_THRESHOLD = 80.0
SUN_BLOCKING_CLOUD_THRESHOLD = 80.0
PRECIPITATION_INTENSITY_THRESHOLD = 0.1  # mm/h
LOW_VISIBILITY_KM = 5.0

MAX_SPATIAL_NEIGHBOURS = 4
# Samples closer than this are treated as coincident with the target.
COINCIDENT_DISTANCE_KM = 0.01
COINCIDENT_WEIGHT = 1000.0
KM_PER_DEGREE_LAT = 110.574
KM_PER_DEGREE_LON_EQUATOR = 111.320


class WeatherCondition(str, Enum):
    CLEAR = "clear"
    PARTLY_CLOUDY = "partly_cloudy"
    CLOUDY = "cloudy"
    OVERCAST = "overcast"
    PRECIPITATION = "precipitation"
    LOW_VISIBILITY = "low_visibility"


@dataclass(frozen=True)
class WeatherSlice:
    """Raw observation or forecast as delivered by the ingestion side."""

    timestamp: datetime
    cloud_cover: float
    precipitation_probability: float
    temperature: float
    is_forecast: bool
    source: str
    visibility_km: float | None = None
    created_at: datetime | None = None
    location: tuple[float, float] | None = None  # (lon, lat)


@dataclass(frozen=True)
class ProcessedWeather:
    timestamp: datetime
    cloud_cover: float
    precipitation_intensity: float
    condition: WeatherCondition
    is_sun_blocking: bool
    confidence: float
    is_forecast: bool = True
    source: str = "unknown"
    temperature: float | None = None
    visibility_km: float | None = None
    location: tuple[float, float] | None = None  # (lon, lat)
    processed_at: datetime | None = None
    issued_at: datetime | None = None


def classify_condition(
    cloud_cover: float,
    precipitation_intensity: float,
    visibility_km: float | None = None,
) -> WeatherCondition:
    if precipitation_intensity > PRECIPITATION_INTENSITY_THRESHOLD:
        return WeatherCondition.PRECIPITATION
    if visibility_km is not None and visibility_km < LOW_VISIBILITY_KM:
        return WeatherCondition.LOW_VISIBILITY
    if cloud_cover >= OVERCAST_THRESHOLD:
        return WeatherCondition.OVERCAST
    if cloud_cover >= CLOUDY_THRESHOLD:
        return WeatherCondition.CLOUDY
    if cloud_cover >= CLEAR_SKY_THRESHOLD:
        return WeatherCondition.PARTLY_CLOUDY
    return WeatherCondition.CLEAR


def is_sun_blocking(
    cloud_cover: float,
    precipitation_intensity: float,
    visibility_km: float | None = None,
) -> bool:
    if precipitation_intensity > PRECIPITATION_INTENSITY_THRESHOLD:
        return True
    if cloud_cover > SUN_BLOCKING_CLOUD_THRESHOLD:
        return True
    return visibility_km is not None and visibility_km < LOW_VISIBILITY_KM


def precipitation_intensity_from_probability(probability: float) -> float:
    """Coarse mm/h estimate when only a precipitation probability is known."""
    if probability >= 0.7:
        return 2.0
    if probability >= 0.4:
        return 0.5
    if probability >= 0.2:
        return 0.1
    return 0.0


def weather_confidence(slice_: WeatherSlice, now: datetime) -> float:
    confidence = 0.7 if slice_.is_forecast else 0.9
    if "met.no" in slice_.source.lower():
        confidence += 0.05

    lead_hours = (_ensure_utc(slice_.timestamp) - _ensure_utc(now)).total_seconds() / 3600.0
    if lead_hours > 24:
        confidence -= 0.1
    if lead_hours > 48:
        confidence -= 0.1
    return max(0.5, min(1.0, confidence))


def process_weather_slice(slice_: WeatherSlice, now: datetime | None = None) -> ProcessedWeather:
    now = _ensure_utc(now or datetime.now(UTC))
    cloud = max(0.0, min(100.0, float(slice_.cloud_cover)))
    intensity = precipitation_intensity_from_probability(slice_.precipitation_probability)
    return ProcessedWeather(
        timestamp=_ensure_utc(slice_.timestamp),
        cloud_cover=cloud,
        precipitation_intensity=intensity,
        condition=classify_condition(cloud, intensity, slice_.visibility_km),
        is_sun_blocking=is_sun_blocking(cloud, intensity, slice_.visibility_km),
        confidence=weather_confidence(slice_, now),
        is_forecast=slice_.is_forecast,
        source=slice_.source,
        temperature=slice_.temperature,
        visibility_km=slice_.visibility_km,
        location=slice_.location,
        processed_at=now,
        issued_at=_ensure_utc(slice_.created_at) if slice_.created_at else now,
    )


def _distances_km(target: tuple[float, float], points: np.ndarray) -> np.ndarray:
    lon0, lat0 = target
    km_per_lon = KM_PER_DEGREE_LON_EQUATOR * np.cos(np.radians(lat0))
    dx = (points[:, 0] - lon0) * km_per_lon
    dy = (points[:, 1] - lat0) * KM_PER_DEGREE_LAT
    return np.hypot(dx, dy)


def interpolate_spatial(
    target: tuple[float, float],
    samples: Sequence[ProcessedWeather],
) -> ProcessedWeather:
    """
    Weather at target (lon, lat) from grid samples with known locations.

    One sample is returned as-is, relocated to the target. Otherwise the up to
    four nearest samples are combined by inverse-distance weighting.
    """
    if not samples:
        raise ValueError("at least one weather sample is required")
    if len(samples) == 1:
        return replace(samples[0], location=target)

    located = [s for s in samples if s.location is not None]
    if len(located) != len(samples):
        raise ValueError("every sample needs a location for spatial interpolation")

    points = np.array([s.location for s in located], dtype=float)
    distances = _distances_km(target, points)
    order = np.argsort(distances, kind="stable")[:MAX_SPATIAL_NEIGHBOURS]

    nearest_d = distances[order]
    weights = np.where(nearest_d < COINCIDENT_DISTANCE_KM, COINCIDENT_WEIGHT, 1.0 / np.maximum(nearest_d, 1e-12))
    nearest = [located[i] for i in order]

    def weighted(values: list[float]) -> float:
        return float(np.dot(weights, np.asarray(values, dtype=float)) / weights.sum())

    cloud = weighted([s.cloud_cover for s in nearest])
    intensity = weighted([s.precipitation_intensity for s in nearest])
    confidence = weighted([s.confidence for s in nearest])
    temperatures = [s.temperature for s in nearest]
    temperature = weighted(temperatures) if all(t is not None for t in temperatures) else None

    base = nearest[0]
    return ProcessedWeather(
        timestamp=base.timestamp,
        cloud_cover=cloud,
        precipitation_intensity=intensity,
        condition=classify_condition(cloud, intensity, base.visibility_km),
        is_sun_blocking=is_sun_blocking(cloud, intensity, base.visibility_km),
        confidence=confidence,
        is_forecast=any(s.is_forecast for s in nearest),
        source=base.source,
        temperature=temperature,
        visibility_km=base.visibility_km,
        location=target,
        processed_at=datetime.now(UTC),
        issued_at=_earliest_issue(nearest),
    )


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def interpolate_temporal(
    target_time: datetime,
    before: ProcessedWeather,
    after: ProcessedWeather,
) -> ProcessedWeather:
    """Linear blend between two time-ordered samples, clamped outside the bracket."""
    start = _ensure_utc(before.timestamp)
    end = _ensure_utc(after.timestamp)
    target = _ensure_utc(target_time)
    if start > end:
        raise ValueError("'before' sample must not be later than 'after' sample")
    if target <= start:
        return before
    if target >= end:
        return after

    t = (target - start).total_seconds() / (end - start).total_seconds()
    cloud = _lerp(before.cloud_cover, after.cloud_cover, t)
    intensity = _lerp(before.precipitation_intensity, after.precipitation_intensity, t)
    temperature = None
    if before.temperature is not None and after.temperature is not None:
        temperature = _lerp(before.temperature, after.temperature, t)

    return ProcessedWeather(
        timestamp=target,
        cloud_cover=cloud,
        precipitation_intensity=intensity,
        condition=classify_condition(cloud, intensity, before.visibility_km),
        is_sun_blocking=is_sun_blocking(cloud, intensity, before.visibility_km),
        confidence=_lerp(before.confidence, after.confidence, t),
        is_forecast=before.is_forecast or after.is_forecast,
        source=before.source,
        temperature=temperature,
        visibility_km=before.visibility_km,
        location=before.location,
        processed_at=datetime.now(UTC),
        issued_at=_earliest_issue([before, after]),
    )


def select_weather_for_time(
    samples: Sequence[ProcessedWeather],
    target_time: datetime,
    max_gap: timedelta = timedelta(hours=3),
) -> ProcessedWeather | None:
    """
    Pick the samples bracketing target_time and interpolate between them.
    Returns None when nothing lies within max_gap of the target.
    """
    if not samples:
        return None
    target = _ensure_utc(target_time)
    ordered = sorted(samples, key=lambda s: _ensure_utc(s.timestamp))

    before = None
    after = None
    for sample in ordered:
        ts = _ensure_utc(sample.timestamp)
        if ts <= target:
            before = sample
        elif after is None:
            after = sample
            break

    if before is not None and after is not None:
        if _ensure_utc(after.timestamp) - _ensure_utc(before.timestamp) <= 2 * max_gap:
            return interpolate_temporal(target, before, after)
    candidates = [s for s in (before, after) if s is not None]
    nearest = min(candidates, key=lambda s: abs((_ensure_utc(s.timestamp) - target).total_seconds()))
    if abs(_ensure_utc(nearest.timestamp) - target) > max_gap:
        logger.debug("No weather sample within %s of %s", max_gap, target)
        return None
    return nearest


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _earliest_issue(samples: Sequence[ProcessedWeather]) -> datetime | None:
    issued = [_ensure_utc(s.issued_at) for s in samples if s.issued_at is not None]
    return min(issued) if issued else None
