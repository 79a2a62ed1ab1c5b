"""Multi-factor confidence blending geometry quality and weather certainty."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum

from shadow_engine import Patio, PatioShadowInfo
from solar_position import SolarPosition
from weather import ProcessedWeather

logger = logging.getLogger(__name__)

UTC = timezone.utc

GEOMETRY_WEIGHT = 0.6
CLOUD_WEIGHT = 0.4
FORECAST_CAP = 0.90
NOWCAST_CAP = 0.95
ESTIMATED_CAP = 0.60
POOR_BUILDING_DATA_CAP = 0.70
POOR_BUILDING_DATA_THRESHOLD = 0.6
MISSING_WEATHER_CERTAINTY = 0.5
SUFFICIENT_CONFIDENCE = 0.60

SOURCE_RELIABILITY = {
    "yr.no": 0.95,
    "met.no": 0.95,
    "metno": 0.95,
    "openweathermap": 0.85,
    "openweather": 0.85,
}
DEFAULT_SOURCE_RELIABILITY = 0.80

# (max age, factor); older than the last entry -> STALE_FRESHNESS
FRESHNESS_STEPS = (
    (timedelta(minutes=5), 1.0),
    (timedelta(minutes=15), 0.95),
    (timedelta(minutes=30), 0.90),
    (timedelta(minutes=60), 0.85),
    (timedelta(hours=2), 0.75),
    (timedelta(hours=6), 0.60),
)
STALE_FRESHNESS = 0.40


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def threshold(self) -> float:
        return CONFIDENCE_THRESHOLDS[self]

    @classmethod
    def from_score(cls, score: float) -> "Confidence":
        """Map a [0, 1] score to its tier."""
        if score >= CONFIDENCE_THRESHOLDS[cls.HIGH]:
            return cls.HIGH
        if score >= CONFIDENCE_THRESHOLDS[cls.MEDIUM]:
            return cls.MEDIUM
        return cls.LOW

    @classmethod
    def from_percent(cls, percent: float) -> "Confidence":
        return cls.from_score(percent / 100.0)


CONFIDENCE_THRESHOLDS = {
    Confidence.HIGH: 0.70,
    Confidence.MEDIUM: 0.40,
    Confidence.LOW: 0.0,
}


@dataclass(frozen=True)
class ConfidenceFactors:
    geometry_quality: float
    cloud_certainty: float
    building_data_quality: float
    geometry_precision: float
    solar_accuracy: float
    shadow_accuracy: float
    overall: float
    category: Confidence
    is_estimated: bool = False
    quality_issues: tuple[str, ...] = ()
    improvements: tuple[str, ...] = ()

    @property
    def percent(self) -> float:
        return display_confidence(self.overall)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def building_data_quality(shadow_info: PatioShadowInfo) -> float:
    if not shadow_info.shadows:
        return 1.0
    return sum(s.confidence for s in shadow_info.shadows) / len(shadow_info.shadows)


def geometry_quality(patio: Patio, shadow_info: PatioShadowInfo) -> float:
    value = (
        building_data_quality(shadow_info) * 0.5
        + _clamp(patio.polygon_quality) * 0.3
        + shadow_info.confidence * 0.2
    )
    return _clamp(value)


def solar_accuracy(solar_position: SolarPosition) -> float:
    elevation = solar_position.elevation
    if elevation > 30.0:
        return 0.98
    if elevation > 15.0:
        return 0.95
    if elevation > 5.0:
        return 0.85
    if elevation > 0.0:
        return 0.70
    return 0.50


def shadow_accuracy(shadow_info: PatioShadowInfo, solar_position: SolarPosition) -> float:
    complexity_penalty = min(len(shadow_info.shadows) * 0.03, 0.15)
    elevation_penalty = 0.10 if solar_position.elevation < 10.0 else 0.0
    return max(shadow_info.confidence - complexity_penalty - elevation_penalty, 0.30)


def freshness_factor(age: timedelta) -> float:
    for max_age, factor in FRESHNESS_STEPS:
        if age < max_age:
            return factor
    return STALE_FRESHNESS


def source_reliability(source: str | None) -> float:
    return SOURCE_RELIABILITY.get((source or "").strip().lower(), DEFAULT_SOURCE_RELIABILITY)


def weather_age(weather: ProcessedWeather, now: datetime) -> timedelta:
    issued = weather.issued_at or weather.processed_at
    if issued is None:
        return timedelta(0)
    return max(timedelta(0), _ensure_utc(now) - _ensure_utc(issued))


def cloud_certainty(weather: ProcessedWeather | None, now: datetime) -> float:
    if weather is None:
        return MISSING_WEATHER_CERTAINTY
    forecast_factor = 0.9 if weather.is_forecast else 0.95
    value = forecast_factor * freshness_factor(weather_age(weather, now)) * source_reliability(weather.source)
    return _clamp(value)


def apply_caps(
    score: float,
    weather: ProcessedWeather | None,
    geometry_missing: bool,
    building_quality: float,
) -> tuple[float, bool]:
    """Return (capped score, is_estimated)."""
    capped = score
    if weather is not None:
        capped = min(capped, FORECAST_CAP if weather.is_forecast else NOWCAST_CAP)

    estimated = weather is None or geometry_missing
    if estimated:
        capped = min(capped, ESTIMATED_CAP)

    if building_quality < POOR_BUILDING_DATA_THRESHOLD:
        capped = min(capped, POOR_BUILDING_DATA_CAP)
    return _clamp(capped), estimated


def calculate_confidence_factors(
    patio: Patio,
    shadow_info: PatioShadowInfo,
    solar_position: SolarPosition,
    weather: ProcessedWeather | None = None,
    patio_area_m2: float | None = None,
    now: datetime | None = None,
) -> ConfidenceFactors:
    """Blend geometry (60%) and cloud certainty (40%), then apply caps."""
    now = _ensure_utc(now or datetime.now(UTC))
    buildings = building_data_quality(shadow_info)
    geometry = geometry_quality(patio, shadow_info)
    cloud = cloud_certainty(weather, now)
    geometry_missing = shadow_info.low_sun_estimate or shadow_info.coverage.degraded

    raw = geometry * GEOMETRY_WEIGHT + cloud * CLOUD_WEIGHT
    overall, estimated = apply_caps(raw, weather, geometry_missing, buildings)

    factors = ConfidenceFactors(
        geometry_quality=geometry,
        cloud_certainty=cloud,
        building_data_quality=buildings,
        geometry_precision=_clamp(patio.polygon_quality),
        solar_accuracy=solar_accuracy(solar_position),
        shadow_accuracy=shadow_accuracy(shadow_info, solar_position),
        overall=overall,
        category=Confidence.from_score(overall),
        is_estimated=estimated,
    )
    issues = _quality_issues(factors, shadow_info, solar_position, weather, patio_area_m2, now)
    improvements = _improvements(factors, shadow_info, weather, now)
    return replace(factors, quality_issues=issues, improvements=improvements)


def no_sun_confidence_factors(patio: Patio, solar_position: SolarPosition) -> ConfidenceFactors:
    """Sun below the horizon: certain there is no direct sun."""
    return ConfidenceFactors(
        geometry_quality=1.0,
        cloud_certainty=1.0,
        building_data_quality=1.0,
        geometry_precision=_clamp(patio.polygon_quality),
        solar_accuracy=solar_accuracy(solar_position),
        shadow_accuracy=1.0,
        overall=1.0,
        category=Confidence.HIGH,
        quality_issues=("Sun below horizon - no direct sunlight",),
    )


def display_confidence(score: float) -> float:
    return round(_clamp(score) * 100.0, 1)


def has_sufficient_confidence(score: float) -> bool:
    return score >= SUFFICIENT_CONFIDENCE


def _quality_issues(
    factors: ConfidenceFactors,
    shadow_info: PatioShadowInfo,
    solar_position: SolarPosition,
    weather: ProcessedWeather | None,
    patio_area_m2: float | None,
    now: datetime,
) -> tuple[str, ...]:
    issues = []
    if factors.building_data_quality < 0.7:
        issues.append("Building height data has low reliability")
    if factors.geometry_precision < 0.7:
        issues.append("Patio polygon has low quality score")
    if 0 < solar_position.elevation < 10.0:
        issues.append("Sun at low angle - shadow calculations less reliable")
    if solar_position.elevation <= 0:
        issues.append("Sun below horizon - no direct sunlight")
    if len(shadow_info.shadows) > 5:
        issues.append("Complex shadow environment with many buildings")
    if shadow_info.coverage.degraded and not shadow_info.low_sun_estimate:
        issues.append("Degenerate geometry - coverage is an estimate")
    if patio_area_m2 is not None and patio_area_m2 < 10.0:
        issues.append("Very small patio - geometric precision more critical")
    if factors.overall < 0.40:
        issues.append("Multiple data quality factors reduce overall confidence")

    if weather is None:
        issues.append("No weather data available - confidence capped at 60%")
    else:
        age_hours = weather_age(weather, now).total_seconds() / 3600.0
        if age_hours > 2:
            issues.append(f"Weather data is {age_hours:.1f} hours old - reduced confidence")
        if weather.is_forecast:
            issues.append("Using forecast data - confidence capped at 90%")
    return tuple(issues)


def _improvements(
    factors: ConfidenceFactors,
    shadow_info: PatioShadowInfo,
    weather: ProcessedWeather | None,
    now: datetime,
) -> tuple[str, ...]:
    improvements = []
    if factors.building_data_quality < 0.7:
        improvements.append("Survey building heights for more accurate shadow calculations")
        improvements.append("Verify building data with local planning authorities")
    if factors.geometry_precision < 0.7:
        improvements.append("Refine patio boundary with higher precision GPS data")
        improvements.append("Use satellite imagery to improve patio polygon accuracy")
    if any(s.confidence < 0.7 for s in shadow_info.shadows):
        improvements.append("Update building height data for nearby structures")
    if factors.overall < 0.70:
        improvements.append("Consider multiple data sources for validation")
        improvements.append("Use time-averaged calculations to improve reliability")

    if weather is None:
        improvements.append("Integrate weather data for higher confidence scores")
    elif weather_age(weather, now) > timedelta(hours=1):
        improvements.append("Refresh weather data for improved confidence")

    if not improvements:
        improvements.append("Data quality is good - confidence level is appropriate")
    return tuple(improvements)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
