"""Patio sun exposure: solar position + building shadows + weather confidence."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Mapping

from shapely.geometry.base import BaseGeometry

from city_config import LocalTimeProvider
from confidence import (
    Confidence,
    ConfidenceFactors,
    calculate_confidence_factors,
    display_confidence,
    no_sun_confidence_factors,
)
from shadow_engine import (
    Building,
    BuildingIndex,
    Patio,
    ShadowProjection,
    compute_patio_shadow_info,
    repair_polygonal,
    to_metric,
    utm_epsg_for,
)
from settings import EngineSettings
from solar_position import SolarPosition, compute_solar_position
from weather import ProcessedWeather

logger = logging.getLogger(__name__)

UTC = timezone.utc
SUNNY_THRESHOLD = 70.0
PARTIAL_THRESHOLD = 30.0
SOURCE_REALTIME = "realtime"


class SunExposureState(str, Enum):
    SUNNY = "sunny"
    PARTIAL = "partial"
    SHADED = "shaded"
    NO_SUN = "no_sun"


@dataclass(frozen=True)
class PatioSunExposure:
    patio_id: int
    timestamp: datetime
    local_time: datetime
    sun_exposure_percent: float
    state: SunExposureState
    confidence: float  # percent, 0-100
    confidence_category: Confidence
    sunlit_area_m2: float
    shaded_area_m2: float
    solar_position: SolarPosition
    factors: ConfidenceFactors
    shadows: tuple[ShadowProjection, ...] = ()
    weather: ProcessedWeather | None = None
    calculation_duration: timedelta = timedelta(0)
    source: str = SOURCE_REALTIME

    @property
    def is_estimated(self) -> bool:
        return self.factors.is_estimated


def classify_state(exposure_percent: float, sun_visible: bool = True) -> SunExposureState:
    if not sun_visible:
        return SunExposureState.NO_SUN
    if exposure_percent >= SUNNY_THRESHOLD:
        return SunExposureState.SUNNY
    if exposure_percent >= PARTIAL_THRESHOLD:
        return SunExposureState.PARTIAL
    return SunExposureState.SHADED


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _no_sun_exposure(
    patio: Patio,
    patio_area: float,
    solar_position: SolarPosition,
    weather: ProcessedWeather | None,
    started: float,
) -> PatioSunExposure:
    factors = no_sun_confidence_factors(patio, solar_position)
    return PatioSunExposure(
        patio_id=patio.patio_id,
        timestamp=solar_position.timestamp_utc,
        local_time=solar_position.local_time,
        sun_exposure_percent=0.0,
        state=SunExposureState.NO_SUN,
        confidence=display_confidence(factors.overall),
        confidence_category=factors.category,
        sunlit_area_m2=0.0,
        shaded_area_m2=patio_area,
        solar_position=solar_position,
        factors=factors,
        weather=weather,
        calculation_duration=timedelta(seconds=time.perf_counter() - started),
    )


def _exposure_from_geometry(
    patio: Patio,
    patio_metric: BaseGeometry,
    nearby: Iterable[tuple[Building, BaseGeometry]],
    solar_position: SolarPosition,
    weather: ProcessedWeather | None,
    epsg: int,
    now: datetime | None,
    started: float,
) -> PatioSunExposure:
    patio_area = float(repair_polygonal(patio_metric)[0].area)
    if not solar_position.is_sun_visible:
        return _no_sun_exposure(patio, patio_area, solar_position, weather, started)

    shadow_info = compute_patio_shadow_info(patio, patio_metric, nearby, solar_position, epsg)
    coverage = shadow_info.coverage
    exposure = max(0.0, min(100.0, 100.0 * coverage.sunlit_fraction))

    factors = calculate_confidence_factors(
        patio,
        shadow_info,
        solar_position,
        weather=weather,
        patio_area_m2=patio_area,
        now=now,
    )
    result = PatioSunExposure(
        patio_id=patio.patio_id,
        timestamp=solar_position.timestamp_utc,
        local_time=solar_position.local_time,
        sun_exposure_percent=exposure,
        state=classify_state(exposure),
        confidence=display_confidence(factors.overall),
        confidence_category=factors.category,
        sunlit_area_m2=coverage.sunlit_area_m2,
        shaded_area_m2=coverage.shadowed_area_m2,
        solar_position=solar_position,
        factors=factors,
        shadows=shadow_info.shadows,
        weather=weather,
        calculation_duration=timedelta(seconds=time.perf_counter() - started),
    )
    logger.debug(
        "Patio %s at %s: %.1f%% exposure (%s), %.1f%% confidence",
        patio.patio_id, result.timestamp.isoformat(), exposure, result.state.value, result.confidence,
    )
    return result


def compute_patio_sun_exposure(
    patio: Patio,
    buildings: Iterable[Building],
    timestamp: datetime,
    weather: ProcessedWeather | None = None,
    tz_provider: LocalTimeProvider | None = None,
    solar_position: SolarPosition | None = None,
    now: datetime | None = None,
) -> PatioSunExposure:
    """Sun exposure for one patio at one instant given its relevant buildings."""
    started = time.perf_counter()
    ts = _to_utc(timestamp)
    lon, lat = patio.centroid_lonlat
    if solar_position is None:
        solar_position = compute_solar_position(ts, lat, lon, tz_provider or LocalTimeProvider())

    epsg = utm_epsg_for(lon, lat)
    patio_metric = to_metric(patio.footprint, epsg)
    nearby = [(b, to_metric(b.footprint, epsg)) for b in buildings]
    return _exposure_from_geometry(patio, patio_metric, nearby, solar_position, weather, epsg, now, started)


class SunExposureCalculator:
    """
    Stateless-per-call exposure calculator bound to a building index.

    The index and time provider are read-only, so one instance can serve
    concurrent callers.
    """

    def __init__(
        self,
        building_index: BuildingIndex,
        tz_provider: LocalTimeProvider | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.building_index = building_index
        self.tz_provider = tz_provider or LocalTimeProvider(self.settings.timezone)

    def calculate(
        self,
        patio: Patio,
        timestamp: datetime,
        weather: ProcessedWeather | None = None,
        solar_position: SolarPosition | None = None,
        now: datetime | None = None,
    ) -> PatioSunExposure:
        started = time.perf_counter()
        ts = _to_utc(timestamp)
        if solar_position is None:
            lon, lat = patio.centroid_lonlat
            solar_position = compute_solar_position(ts, lat, lon, self.tz_provider)

        epsg = self.building_index.epsg
        patio_metric = to_metric(patio.footprint, epsg)
        nearby: list[tuple[Building, BaseGeometry]] = []
        if solar_position.is_sun_visible:
            radius = min(
                self.building_index.search_radius(solar_position.elevation),
                self.settings.building_search_radius_m,
            )
            nearby = self.building_index.query_nearby(patio_metric, radius)
        return _exposure_from_geometry(
            patio, patio_metric, nearby, solar_position, weather, epsg, now, started
        )

    def calculate_batch(
        self,
        patios: Iterable[Patio],
        timestamp: datetime,
        weather_by_patio: Mapping[int, ProcessedWeather] | None = None,
        now: datetime | None = None,
    ) -> dict[int, PatioSunExposure]:
        """Exposure for many patios at one instant; failures are logged and skipped."""
        weather_by_patio = weather_by_patio or {}
        results: dict[int, PatioSunExposure] = {}
        for patio in patios:
            try:
                results[patio.patio_id] = self.calculate(
                    patio, timestamp, weather=weather_by_patio.get(patio.patio_id), now=now
                )
            except Exception:
                logger.warning("Sun exposure failed for patio %s", patio.patio_id, exc_info=True)
        return results

    def current_exposure(
        self,
        patio: Patio,
        weather: ProcessedWeather | None = None,
        now: datetime | None = None,
    ) -> PatioSunExposure:
        now = _to_utc(now or datetime.now(UTC))
        return self.calculate(patio, now, weather=weather, now=now)
