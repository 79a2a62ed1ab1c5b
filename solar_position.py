"""Low-order NREL/NOAA solar position series and derived sun times."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from city_config import LocalTimeProvider

logger = logging.getLogger(__name__)

UTC = timezone.utc
J2000_JULIAN_DAY = 2451545.0
DAYS_PER_JULIAN_CENTURY = 36525.0
GREGORIAN_REFORM = date(1582, 10, 15)

STANDARD_PRESSURE_HPA = 1013.25
STANDARD_TEMPERATURE_C = 15.0
# Apparent sunrise/sunset: refraction plus the solar semi-diameter.
SUNRISE_SUNSET_ELEVATION = -0.833

MAX_TIMELINE_POINTS = 10_000
NOON_SEARCH_HALF_WIDTH = timedelta(hours=3)
NOON_SLOPE_STEP = timedelta(minutes=5)
NOON_TOLERANCE = timedelta(seconds=1)
CROSSING_TOLERANCE = timedelta(seconds=10)


@dataclass(frozen=True)
class SolarPosition:
    """Sun position for one instant and location. Angles are degrees."""

    azimuth: float
    elevation: float
    declination: float
    hour_angle: float
    earth_sun_distance_au: float
    timestamp_utc: datetime
    local_time: datetime
    latitude: float
    longitude: float

    @property
    def zenith(self) -> float:
        return 90.0 - self.elevation

    @property
    def is_sun_visible(self) -> bool:
        return self.elevation > 0.0


@dataclass(frozen=True)
class SunTimes:
    date: date
    latitude: float
    longitude: float
    solar_noon_utc: datetime
    solar_noon_local: datetime
    max_elevation: float
    sunrise_utc: datetime | None
    sunset_utc: datetime | None
    sunrise_local: datetime | None
    sunset_local: datetime | None
    is_polar_day: bool
    is_polar_night: bool

    @property
    def day_length(self) -> timedelta:
        if self.is_polar_day:
            return timedelta(hours=24)
        if self.sunrise_utc is None or self.sunset_utc is None:
            return timedelta(0)
        return self.sunset_utc - self.sunrise_utc


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize_degrees(angle: float) -> float:
    return angle % 360.0


def _normalize_symmetric(angle: float) -> float:
    """Map an angle onto [-180, 180]."""
    wrapped = (angle + 180.0) % 360.0 - 180.0
    if wrapped == -180.0 and angle > 0:
        return 180.0
    return wrapped


def julian_day(dt: datetime) -> float:
    """Julian Day of a UTC instant; Gregorian correction only from 1582-10-15 on."""
    dt = _to_utc(dt)
    year, month = dt.year, dt.month
    day_fraction = (
        dt.hour + (dt.minute + (dt.second + dt.microsecond / 1e6) / 60.0) / 60.0
    ) / 24.0
    if month <= 2:
        year -= 1
        month += 12

    correction = 0
    if dt.date() >= GREGORIAN_REFORM:
        century = year // 100
        correction = 2 - century + century // 4

    return (
        math.floor(365.25 * (year + 4716))
        + math.floor(30.6001 * (month + 1))
        + dt.day
        + day_fraction
        + correction
        - 1524.5
    )


def julian_century(jd: float) -> float:
    return (jd - J2000_JULIAN_DAY) / DAYS_PER_JULIAN_CENTURY


def _equation_of_time(
    obliquity_deg: float,
    mean_longitude_deg: float,
    eccentricity: float,
    mean_anomaly_deg: float,
) -> float:
    """Equation of time in minutes."""
    y = math.tan(math.radians(obliquity_deg) / 2.0) ** 2
    l0 = math.radians(mean_longitude_deg)
    m = math.radians(mean_anomaly_deg)
    e = eccentricity
    value = (
        y * math.sin(2.0 * l0)
        - 2.0 * e * math.sin(m)
        + 4.0 * e * y * math.sin(m) * math.cos(2.0 * l0)
        - 0.5 * y * y * math.sin(4.0 * l0)
        - 1.25 * e * e * math.sin(2.0 * m)
    )
    return 4.0 * math.degrees(value)


def refraction_correction(
    elevation_deg: float,
    pressure_hpa: float = STANDARD_PRESSURE_HPA,
    temperature_c: float = STANDARD_TEMPERATURE_C,
) -> float:
    """Bennett-style refraction in degrees; zero below -0.5 degrees."""
    if elevation_deg <= -0.5:
        return 0.0
    factor = (pressure_hpa / 1010.0) * (283.0 / (273.0 + temperature_c))
    if elevation_deg <= 0.5:
        return factor * 34.0 / 60.0
    arcminutes = 1.02 / math.tan(math.radians(elevation_deg + 10.3 / (elevation_deg + 5.11)))
    return factor * arcminutes / 60.0


def compute_solar_position(
    timestamp: datetime,
    latitude: float,
    longitude: float,
    tz_provider: LocalTimeProvider | None = None,
) -> SolarPosition:
    """Return the apparent sun position for a UTC timestamp and WGS84 point."""
    ts = _to_utc(timestamp)
    tz_provider = tz_provider or LocalTimeProvider()
    t = julian_century(julian_day(ts))

    mean_longitude = _normalize_degrees(280.46646 + t * (36000.76983 + 0.0003032 * t))
    mean_anomaly = 357.52911 + t * (35999.05029 - 0.0001537 * t)
    eccentricity = 0.016708634 - t * (0.000042037 + 0.0000001267 * t)

    m = math.radians(mean_anomaly)
    center = (
        math.sin(m) * (1.914602 - t * (0.004817 + 0.000014 * t))
        + math.sin(2.0 * m) * (0.019993 - 0.000101 * t)
        + math.sin(3.0 * m) * 0.000289
    )
    true_longitude = _normalize_degrees(mean_longitude + center)
    true_anomaly = _normalize_degrees(mean_anomaly + center)

    omega = math.radians(125.04 - 1934.136 * t)
    apparent_longitude = true_longitude - 0.00569 - 0.00478 * math.sin(omega)

    obliquity_seconds = 21.448 - t * (46.8150 + t * (0.00059 - t * 0.001813))
    mean_obliquity = 23.0 + (26.0 + obliquity_seconds / 60.0) / 60.0
    obliquity = mean_obliquity + 0.00256 * math.cos(omega)

    declination = math.degrees(
        math.asin(math.sin(math.radians(obliquity)) * math.sin(math.radians(apparent_longitude)))
    )

    eot_minutes = _equation_of_time(obliquity, mean_longitude, eccentricity, mean_anomaly)
    utc_minutes = ts.hour * 60.0 + ts.minute + (ts.second + ts.microsecond / 1e6) / 60.0
    true_solar_minutes = utc_minutes + 4.0 * longitude + eot_minutes
    hour_angle = _normalize_symmetric(true_solar_minutes / 4.0 - 180.0)

    lat_r = math.radians(latitude)
    dec_r = math.radians(declination)
    ha_r = math.radians(hour_angle)

    sin_elevation = math.sin(lat_r) * math.sin(dec_r) + math.cos(lat_r) * math.cos(dec_r) * math.cos(ha_r)
    geometric_elevation = math.degrees(math.asin(max(-1.0, min(1.0, sin_elevation))))

    azimuth = _normalize_degrees(
        math.degrees(
            math.atan2(
                math.sin(ha_r),
                math.cos(ha_r) * math.sin(lat_r) - math.tan(dec_r) * math.cos(lat_r),
            )
        )
        + 180.0
    )

    elevation = geometric_elevation + refraction_correction(geometric_elevation)
    distance = 1.000001018 * (1.0 - eccentricity**2) / (
        1.0 + eccentricity * math.cos(math.radians(true_anomaly))
    )

    return SolarPosition(
        azimuth=azimuth,
        elevation=elevation,
        declination=declination,
        hour_angle=hour_angle,
        earth_sun_distance_au=distance,
        timestamp_utc=ts,
        local_time=tz_provider.to_local(ts),
        latitude=latitude,
        longitude=longitude,
    )


def is_sun_visible(timestamp: datetime, latitude: float, longitude: float) -> bool:
    return compute_solar_position(timestamp, latitude, longitude).is_sun_visible


def get_solar_timeline(
    start: datetime,
    end: datetime,
    interval: timedelta,
    latitude: float,
    longitude: float,
    tz_provider: LocalTimeProvider | None = None,
) -> list[SolarPosition]:
    """Sample positions from start to end inclusive."""
    start_utc = _to_utc(start)
    end_utc = _to_utc(end)
    if end_utc < start_utc:
        raise ValueError("end must not be before start")
    if interval <= timedelta(0) or interval > timedelta(days=1):
        raise ValueError("interval must be positive and at most one day")
    point_count = int((end_utc - start_utc) / interval) + 1
    if point_count > MAX_TIMELINE_POINTS:
        raise ValueError(f"timeline would have {point_count} points (max {MAX_TIMELINE_POINTS})")

    tz_provider = tz_provider or LocalTimeProvider()
    return [
        compute_solar_position(start_utc + i * interval, latitude, longitude, tz_provider)
        for i in range(point_count)
    ]


def _bisect_time(
    predicate: Callable[[datetime], bool],
    lo: datetime,
    hi: datetime,
    tolerance: timedelta,
) -> datetime:
    """Shrink [lo, hi] where predicate(lo) is False and predicate(hi) is True."""
    while hi - lo > tolerance:
        mid = lo + (hi - lo) / 2
        if predicate(mid):
            hi = mid
        else:
            lo = mid
    return lo + (hi - lo) / 2


def get_sun_times(
    day: date,
    latitude: float,
    longitude: float,
    tz_provider: LocalTimeProvider | None = None,
) -> SunTimes:
    """Sunrise, sunset and solar noon for a UTC calendar date."""
    tz_provider = tz_provider or LocalTimeProvider()

    def elevation_at(dt: datetime) -> float:
        return compute_solar_position(dt, latitude, longitude, tz_provider).elevation

    midday = datetime.combine(day, time(12, 0), tzinfo=UTC)
    noon_guess = midday - timedelta(hours=longitude / 15.0)

    def past_noon(dt: datetime) -> bool:
        return elevation_at(dt + NOON_SLOPE_STEP) < elevation_at(dt - NOON_SLOPE_STEP)

    solar_noon = _bisect_time(
        past_noon,
        noon_guess - NOON_SEARCH_HALF_WIDTH,
        noon_guess + NOON_SEARCH_HALF_WIDTH,
        NOON_TOLERANCE,
    )
    max_elevation = elevation_at(solar_noon)

    is_polar_night = max_elevation < SUNRISE_SUNSET_ELEVATION
    morning = solar_noon - timedelta(hours=12)
    evening = solar_noon + timedelta(hours=12)
    is_polar_day = (
        not is_polar_night
        and elevation_at(morning) > SUNRISE_SUNSET_ELEVATION
        and elevation_at(evening) > SUNRISE_SUNSET_ELEVATION
    )

    sunrise = sunset = None
    if not is_polar_night:
        if elevation_at(morning) <= SUNRISE_SUNSET_ELEVATION:
            sunrise = _bisect_time(
                lambda dt: elevation_at(dt) > SUNRISE_SUNSET_ELEVATION,
                morning,
                solar_noon,
                CROSSING_TOLERANCE,
            )
        if elevation_at(evening) <= SUNRISE_SUNSET_ELEVATION:
            sunset = _bisect_time(
                lambda dt: elevation_at(dt) <= SUNRISE_SUNSET_ELEVATION,
                solar_noon,
                evening,
                CROSSING_TOLERANCE,
            )

    logger.debug(
        "Sun times %s at (%.4f, %.4f): sunrise=%s noon=%s sunset=%s",
        day, latitude, longitude, sunrise, solar_noon, sunset,
    )
    return SunTimes(
        date=day,
        latitude=latitude,
        longitude=longitude,
        solar_noon_utc=solar_noon,
        solar_noon_local=tz_provider.to_local(solar_noon),
        max_elevation=max_elevation,
        sunrise_utc=sunrise,
        sunset_utc=sunset,
        sunrise_local=tz_provider.to_local(sunrise) if sunrise else None,
        sunset_local=tz_provider.to_local(sunset) if sunset else None,
        is_polar_day=is_polar_day,
        is_polar_night=is_polar_night,
    )
