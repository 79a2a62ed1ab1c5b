"""Met.no locationforecast adapter with disk cache and fresh/stale metadata.

This is the ingestion side: it turns provider payloads into WeatherSlice
values that are handed to the engine. The engine itself never calls it.
"""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from city_config import get_city_config
from weather import WeatherSlice

logger = logging.getLogger(__name__)

UTC = timezone.utc
CACHE_ROOT = pathlib.Path(".cache/sunseat_v1/weather")
FRESH_TTL_HOURS = 2.0
STALE_TTL_HOURS = 12.0
# Samples more than this far after "now" are forecasts, the rest observations.
NOWCAST_WINDOW = timedelta(minutes=30)
RAIN_PROBABILITY_WHEN_WET = 0.5

MET_NO_URL = "https://api.met.no/weatherapi/locationforecast/2.0/compact"
MET_NO_SOURCE = "met.no"


def make_session() -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": "SunSeat/1.0 (precompute)"})
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


@dataclass
class WeatherFetchResult:
    provider_used: str
    data_status: str  # fresh | stale
    freshness_hours: float
    fetched_at: datetime
    slices: list[WeatherSlice]


def fetch_city_weather(city_id: str, now: datetime | None = None) -> WeatherFetchResult:
    city = get_city_config(city_id)
    lat, lon = city.center
    return fetch_met_no_slices(lat, lon, now=now)


def fetch_met_no_slices(
    lat: float,
    lon: float,
    now: datetime | None = None,
    session: requests.Session | None = None,
) -> WeatherFetchResult:
    now = _ensure_utc(now or datetime.now(UTC))
    cache_key = f"met_no-{lat:.3f}-{lon:.3f}"
    cached = _load_cache(cache_key, now)
    if cached and cached["age_hours"] <= FRESH_TTL_HOURS:
        return _as_result(cached["payload"], cached["fetched_at"], "fresh", cached["age_hours"], lat, lon, now)

    http = session or make_session()
    try:
        response = http.get(
            MET_NO_URL,
            params={"lat": f"{lat:.4f}", "lon": f"{lon:.4f}"},
            timeout=20,
        )
        response.raise_for_status()
        payload = response.json()
        parse_met_no_payload(payload, now, location=(lon, lat))
        _save_cache(cache_key, now, payload)
        return _as_result(payload, now, "fresh", 0.0, lat, lon, now)
    except (requests.RequestException, ValueError) as exc:
        if cached and cached["age_hours"] <= STALE_TTL_HOURS:
            logger.warning("Met.no fetch failed, serving stale cache (%.1fh old): %s", cached["age_hours"], exc)
            return _as_result(cached["payload"], cached["fetched_at"], "stale", cached["age_hours"], lat, lon, now)
        raise


def parse_met_no_payload(
    payload: dict,
    now: datetime,
    location: tuple[float, float] | None = None,
) -> list[WeatherSlice]:
    """Convert a locationforecast/2.0 payload into time-ordered WeatherSlice values."""
    now = _ensure_utc(now)
    slices: list[WeatherSlice] = []
    timeseries = payload.get("properties", {}).get("timeseries", [])
    for point in timeseries if isinstance(timeseries, list) else []:
        dt = _parse_iso(point.get("time"))
        if dt is None:
            continue
        data = point.get("data", {})
        details = data.get("instant", {}).get("details", {})
        cloud = details.get("cloud_area_fraction")
        if cloud is None:
            continue

        precipitation = (
            data.get("next_1_hours", {})
            .get("details", {})
            .get("precipitation_amount")
        )
        fog = details.get("fog_area_fraction")
        slices.append(
            WeatherSlice(
                timestamp=dt,
                cloud_cover=max(0.0, min(100.0, float(cloud))),
                precipitation_probability=RAIN_PROBABILITY_WHEN_WET if precipitation and precipitation > 0 else 0.0,
                temperature=float(details.get("air_temperature", 0.0)),
                visibility_km=_visibility_from_fog(fog),
                is_forecast=dt > now + NOWCAST_WINDOW,
                source=MET_NO_SOURCE,
                created_at=now,
                location=location,
            )
        )

    if not slices:
        raise ValueError("MET payload did not include cloud_area_fraction values")
    slices.sort(key=lambda s: s.timestamp)
    return slices


def _visibility_from_fog(fog_fraction: float | None) -> float | None:
    # Met.no has no visibility field; dense fog stands in for poor visibility.
    if fog_fraction is None:
        return None
    if fog_fraction >= 50.0:
        return 1.0
    return None


def _as_result(
    payload: dict,
    fetched_at: datetime,
    data_status: str,
    freshness_hours: float,
    lat: float,
    lon: float,
    now: datetime,
) -> WeatherFetchResult:
    return WeatherFetchResult(
        provider_used="met_no",
        data_status=data_status,
        freshness_hours=freshness_hours,
        fetched_at=fetched_at,
        slices=parse_met_no_payload(payload, now, location=(lon, lat)),
    )


def _cache_file(key: str) -> pathlib.Path:
    CACHE_ROOT.mkdir(parents=True, exist_ok=True)
    return CACHE_ROOT / f"{key}.json"


def _save_cache(key: str, fetched_at: datetime, payload: dict) -> None:
    body = {
        "fetched_at": fetched_at.isoformat(),
        "payload": payload,
    }
    _cache_file(key).write_text(json.dumps(body), encoding="utf-8")


def _load_cache(key: str, now: datetime) -> dict | None:
    path = _cache_file(key)
    if not path.exists():
        return None
    try:
        body = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable weather cache %s: %s", path, exc)
        return None
    fetched_at = _parse_iso(body.get("fetched_at"))
    if fetched_at is None:
        return None
    age_hours = (now - fetched_at).total_seconds() / 3600.0
    if age_hours > STALE_TTL_HOURS:
        return None
    return {
        "fetched_at": fetched_at,
        "age_hours": age_hours,
        "payload": body.get("payload", {}),
    }


def _parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
