"""Precompute patio sun exposure for one date and report integrity and metrics.

Intended for a nightly scheduler (cron / CI job) ahead of the target date.
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from datetime import date, datetime, timedelta, timezone

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from building_data import load_buildings, load_patios
from city_config import get_city_config
from precompute import PrecomputationEngine
from precompute_store import PrecomputationStore
from settings import load_settings
from shadow_engine import BuildingIndex, utm_epsg_for
from sun_exposure import SunExposureCalculator
from weather import process_weather_slice, select_weather_for_time
from weather_router import fetch_city_weather

logger = logging.getLogger("run_precomputation")


def _parse_date(value: str | None, city_id: str) -> date:
    if value:
        return date.fromisoformat(value)
    local_now = datetime.now(timezone.utc).astimezone(get_city_config(city_id).tz)
    return local_now.date() + timedelta(days=1)


def _write_json(path: pathlib.Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")


def _weather_lookup(city_id: str):
    result = fetch_city_weather(city_id)
    logger.info(
        "Weather from %s (%s, %.1fh old): %d slices",
        result.provider_used, result.data_status, result.freshness_hours, len(result.slices),
    )
    processed = [process_weather_slice(s, now=result.fetched_at) for s in result.slices]

    def lookup(patio, timestamp):
        return select_weather_for_time(processed, timestamp)

    return lookup


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--buildings", required=True, help="GeoJSON FeatureCollection of building footprints.")
    parser.add_argument("--patios", required=True, help="GeoJSON FeatureCollection of patio polygons.")
    parser.add_argument("--date", default=None, help="Target local date (YYYY-MM-DD). Default is tomorrow.")
    parser.add_argument("--city", default="gothenburg", help="City config key.")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL; overrides SUNSEAT_DATABASE_URL.")
    parser.add_argument("--with-weather", action="store_true", help="Fetch Met.no weather for confidence.")
    parser.add_argument("--output", default=None, help="Also write the report JSON to this path.")
    parser.add_argument(
        "--rerun", action="store_true", help="Recompute a date that already completed or was cancelled."
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = load_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    city = get_city_config(args.city)
    target_date = _parse_date(args.date, args.city)

    buildings = load_buildings(args.buildings)
    patios = load_patios(args.patios)
    lat, lon = city.center
    index = BuildingIndex(buildings, utm_epsg_for(lon, lat))
    calculator = SunExposureCalculator(index, city.time_provider(), settings)

    store = PrecomputationStore(settings.database_url)
    store.create_all()
    engine = PrecomputationEngine(
        store,
        calculator,
        patios,
        settings=settings,
        weather_lookup=_weather_lookup(args.city) if args.with_weather else None,
    )

    engine.schedule_date(target_date)
    if args.rerun:
        engine.reschedule(target_date)
    started = engine.run_precomputation(target_date)
    if not started:
        logger.warning("Another run holds %s; nothing done", target_date)

    integrity = engine.validate_integrity(target_date)
    metrics = engine.metrics(target_date)
    schedule = engine.status(target_date)
    report = {
        "date": target_date.isoformat(),
        "started": started,
        "status": schedule.status.value if schedule else None,
        "patios_processed": schedule.patios_processed if schedule else 0,
        "patios_total": schedule.patios_total if schedule else 0,
        "expected_points": integrity.expected_points,
        "actual_points": integrity.actual_points,
        "is_valid": integrity.is_valid,
        "error_rate": metrics.error_rate if metrics else None,
        "average_calculation_ms": (
            metrics.average_calculation_time.total_seconds() * 1000.0 if metrics else None
        ),
    }
    print(json.dumps(report, indent=2))
    if args.output:
        _write_json(pathlib.Path(args.output), report)
    return 0 if started and integrity.is_valid else 1


if __name__ == "__main__":
    sys.exit(main())
