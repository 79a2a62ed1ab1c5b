"""Load buildings and patios from GeoJSON feature collections."""

from __future__ import annotations

import json
import logging
import pathlib

from shapely.geometry import shape
from shapely.validation import make_valid

from shadow_engine import (
    MAX_BUILDING_HEIGHT,
    Building,
    HeightSource,
    Patio,
    heuristic_height,
    to_metric,
    utm_epsg_for,
    validate_height_override,
)

logger = logging.getLogger(__name__)

METERS_PER_LEVEL = 3.0


def _as_float(value) -> float | None:
    if value is None:
        return None
    try:
        return float(str(value).strip().rstrip("m").strip())
    except ValueError:
        return None


def resolve_height(properties: dict, footprint_area_m2: float) -> tuple[float, HeightSource]:
    """Explicit height tag, then levels x 3 m, then the footprint heuristic."""
    height = _as_float(properties.get("height"))
    if height and height > 0:
        return min(height, MAX_BUILDING_HEIGHT), HeightSource.SURVEYED

    levels = _as_float(properties.get("building:levels"))
    if levels and levels > 0:
        return min(levels * METERS_PER_LEVEL, MAX_BUILDING_HEIGHT), HeightSource.OSM

    return heuristic_height(footprint_area_m2), HeightSource.HEURISTIC


def _polygonal(geom_json: dict | None):
    if not geom_json:
        return None
    geom = shape(geom_json)
    if geom.is_empty:
        return None
    if not geom.is_valid:
        geom = make_valid(geom)
        if geom.is_empty:
            return None
    if geom.geom_type not in ("Polygon", "MultiPolygon"):
        return None
    return geom


def _read_features(path: pathlib.Path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    features = raw.get("features", [])
    return features if isinstance(features, list) else []


def buildings_from_features(features: list[dict]) -> list[Building]:
    buildings = []
    skipped = 0
    for idx, feature in enumerate(features, start=1):
        geom = _polygonal(feature.get("geometry"))
        if geom is None:
            skipped += 1
            continue
        props = feature.get("properties") or {}
        centroid = geom.centroid
        area = to_metric(geom, utm_epsg_for(centroid.x, centroid.y)).area
        height_m, source = resolve_height(props, area)

        admin_height = _as_float(props.get("admin_height"))
        if admin_height is not None:
            admin_height = validate_height_override(admin_height)

        buildings.append(
            Building(
                building_id=int(props.get("id") or props.get("osm_id") or idx),
                footprint=geom,
                height_m=height_m,
                height_source=source,
                quality_score=float(props.get("quality_score", 0.5)),
                admin_height_m=admin_height,
            )
        )
    logger.info("Loaded %d buildings (%d non-polygon features skipped)", len(buildings), skipped)
    return buildings


def patios_from_features(features: list[dict]) -> list[Patio]:
    patios = []
    skipped = 0
    for idx, feature in enumerate(features, start=1):
        geom = _polygonal(feature.get("geometry"))
        if geom is None:
            skipped += 1
            continue
        props = feature.get("properties") or {}
        override = _as_float(props.get("height_override_m"))
        patios.append(
            Patio(
                patio_id=int(props.get("id") or idx),
                footprint=geom,
                height_override_m=validate_height_override(override) if override else None,
                polygon_quality=float(props.get("polygon_quality", 0.5)),
            )
        )
    logger.info("Loaded %d patios (%d non-polygon features skipped)", len(patios), skipped)
    return patios


def load_buildings(path: str | pathlib.Path) -> list[Building]:
    return buildings_from_features(_read_features(pathlib.Path(path)))


def load_patios(path: str | pathlib.Path) -> list[Patio]:
    return patios_from_features(_read_features(pathlib.Path(path)))
