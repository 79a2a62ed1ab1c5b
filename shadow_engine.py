"""2.5D shadow projection and patio coverage for SunSeat."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from typing import Iterable

import numpy as np
import pyproj
from shapely import make_valid
from shapely.errors import GEOSException
from shapely.geometry import MultiPoint, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform, unary_union
from shapely.strtree import STRtree

from solar_position import SolarPosition

logger = logging.getLogger(__name__)

# Hard cap on shadow length; bounds geometry at low sun angles.
MAX_SHADOW_DISTANCE = 200.0  # meters
# Below this elevation shadows are excluded rather than computed.
MIN_RELIABLE_ELEVATION = 5.0  # degrees
MIN_MEANINGFUL_HEIGHT = 3.0  # meters
DEFAULT_BUILDING_HEIGHT = 10.0  # meters
MAX_BUILDING_HEIGHT = 200.0  # meters

# Sun above the horizon but below MIN_RELIABLE_ELEVATION: assume mostly shaded.
LOW_SUN_SHADED_FRACTION = 0.75
LOW_SUN_CONFIDENCE = 0.3


class HeightSource(str, Enum):
    SURVEYED = "surveyed"
    OSM = "osm"
    HEURISTIC = "heuristic"
    ADMIN_OVERRIDE = "admin_override"


HEIGHT_SOURCE_TRUST = {
    HeightSource.SURVEYED: 1.0,
    HeightSource.OSM: 0.85,
    HeightSource.HEURISTIC: 0.7,
}
DEFAULT_HEIGHT_TRUST = 0.6


@dataclass(frozen=True)
class Building:
    """Building footprint (WGS84 lon/lat) and height used for shadow casting."""

    building_id: int
    footprint: Polygon | MultiPolygon
    height_m: float = DEFAULT_BUILDING_HEIGHT
    height_source: HeightSource = HeightSource.HEURISTIC
    quality_score: float = 0.5
    admin_height_m: float | None = None


@dataclass(frozen=True)
class Patio:
    """Outdoor seating polygon (WGS84 lon/lat)."""

    patio_id: int
    footprint: Polygon | MultiPolygon
    height_override_m: float | None = None
    height_source: HeightSource = HeightSource.HEURISTIC
    polygon_quality: float = 0.5

    @property
    def centroid_lonlat(self) -> tuple[float, float]:
        c = self.footprint.centroid
        return c.x, c.y


@dataclass(frozen=True)
class ShadowProjection:
    """Shadow polygon in the metric CRS named by `epsg`."""

    polygon: Polygon | MultiPolygon
    length_m: float
    direction_deg: float
    building_id: int
    building_height_m: float
    solar_position: SolarPosition
    confidence: float
    epsg: int


@dataclass(frozen=True)
class ShadowCoverage:
    shadowed_area_m2: float
    sunlit_area_m2: float
    shadowed_geometry: BaseGeometry | None = None
    sunlit_geometry: BaseGeometry | None = None
    degraded: bool = False

    @property
    def total_area_m2(self) -> float:
        return self.shadowed_area_m2 + self.sunlit_area_m2

    @property
    def sunlit_fraction(self) -> float:
        total = self.total_area_m2
        return self.sunlit_area_m2 / total if total > 0 else 0.0


@dataclass(frozen=True)
class PatioShadowInfo:
    patio_id: int
    coverage: ShadowCoverage
    shadows: tuple[ShadowProjection, ...] = field(default_factory=tuple)
    confidence: float = 1.0
    low_sun_estimate: bool = False


# ---------- CRS helpers ----------


def utm_epsg_for(lon: float, lat: float) -> int:
    zone = int((lon + 180.0) // 6.0) % 60 + 1
    return (32600 if lat >= 0 else 32700) + zone


@lru_cache(maxsize=32)
def _transformer(epsg: int, inverse: bool = False) -> pyproj.Transformer:
    if inverse:
        return pyproj.Transformer.from_crs(f"EPSG:{epsg}", "EPSG:4326", always_xy=True)
    return pyproj.Transformer.from_crs("EPSG:4326", f"EPSG:{epsg}", always_xy=True)


def to_metric(geom: BaseGeometry, epsg: int) -> BaseGeometry:
    return transform(_transformer(epsg).transform, geom)


def to_geographic(geom: BaseGeometry, epsg: int) -> BaseGeometry:
    return transform(_transformer(epsg, inverse=True).transform, geom)


# ---------- Building heights ----------


def height_trust(source: HeightSource) -> float:
    return HEIGHT_SOURCE_TRUST.get(source, DEFAULT_HEIGHT_TRUST)


def effective_height(building: Building) -> float:
    if building.admin_height_m is not None and building.admin_height_m > 0:
        return building.admin_height_m
    if building.height_m > 0:
        return building.height_m
    return DEFAULT_BUILDING_HEIGHT


def effective_source(building: Building) -> HeightSource:
    if building.admin_height_m is not None and building.admin_height_m > 0:
        return HeightSource.ADMIN_OVERRIDE
    return building.height_source


def can_cast_meaningful_shadow(building: Building) -> bool:
    return effective_height(building) >= MIN_MEANINGFUL_HEIGHT


def validate_height_override(height_m: float) -> float:
    if not (0.0 < height_m <= MAX_BUILDING_HEIGHT):
        raise ValueError(f"Height override must be in (0, {MAX_BUILDING_HEIGHT:.0f}] meters, got {height_m}")
    return float(height_m)


def heuristic_height(footprint_area_m2: float) -> float:
    """
    Estimate a height from footprint area: larger footprints tend to be
    taller blocks. Floors * 3 m plus a small area-dependent offset.
    """
    area = max(0.0, float(footprint_area_m2))
    if area < 100:
        floors = 1
    elif area < 300:
        floors = 2
    elif area < 600:
        floors = 3
    elif area < 1200:
        floors = 4
    elif area < 2400:
        floors = 5
    else:
        floors = 6
    height = floors * 3.0 + 0.5 * (area % 100.0) / 100.0
    return max(MIN_MEANINGFUL_HEIGHT, min(30.0, height))


# ---------- Projection ----------


def shadow_length(height_m: float, sun_elevation_deg: float) -> float:
    """height / tan(elevation), clamped to MAX_SHADOW_DISTANCE; 0 with the sun down."""
    if sun_elevation_deg <= 0 or height_m <= 0:
        return 0.0
    return min(MAX_SHADOW_DISTANCE, height_m / math.tan(math.radians(sun_elevation_deg)))


def shadow_direction(sun_azimuth_deg: float) -> float:
    return (sun_azimuth_deg + 180.0) % 360.0


def _azimuth_to_vector(azimuth_deg: float, length: float) -> tuple[float, float]:
    """Convert north-clockwise azimuth to x/y offsets in meters (east/north)."""
    radians = math.radians(azimuth_deg)
    dx = math.sin(radians) * length
    dy = math.cos(radians) * length
    return dx, dy


def _iter_polygons(geom: BaseGeometry) -> list[Polygon]:
    if isinstance(geom, Polygon):
        if geom.is_empty:
            return []
        return [geom]
    if isinstance(geom, MultiPolygon):
        return [poly for poly in geom.geoms if not poly.is_empty]
    if hasattr(geom, "geoms"):
        return [poly for g in geom.geoms for poly in _iter_polygons(g)]
    return []


def _hull_for_polygon(poly: Polygon, dx: float, dy: float) -> Polygon | None:
    """Convex hull of the footprint vertices and the same vertices shifted by (dx, dy)."""
    if not poly.is_valid:
        candidates = _iter_polygons(make_valid(poly))
        if not candidates:
            return None
        poly = max(candidates, key=lambda p: p.area)

    coords = list(poly.exterior.coords)
    points = coords + [(x + dx, y + dy) for x, y, *_ in coords]
    hull = MultiPoint(points).convex_hull
    if hull.is_empty or hull.geom_type != "Polygon":
        return None
    return hull


def project_shadow(
    footprint_metric: BaseGeometry,
    height_m: float,
    sun_azimuth_deg: float,
    sun_elevation_deg: float,
) -> Polygon | MultiPolygon | None:
    """Return a shadow polygon for a metric footprint, or None if no shadow is cast."""
    if sun_elevation_deg <= 0 or sun_elevation_deg < MIN_RELIABLE_ELEVATION or height_m <= 0:
        return None

    length = shadow_length(height_m, sun_elevation_deg)
    if length <= 0:
        return None
    dx, dy = _azimuth_to_vector(shadow_direction(sun_azimuth_deg), length)

    pieces = []
    for poly in _iter_polygons(footprint_metric):
        hull = _hull_for_polygon(poly, dx, dy)
        if hull is not None:
            pieces.append(hull)

    if not pieces:
        return None
    if len(pieces) == 1:
        return pieces[0]
    try:
        return unary_union(pieces)
    except GEOSException:
        logger.warning("Union of shadow pieces failed; using largest piece")
        return max(pieces, key=lambda p: p.area)


def shadow_confidence(source: HeightSource, sun_elevation_deg: float, length_m: float) -> float:
    confidence = 1.0
    if sun_elevation_deg < 10.0:
        confidence *= 0.7
    elif sun_elevation_deg < 20.0:
        confidence *= 0.9

    if length_m > 100.0:
        confidence *= 0.8
    elif length_m > 50.0:
        confidence *= 0.9

    confidence *= height_trust(source)
    return max(0.0, min(1.0, confidence))


def project_building_shadow(
    building: Building,
    solar_position: SolarPosition,
    epsg: int | None = None,
    footprint_metric: BaseGeometry | None = None,
    base_height_m: float = 0.0,
) -> ShadowProjection | None:
    """
    Shadow of one building for a sun position. `base_height_m` lifts the
    receiving surface, e.g. a raised terrace, shortening the casting height.
    """
    if not can_cast_meaningful_shadow(building):
        return None

    height = effective_height(building) - max(0.0, base_height_m)
    if height <= 0:
        return None

    if epsg is None:
        c = building.footprint.centroid
        epsg = utm_epsg_for(c.x, c.y)
    if footprint_metric is None:
        footprint_metric = to_metric(building.footprint, epsg)

    polygon = project_shadow(footprint_metric, height, solar_position.azimuth, solar_position.elevation)
    if polygon is None:
        return None

    length = shadow_length(height, solar_position.elevation)
    return ShadowProjection(
        polygon=polygon,
        length_m=length,
        direction_deg=shadow_direction(solar_position.azimuth),
        building_id=building.building_id,
        building_height_m=height,
        solar_position=solar_position,
        confidence=shadow_confidence(effective_source(building), solar_position.elevation, length),
        epsg=epsg,
    )


def shadow_affects_patio(shadow: ShadowProjection, patio_metric: BaseGeometry) -> bool:
    """May raise GEOSException; callers decide how to degrade."""
    return shadow.polygon.intersects(patio_metric)


def repair_polygonal(geom: BaseGeometry) -> tuple[BaseGeometry, bool]:
    """
    Return (polygonal geometry, repaired). Invalid input such as a
    self-intersecting ring goes through make_valid and keeps only its
    polygon parts, so areas and intersections stay meaningful.
    """
    if geom.is_valid:
        return geom, False
    try:
        fixed = make_valid(geom)
    except GEOSException as exc:
        logger.warning("Geometry repair failed: %s", exc)
        return geom, True
    parts = _iter_polygons(fixed)
    if not parts:
        return fixed, True
    if len(parts) == 1:
        return parts[0], True
    return MultiPolygon(parts), True


def compute_coverage(
    target_metric: BaseGeometry,
    shadow_polygons: Iterable[BaseGeometry],
) -> ShadowCoverage:
    """
    Split a metric target polygon into shadowed and sunlit parts.

    An invalid target is repaired first and the result flagged `degraded`.
    GEOS failures never raise: the target is reported fully sunlit with
    `degraded=True`.
    """
    target, repaired = repair_polygonal(target_metric)
    total_area = float(target.area)
    shadows = [s for s in shadow_polygons if s is not None and not s.is_empty]
    if not shadows:
        return ShadowCoverage(0.0, total_area, None, target, degraded=repaired)

    try:
        combined = unary_union([s if s.is_valid else make_valid(s) for s in shadows])
        shadowed = target.intersection(combined)
        sunlit = target.difference(combined)
    except GEOSException as exc:
        logger.warning("Shadow coverage failed, treating target as sunlit: %s", exc)
        return ShadowCoverage(0.0, total_area, None, target, degraded=True)

    if not shadowed.is_valid or not sunlit.is_valid:
        logger.warning("Invalid coverage geometry, treating target as sunlit")
        return ShadowCoverage(0.0, total_area, None, target, degraded=True)

    shadowed_area = min(total_area, float(shadowed.area))
    sunlit_area = max(0.0, total_area - shadowed_area)
    return ShadowCoverage(
        shadowed_area_m2=shadowed_area,
        sunlit_area_m2=sunlit_area,
        shadowed_geometry=None if shadowed.is_empty else shadowed,
        sunlit_geometry=None if sunlit.is_empty else sunlit,
        degraded=repaired,
    )


# ---------- Spatial index ----------


class BuildingIndex:
    """
    STRtree over metric building footprints. Build once per building set and
    reuse for every request; read-only after construction.
    """

    def __init__(self, buildings: Iterable[Building], epsg: int) -> None:
        self.epsg = epsg
        self.buildings: list[Building] = []
        self.geometries: list[BaseGeometry] = []

        for building in buildings:
            geom = building.footprint
            if geom is None or geom.is_empty:
                continue
            if geom.geom_type not in ("Polygon", "MultiPolygon"):
                continue
            if not can_cast_meaningful_shadow(building):
                continue
            self.buildings.append(building)
            self.geometries.append(to_metric(geom, epsg))

        self._tree = STRtree(self.geometries) if self.geometries else None
        self._id_map = {id(g): idx for idx, g in enumerate(self.geometries)}
        self.max_height_m = max((effective_height(b) for b in self.buildings), default=DEFAULT_BUILDING_HEIGHT)
        logger.debug("Indexed %d buildings in EPSG:%d", len(self.buildings), epsg)

    def __len__(self) -> int:
        return len(self.buildings)

    def search_radius(self, sun_elevation_deg: float | None = None) -> float:
        if sun_elevation_deg is None or sun_elevation_deg <= 0:
            return MAX_SHADOW_DISTANCE
        return shadow_length(self.max_height_m, max(sun_elevation_deg, MIN_RELIABLE_ELEVATION))

    def _query_indices(self, search_area: BaseGeometry) -> list[int]:
        if self._tree is None:
            return []
        result = self._tree.query(search_area)
        if len(result) == 0:
            return []
        first = result[0]
        if isinstance(first, (int, np.integer)):
            return sorted(int(i) for i in result)
        return sorted(self._id_map[id(g)] for g in result if id(g) in self._id_map)

    def query_nearby(
        self,
        target_metric: BaseGeometry,
        radius_m: float = MAX_SHADOW_DISTANCE,
    ) -> list[tuple[Building, BaseGeometry]]:
        """Buildings whose footprint lies within radius_m of the metric target."""
        search_area = target_metric.buffer(radius_m + 1.0)
        return [(self.buildings[i], self.geometries[i]) for i in self._query_indices(search_area)]


def compute_patio_shadow_info(
    patio: Patio,
    patio_metric: BaseGeometry,
    nearby: Iterable[tuple[Building, BaseGeometry]],
    solar_position: SolarPosition,
    epsg: int,
) -> PatioShadowInfo:
    """Shadows of nearby buildings that touch the patio, and the resulting coverage."""
    patio_metric, repaired = repair_polygonal(patio_metric)
    if repaired:
        logger.warning("Patio %s has invalid geometry; using repaired polygon", patio.patio_id)
    total_area = float(patio_metric.area)
    if not solar_position.is_sun_visible:
        return PatioShadowInfo(
            patio_id=patio.patio_id,
            coverage=ShadowCoverage(total_area, 0.0, patio_metric, None, degraded=repaired),
            confidence=1.0,
        )

    if solar_position.elevation < MIN_RELIABLE_ELEVATION:
        shaded = total_area * LOW_SUN_SHADED_FRACTION
        return PatioShadowInfo(
            patio_id=patio.patio_id,
            coverage=ShadowCoverage(shaded, total_area - shaded, degraded=True),
            confidence=LOW_SUN_CONFIDENCE,
            low_sun_estimate=True,
        )

    base_height = patio.height_override_m or 0.0
    degraded = repaired
    affecting: list[ShadowProjection] = []
    for building, footprint_metric in nearby:
        try:
            shadow = project_building_shadow(
                building,
                solar_position,
                epsg=epsg,
                footprint_metric=footprint_metric,
                base_height_m=base_height,
            )
            if shadow is not None and shadow_affects_patio(shadow, patio_metric):
                affecting.append(shadow)
        except GEOSException as exc:
            logger.warning("Shadow for building %s failed: %s", building.building_id, exc)
            degraded = True

    coverage = compute_coverage(patio_metric, [s.polygon for s in affecting])
    if degraded and not coverage.degraded:
        coverage = replace(coverage, degraded=True)
    confidence = sum(s.confidence for s in affecting) / len(affecting) if affecting else 1.0
    logger.debug(
        "Patio %s: %d affecting shadows, %.1f%% sunlit",
        patio.patio_id, len(affecting), 100.0 * coverage.sunlit_fraction,
    )
    return PatioShadowInfo(
        patio_id=patio.patio_id,
        coverage=coverage,
        shadows=tuple(affecting),
        confidence=confidence,
    )
