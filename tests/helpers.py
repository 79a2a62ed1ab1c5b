"""Shared fixtures: metric squares near Gothenburg and synthetic sun positions."""
from datetime import datetime, timezone

from shapely.geometry import Polygon, box

from shadow_engine import to_geographic
from solar_position import SolarPosition

EPSG = 32632
ORIGIN_X = 676000.0
ORIGIN_Y = 6400000.0


def metric_box(x0, y0, x1, y1):
    return box(ORIGIN_X + x0, ORIGIN_Y + y0, ORIGIN_X + x1, ORIGIN_Y + y1)


def lonlat_box(x0, y0, x1, y1):
    return to_geographic(metric_box(x0, y0, x1, y1), EPSG)


def sun(azimuth, elevation, ts=None):
    ts = ts or datetime(2025, 6, 21, 12, tzinfo=timezone.utc)
    return SolarPosition(
        azimuth=azimuth,
        elevation=elevation,
        declination=23.44,
        hour_angle=0.0,
        earth_sun_distance_au=1.016,
        timestamp_utc=ts,
        local_time=ts,
        latitude=57.7,
        longitude=11.97,
    )


def metric_bowtie():
    """Self-intersecting 10 m ring: two 25 m2 triangles meeting at (5, 5)."""
    return Polygon([
        (ORIGIN_X, ORIGIN_Y),
        (ORIGIN_X + 10, ORIGIN_Y + 10),
        (ORIGIN_X + 10, ORIGIN_Y),
        (ORIGIN_X, ORIGIN_Y + 10),
    ])
