import unittest
from unittest import mock

from shapely.errors import GEOSException

from shadow_engine import (
    MAX_SHADOW_DISTANCE,
    Building,
    BuildingIndex,
    HeightSource,
    Patio,
    compute_coverage,
    compute_patio_shadow_info,
    effective_height,
    height_trust,
    heuristic_height,
    project_building_shadow,
    project_shadow,
    repair_polygonal,
    shadow_confidence,
    shadow_length,
    to_geographic,
    to_metric,
    utm_epsg_for,
    validate_height_override,
)
from helpers import EPSG, lonlat_box, metric_bowtie, metric_box, sun


class ShadowGeometryTests(unittest.TestCase):
    def test_shadow_length_follows_height_over_tangent(self):
        self.assertAlmostEqual(shadow_length(10.0, 45.0), 10.0, places=6)
        self.assertGreater(shadow_length(10.0, 20.0), shadow_length(10.0, 40.0))
        self.assertEqual(shadow_length(10.0, 1.0), MAX_SHADOW_DISTANCE)
        self.assertEqual(shadow_length(10.0, 0.0), 0.0)

    def test_no_shadow_below_reliable_elevation(self):
        self.assertIsNone(project_shadow(metric_box(0, 0, 10, 10), 10.0, 180.0, 4.0))
        self.assertIsNone(project_shadow(metric_box(0, 0, 10, 10), 10.0, 180.0, -3.0))

    def test_southern_sun_casts_shadow_north(self):
        footprint = metric_box(0, 0, 10, 10)
        shadow = project_shadow(footprint, 10.0, 180.0, 45.0)
        minx, miny, maxx, maxy = shadow.bounds
        self.assertAlmostEqual(miny, footprint.bounds[1], places=6)
        self.assertAlmostEqual(maxy - footprint.bounds[3], 10.0, places=6)
        self.assertAlmostEqual(shadow.area, 200.0, places=3)

    def test_coverage_partitions_target(self):
        target = metric_box(0, 0, 10, 10)
        coverage = compute_coverage(target, [metric_box(0, 0, 10, 5)])
        self.assertAlmostEqual(coverage.shadowed_area_m2, 50.0, places=3)
        self.assertAlmostEqual(coverage.sunlit_area_m2, 50.0, places=3)
        self.assertAlmostEqual(coverage.total_area_m2, target.area, places=3)
        self.assertAlmostEqual(coverage.sunlit_fraction, 0.5, places=6)

    def test_coverage_without_overlap_is_fully_sunlit(self):
        coverage = compute_coverage(metric_box(0, 0, 10, 10), [metric_box(50, 50, 60, 60)])
        self.assertAlmostEqual(coverage.shadowed_area_m2, 0.0, places=6)
        self.assertAlmostEqual(coverage.sunlit_fraction, 1.0, places=6)

    def test_bowtie_target_is_repaired_before_partition(self):
        coverage = compute_coverage(metric_bowtie(), [metric_box(0, 0, 5, 10)])
        self.assertAlmostEqual(coverage.total_area_m2, 50.0, places=3)
        self.assertAlmostEqual(coverage.shadowed_area_m2, 25.0, places=3)
        self.assertAlmostEqual(coverage.sunlit_area_m2, 25.0, places=3)
        self.assertTrue(coverage.degraded)

    def test_valid_target_is_not_degraded(self):
        self.assertFalse(compute_coverage(metric_box(0, 0, 10, 10), [metric_box(0, 0, 10, 5)]).degraded)
        self.assertFalse(compute_coverage(metric_box(0, 0, 10, 10), []).degraded)

    def test_repair_keeps_polygon_parts(self):
        fixed, repaired = repair_polygonal(metric_bowtie())
        self.assertTrue(repaired)
        self.assertTrue(fixed.is_valid)
        self.assertEqual(fixed.geom_type, "MultiPolygon")
        self.assertAlmostEqual(fixed.area, 50.0, places=3)

        square = metric_box(0, 0, 10, 10)
        self.assertEqual(repair_polygonal(square), (square, False))


class BuildingHeightTests(unittest.TestCase):
    def test_validate_height_override(self):
        self.assertEqual(validate_height_override(12), 12.0)
        self.assertEqual(validate_height_override(200), 200.0)
        for bad in (0, -4, 200.5):
            with self.assertRaises(ValueError):
                validate_height_override(bad)

    def test_admin_height_wins(self):
        building = Building(1, lonlat_box(0, 0, 10, 10), height_m=9.0, admin_height_m=21.0)
        self.assertEqual(effective_height(building), 21.0)

    def test_heuristic_height_is_bounded(self):
        self.assertGreaterEqual(heuristic_height(10), 3.0)
        self.assertLessEqual(heuristic_height(1_000_000), 30.0)
        self.assertGreater(heuristic_height(2000), heuristic_height(50))


class PatioShadowTests(unittest.TestCase):
    def setUp(self):
        self.patio = Patio(7, lonlat_box(0, 0, 10, 10), polygon_quality=0.9)
        self.patio_metric = to_metric(self.patio.footprint, EPSG)
        self.tower = Building(
            1, lonlat_box(0, -30, 10, -10), height_m=30.0, height_source=HeightSource.SURVEYED
        )
        self.far = Building(2, lonlat_box(900, 900, 910, 910), height_m=30.0)

    def test_utm_zone_for_gothenburg(self):
        self.assertEqual(utm_epsg_for(11.97, 57.7), EPSG)

    def test_index_filters_by_radius(self):
        index = BuildingIndex([self.tower, self.far], EPSG)
        nearby = index.query_nearby(self.patio_metric, 200.0)
        self.assertEqual([b.building_id for b, _ in nearby], [1])

    def test_tower_south_of_patio_shades_it(self):
        index = BuildingIndex([self.tower], EPSG)
        info = compute_patio_shadow_info(
            self.patio, self.patio_metric, index.query_nearby(self.patio_metric), sun(180.0, 10.0), EPSG
        )
        self.assertEqual(len(info.shadows), 1)
        self.assertAlmostEqual(info.coverage.sunlit_fraction, 0.0, places=2)

    def test_raised_patio_shortens_casting_height(self):
        shadow = project_building_shadow(self.tower, sun(180.0, 45.0), epsg=EPSG, base_height_m=10.0)
        self.assertAlmostEqual(shadow.building_height_m, 20.0, places=6)
        self.assertAlmostEqual(shadow.length_m, 20.0, places=4)

    def test_low_sun_is_estimated(self):
        info = compute_patio_shadow_info(self.patio, self.patio_metric, [], sun(180.0, 3.0), EPSG)
        self.assertTrue(info.low_sun_estimate)
        self.assertAlmostEqual(info.coverage.sunlit_fraction, 0.25, places=6)

    def test_sun_below_horizon_is_fully_shaded(self):
        info = compute_patio_shadow_info(self.patio, self.patio_metric, [], sun(0.0, -5.0), EPSG)
        self.assertAlmostEqual(info.coverage.sunlit_fraction, 0.0, places=6)

    def test_self_intersecting_patio_keeps_its_shadows(self):
        bowtie = Patio(9, to_geographic(metric_bowtie(), EPSG))
        half = Building(3, lonlat_box(0, -30, 5, -10), height_m=30.0, height_source=HeightSource.SURVEYED)
        nearby = [(half, to_metric(half.footprint, EPSG))]
        with self.assertLogs("shadow_engine", level="WARNING"):
            info = compute_patio_shadow_info(bowtie, metric_bowtie(), nearby, sun(180.0, 10.0), EPSG)
        self.assertEqual(len(info.shadows), 1)
        self.assertTrue(info.coverage.degraded)
        self.assertAlmostEqual(info.coverage.total_area_m2, 50.0, delta=0.5)
        self.assertAlmostEqual(info.coverage.shadowed_area_m2, 25.0, delta=0.5)

    def test_geos_failure_on_intersection_marks_degraded(self):
        index = BuildingIndex([self.tower], EPSG)
        nearby = index.query_nearby(self.patio_metric)
        with mock.patch("shadow_engine.shadow_affects_patio", side_effect=GEOSException("boom")):
            with self.assertLogs("shadow_engine", level="WARNING"):
                info = compute_patio_shadow_info(self.patio, self.patio_metric, nearby, sun(180.0, 10.0), EPSG)
        self.assertEqual(info.shadows, ())
        self.assertTrue(info.coverage.degraded)


class ShadowConfidenceTests(unittest.TestCase):
    def test_penalties_multiply(self):
        cases = [
            # source, elevation, length, expected
            (HeightSource.SURVEYED, 45.0, 10.0, 1.0),
            (HeightSource.SURVEYED, 9.9, 10.0, 0.7),
            (HeightSource.SURVEYED, 10.0, 10.0, 0.9),
            (HeightSource.SURVEYED, 19.9, 10.0, 0.9),
            (HeightSource.SURVEYED, 20.0, 10.0, 1.0),
            (HeightSource.SURVEYED, 45.0, 50.0, 1.0),
            (HeightSource.SURVEYED, 45.0, 50.1, 0.9),
            (HeightSource.SURVEYED, 45.0, 100.0, 0.9),
            (HeightSource.SURVEYED, 45.0, 100.1, 0.8),
            (HeightSource.OSM, 45.0, 10.0, 0.85),
            (HeightSource.HEURISTIC, 45.0, 10.0, 0.7),
            (HeightSource.ADMIN_OVERRIDE, 45.0, 10.0, 0.6),
            (HeightSource.HEURISTIC, 8.0, 150.0, 0.7 * 0.8 * 0.7),
            (HeightSource.OSM, 15.0, 60.0, 0.9 * 0.9 * 0.85),
        ]
        for source, elevation, length, expected in cases:
            with self.subTest(source=source, elevation=elevation, length=length):
                self.assertAlmostEqual(shadow_confidence(source, elevation, length), expected, places=9)

    def test_trust_tiers(self):
        self.assertEqual(height_trust(HeightSource.SURVEYED), 1.0)
        self.assertEqual(height_trust(HeightSource.OSM), 0.85)
        self.assertEqual(height_trust(HeightSource.HEURISTIC), 0.7)
        self.assertEqual(height_trust(HeightSource.ADMIN_OVERRIDE), 0.6)
        self.assertEqual(height_trust("unknown"), 0.6)

    def test_admin_height_scores_as_override(self):
        building = Building(
            1, lonlat_box(0, -30, 10, -10), height_m=9.0, height_source=HeightSource.SURVEYED, admin_height_m=30.0
        )
        shadow = project_building_shadow(building, sun(180.0, 45.0), epsg=EPSG)
        self.assertAlmostEqual(shadow.confidence, 0.6, places=9)


if __name__ == "__main__":
    unittest.main()
