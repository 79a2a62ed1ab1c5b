import unittest
from datetime import datetime, timezone

from helpers import EPSG, lonlat_box, metric_bowtie, sun
from settings import EngineSettings
from shadow_engine import Building, BuildingIndex, HeightSource, Patio, to_geographic
from sun_exposure import (
    SunExposureCalculator,
    SunExposureState,
    classify_state,
    compute_patio_sun_exposure,
)

UTC = timezone.utc
NOON = datetime(2025, 6, 21, 12, tzinfo=UTC)


class ClassifyStateTests(unittest.TestCase):
    def test_thresholds(self):
        self.assertEqual(classify_state(70.0), SunExposureState.SUNNY)
        self.assertEqual(classify_state(69.9), SunExposureState.PARTIAL)
        self.assertEqual(classify_state(30.0), SunExposureState.PARTIAL)
        self.assertEqual(classify_state(29.9), SunExposureState.SHADED)
        self.assertEqual(classify_state(100.0, sun_visible=False), SunExposureState.NO_SUN)


class SunExposureTests(unittest.TestCase):
    def setUp(self):
        self.patio = Patio(7, lonlat_box(0, 0, 10, 10), polygon_quality=0.9)
        self.tower = Building(
            1, lonlat_box(0, -30, 10, -10), height_m=30.0, height_source=HeightSource.SURVEYED
        )

    def test_tower_to_the_south_shades_patio(self):
        result = compute_patio_sun_exposure(
            self.patio, [self.tower], NOON, solar_position=sun(180.0, 10.0), now=NOON
        )
        self.assertLess(result.sun_exposure_percent, 1.0)
        self.assertEqual(result.state, SunExposureState.SHADED)
        self.assertAlmostEqual(result.shaded_area_m2, 100.0, delta=0.5)
        self.assertEqual(len(result.shadows), 1)

    def test_northern_sun_casts_shadow_south_onto_patio(self):
        north = Building(3, lonlat_box(-5, 20, 15, 40), height_m=30.0, height_source=HeightSource.OSM)
        result = compute_patio_sun_exposure(self.patio, [north], NOON, solar_position=sun(0.0, 10.0), now=NOON)
        self.assertEqual(result.state, SunExposureState.SHADED)
        self.assertAlmostEqual(result.sunlit_area_m2, 0.0, delta=0.5)
        self.assertAlmostEqual(result.shadows[0].length_m, 170.1, delta=0.5)
        self.assertAlmostEqual(result.shadows[0].direction_deg, 180.0)
        self.assertGreaterEqual(result.confidence, 0.0)
        self.assertLessEqual(result.confidence, 100.0)

    def test_half_width_building_gives_partial_sun(self):
        half = Building(2, lonlat_box(0, -30, 5, -10), height_m=30.0, height_source=HeightSource.SURVEYED)
        result = compute_patio_sun_exposure(self.patio, [half], NOON, solar_position=sun(180.0, 10.0), now=NOON)
        self.assertAlmostEqual(result.sun_exposure_percent, 50.0, delta=0.5)
        self.assertEqual(result.state, SunExposureState.PARTIAL)

    def test_self_intersecting_patio_is_split_and_estimated(self):
        bowtie = Patio(9, to_geographic(metric_bowtie(), EPSG), polygon_quality=0.9)
        half = Building(2, lonlat_box(0, -30, 5, -10), height_m=30.0, height_source=HeightSource.SURVEYED)
        with self.assertLogs("shadow_engine", level="WARNING"):
            result = compute_patio_sun_exposure(bowtie, [half], NOON, solar_position=sun(180.0, 10.0), now=NOON)
        self.assertAlmostEqual(result.sunlit_area_m2 + result.shaded_area_m2, 50.0, delta=0.5)
        self.assertAlmostEqual(result.sun_exposure_percent, 50.0, delta=1.0)
        self.assertEqual(result.state, SunExposureState.PARTIAL)
        self.assertTrue(result.is_estimated)

    def test_open_patio_is_sunny_but_estimated_without_weather(self):
        result = compute_patio_sun_exposure(self.patio, [], NOON, solar_position=sun(180.0, 50.0), now=NOON)
        self.assertAlmostEqual(result.sun_exposure_percent, 100.0, places=3)
        self.assertEqual(result.state, SunExposureState.SUNNY)
        self.assertTrue(result.is_estimated)
        self.assertLessEqual(result.confidence, 60.0)
        self.assertAlmostEqual(result.sunlit_area_m2 + result.shaded_area_m2, 100.0, delta=0.5)

    def test_night_is_no_sun_with_full_confidence(self):
        night = datetime(2025, 12, 21, 23, tzinfo=UTC)
        result = compute_patio_sun_exposure(self.patio, [self.tower], night)
        self.assertEqual(result.state, SunExposureState.NO_SUN)
        self.assertEqual(result.sun_exposure_percent, 0.0)
        self.assertEqual(result.confidence, 100.0)
        self.assertEqual(result.local_time.utcoffset().total_seconds(), 3600)


class SunExposureCalculatorTests(unittest.TestCase):
    def setUp(self):
        tower = Building(1, lonlat_box(0, -30, 10, -10), height_m=30.0, height_source=HeightSource.SURVEYED)
        self.calculator = SunExposureCalculator(BuildingIndex([tower], EPSG), settings=EngineSettings())
        self.patio = Patio(7, lonlat_box(0, 0, 10, 10), polygon_quality=0.9)

    def test_calculate_uses_indexed_buildings(self):
        result = self.calculator.calculate(self.patio, NOON, solar_position=sun(180.0, 10.0), now=NOON)
        self.assertEqual(result.state, SunExposureState.SHADED)
        self.assertEqual(result.source, "realtime")

    def test_building_outside_search_radius_is_ignored(self):
        narrow = SunExposureCalculator(
            self.calculator.building_index, settings=EngineSettings(building_search_radius_m=5.0)
        )
        result = narrow.calculate(self.patio, NOON, solar_position=sun(180.0, 10.0), now=NOON)
        self.assertEqual(result.state, SunExposureState.SUNNY)

    def test_batch_skips_failing_patios(self):
        broken = Patio(8, None)
        with self.assertLogs("sun_exposure", level="WARNING"):
            results = self.calculator.calculate_batch([self.patio, broken], NOON, now=NOON)
        self.assertEqual(list(results), [7])


if __name__ == "__main__":
    unittest.main()
