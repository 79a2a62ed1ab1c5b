import pathlib
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

import weather_router
from weather import (
    ProcessedWeather,
    WeatherCondition,
    WeatherSlice,
    classify_condition,
    interpolate_spatial,
    interpolate_temporal,
    is_sun_blocking,
    process_weather_slice,
    select_weather_for_time,
)
from weather_router import fetch_met_no_slices, parse_met_no_payload

UTC = timezone.utc
NOW = datetime(2025, 6, 21, 10, tzinfo=UTC)


def sample(cloud, ts=NOW, location=None, confidence=0.8, temperature=20.0):
    return ProcessedWeather(
        timestamp=ts,
        cloud_cover=cloud,
        precipitation_intensity=0.0,
        condition=classify_condition(cloud, 0.0),
        is_sun_blocking=is_sun_blocking(cloud, 0.0),
        confidence=confidence,
        source="met.no",
        temperature=temperature,
        location=location,
        issued_at=NOW,
    )


def met_payload():
    return {
        "properties": {
            "timeseries": [
                {
                    "time": "2025-06-21T11:00:00Z",
                    "data": {
                        "instant": {"details": {"cloud_area_fraction": 85.0, "air_temperature": 18.2}},
                        "next_1_hours": {"details": {"precipitation_amount": 0.4}},
                    },
                },
                {
                    "time": "2025-06-21T10:00:00Z",
                    "data": {"instant": {"details": {"cloud_area_fraction": 12.5, "fog_area_fraction": 80.0}}},
                },
                {"time": "2025-06-21T12:00:00Z", "data": {"instant": {"details": {}}}},
            ]
        }
    }


class ConditionTests(unittest.TestCase):
    def test_classification_thresholds(self):
        self.assertEqual(classify_condition(10, 0.0), WeatherCondition.CLEAR)
        self.assertEqual(classify_condition(20, 0.0), WeatherCondition.PARTLY_CLOUDY)
        self.assertEqual(classify_condition(75, 0.0), WeatherCondition.CLOUDY)
        self.assertEqual(classify_condition(90, 0.0), WeatherCondition.OVERCAST)
        self.assertEqual(classify_condition(10, 1.0), WeatherCondition.PRECIPITATION)
        self.assertEqual(classify_condition(10, 0.0, visibility_km=2.0), WeatherCondition.LOW_VISIBILITY)

    def test_sun_blocking(self):
        self.assertFalse(is_sun_blocking(80.0, 0.0))
        self.assertTrue(is_sun_blocking(81.0, 0.0))
        self.assertTrue(is_sun_blocking(0.0, 0.5))

    def test_process_slice_clamps_and_scores(self):
        raw = WeatherSlice(
            timestamp=NOW + timedelta(hours=30),
            cloud_cover=130.0,
            precipitation_probability=0.8,
            temperature=12.0,
            is_forecast=True,
            source="met.no",
        )
        processed = process_weather_slice(raw, now=NOW)
        self.assertEqual(processed.cloud_cover, 100.0)
        self.assertEqual(processed.precipitation_intensity, 2.0)
        self.assertEqual(processed.condition, WeatherCondition.PRECIPITATION)
        self.assertAlmostEqual(processed.confidence, 0.65, places=6)
        self.assertEqual(processed.issued_at, NOW)


class InterpolationTests(unittest.TestCase):
    def test_spatial_requires_samples(self):
        with self.assertRaises(ValueError):
            interpolate_spatial((11.97, 57.7), [])

    def test_spatial_single_sample_is_relocated(self):
        result = interpolate_spatial((11.97, 57.7), [sample(40.0, location=(12.5, 58.0))])
        self.assertEqual(result.cloud_cover, 40.0)
        self.assertEqual(result.location, (11.97, 57.7))

    def test_spatial_equidistant_samples_average(self):
        target = (12.0, 57.7)
        samples = [sample(20.0, location=(11.9, 57.7)), sample(60.0, location=(12.1, 57.7))]
        self.assertAlmostEqual(interpolate_spatial(target, samples).cloud_cover, 40.0, places=6)

    def test_spatial_coincident_sample_dominates(self):
        target = (12.0, 57.7)
        samples = [sample(90.0, location=target), sample(10.0, location=(12.3, 57.9))]
        self.assertGreater(interpolate_spatial(target, samples).cloud_cover, 89.0)

    def test_spatial_rejects_unlocated_samples(self):
        with self.assertRaises(ValueError):
            interpolate_spatial((12.0, 57.7), [sample(10.0), sample(20.0, location=(12.1, 57.7))])

    def test_temporal_midpoint_and_clamping(self):
        before = sample(20.0, ts=NOW, temperature=10.0)
        after = sample(60.0, ts=NOW + timedelta(hours=1), temperature=14.0)
        mid = interpolate_temporal(NOW + timedelta(minutes=30), before, after)
        self.assertAlmostEqual(mid.cloud_cover, 40.0, places=6)
        self.assertAlmostEqual(mid.temperature, 12.0, places=6)
        self.assertIs(interpolate_temporal(NOW - timedelta(hours=1), before, after), before)
        self.assertIs(interpolate_temporal(NOW + timedelta(hours=2), before, after), after)
        with self.assertRaises(ValueError):
            interpolate_temporal(NOW, after, before)

    def test_select_weather_for_time(self):
        samples = [sample(20.0, ts=NOW), sample(60.0, ts=NOW + timedelta(hours=1))]
        picked = select_weather_for_time(samples, NOW + timedelta(minutes=15))
        self.assertAlmostEqual(picked.cloud_cover, 30.0, places=6)
        self.assertIsNone(select_weather_for_time(samples, NOW + timedelta(hours=6)))
        self.assertIsNone(select_weather_for_time([], NOW))


class MetNoTests(unittest.TestCase):
    def test_parse_payload_sorts_and_skips_incomplete_points(self):
        slices = parse_met_no_payload(met_payload(), NOW, location=(11.97, 57.7))
        self.assertEqual([s.timestamp.hour for s in slices], [10, 11])
        first, second = slices
        self.assertFalse(first.is_forecast)
        self.assertEqual(first.visibility_km, 1.0)
        self.assertTrue(second.is_forecast)
        self.assertEqual(second.precipitation_probability, 0.5)
        self.assertEqual(second.source, "met.no")

    def test_parse_payload_without_cloud_values_raises(self):
        with self.assertRaises(ValueError):
            parse_met_no_payload({"properties": {"timeseries": []}}, NOW)

    def test_fetch_falls_back_to_stale_cache(self):
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.object(weather_router, "CACHE_ROOT", pathlib.Path(tmp)):
                ok = mock.Mock()
                ok.json.return_value = met_payload()
                session = mock.Mock()
                session.get.return_value = ok
                fresh = fetch_met_no_slices(57.7, 11.97, now=NOW, session=session)
                self.assertEqual(fresh.data_status, "fresh")
                self.assertEqual(len(fresh.slices), 2)

                session.get.side_effect = requests.ConnectionError("offline")
                later = NOW + timedelta(hours=5)
                stale = fetch_met_no_slices(57.7, 11.97, now=later, session=session)
                self.assertEqual(stale.data_status, "stale")
                self.assertAlmostEqual(stale.freshness_hours, 5.0, places=6)

                with self.assertRaises(requests.ConnectionError):
                    fetch_met_no_slices(57.7, 11.97, now=NOW + timedelta(hours=13), session=session)


if __name__ == "__main__":
    unittest.main()
