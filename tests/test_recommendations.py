import unittest
from datetime import datetime, timedelta, timezone

from recommendations import (
    SunWindowQuality,
    compare_timelines,
    describe_window,
    extract_sun_windows,
    rank_best_times,
    summarize_timeline,
    time_of_day,
    today_recommendations,
    window_quality,
)
from sun_exposure import SunExposureState
from timeline import DataSource, SunExposureTimeline, TimelineMetadata, TimelinePoint

UTC = timezone.utc
LOCAL = timezone(timedelta(hours=2))
START = datetime(2025, 6, 21, 8, 0, tzinfo=UTC)
STEP = timedelta(minutes=10)


def point(idx, exposure, state, confidence=85.0):
    ts = START + idx * STEP
    return TimelinePoint(
        timestamp=ts,
        local_time=ts.astimezone(LOCAL),
        sun_exposure_percent=exposure,
        state=state,
        confidence=confidence,
        solar_elevation=45.0,
        solar_azimuth=180.0,
        source=DataSource.REALTIME,
    )


def sample_points():
    points = [point(0, 10.0, SunExposureState.SHADED)]
    points += [point(i, 85.0, SunExposureState.SUNNY) for i in range(1, 14)]
    points.append(point(14, 5.0, SunExposureState.SHADED))
    points.append(point(15, 50.0, SunExposureState.PARTIAL, confidence=50.0))
    points.append(point(16, 5.0, SunExposureState.SHADED))
    points += [point(i, 40.0, SunExposureState.PARTIAL, confidence=70.0) for i in range(17, 20)]
    return points


def make_timeline(patio_id, points):
    windows = extract_sun_windows(patio_id, points)
    return SunExposureTimeline(
        patio_id=patio_id,
        start=points[0].timestamp,
        end=points[-1].timestamp,
        interval=STEP,
        points=tuple(points),
        windows=tuple(windows),
        metadata=TimelineMetadata(
            total_windows=len(windows),
            total_sun_duration=sum((w.duration for w in windows), timedelta(0)),
            daylight_hours=18.0,
            precomputed_percent=0.0,
            average_calculation_time=timedelta(0),
        ),
        generated_at=START,
    )


class SunWindowTests(unittest.TestCase):
    def test_windows_follow_contiguous_sunny_runs(self):
        windows = extract_sun_windows(7, sample_points())
        self.assertEqual(len(windows), 2)

        main, tail = windows
        self.assertEqual(main.start, START + STEP)
        self.assertEqual(main.end, START + 14 * STEP)
        self.assertEqual(main.duration, timedelta(minutes=130))
        self.assertEqual(main.point_count, 13)
        self.assertEqual(main.quality, SunWindowQuality.EXCELLENT)
        self.assertTrue(main.is_recommended)
        self.assertEqual(main.recommendation_reason, "excellent sun exposure, long duration, high sun coverage")
        self.assertEqual(main.description, "Midday sun (excellent quality, 2.2 hours)")

        self.assertEqual(tail.end, START + 19 * STEP)
        self.assertEqual(tail.quality, SunWindowQuality.POOR)
        self.assertFalse(tail.is_recommended)
        self.assertEqual(tail.recommendation_reason, "Too short duration for comfortable visit")

    def test_empty_and_unsorted_input(self):
        self.assertEqual(extract_sun_windows(7, []), [])
        shuffled = list(reversed(sample_points()))
        self.assertEqual(len(extract_sun_windows(7, shuffled)), 2)

    def test_quality_tiers(self):
        self.assertEqual(window_quality(80.0, timedelta(hours=2), 80.0), SunWindowQuality.EXCELLENT)
        self.assertEqual(window_quality(79.0, timedelta(hours=2), 80.0), SunWindowQuality.GOOD)
        self.assertEqual(window_quality(60.0, timedelta(minutes=45), 90.0), SunWindowQuality.FAIR)
        self.assertEqual(window_quality(90.0, timedelta(hours=3), 50.0), SunWindowQuality.POOR)

    def test_descriptions(self):
        morning = datetime(2025, 6, 21, 9, 0, tzinfo=LOCAL)
        self.assertEqual(time_of_day(9), "Morning")
        self.assertEqual(time_of_day(22), "Late")
        self.assertEqual(
            describe_window(morning, SunWindowQuality.FAIR, timedelta(minutes=40)),
            "Morning sun (fair quality, 40 minutes)",
        )


class TimelineSummaryTests(unittest.TestCase):
    def test_summary_counts_runs_and_best_period(self):
        summary = summarize_timeline(make_timeline(7, sample_points()))
        self.assertEqual(summary.sunny_periods, 1)
        self.assertEqual(summary.partial_periods, 2)
        self.assertEqual(summary.shaded_periods, 3)
        self.assertEqual(summary.total_sunny_time, timedelta(minutes=130))
        self.assertEqual(summary.max_exposure, 85.0)
        self.assertEqual(summary.min_exposure, 5.0)
        self.assertEqual(summary.best_sun_period_start, START + STEP)
        self.assertEqual(summary.best_sun_period_duration, timedelta(minutes=130))

    def test_recommendations_only_include_recommended_windows(self):
        recommended = today_recommendations(make_timeline(7, sample_points()))
        self.assertEqual(len(recommended), 1)
        self.assertEqual(recommended[0].quality, SunWindowQuality.EXCELLENT)


class ComparisonTests(unittest.TestCase):
    def setUp(self):
        brighter = [point(0, 0.0, SunExposureState.SHADED, confidence=90.0)]
        brighter += [point(i, 95.0, SunExposureState.SUNNY, confidence=90.0) for i in range(1, 16)]
        brighter.append(point(16, 0.0, SunExposureState.SHADED, confidence=90.0))
        self.first = make_timeline(7, sample_points())
        self.second = make_timeline(8, brighter)

    def test_rank_best_times_is_deterministic(self):
        ranked = rank_best_times([self.first, self.second])
        self.assertEqual([r.patio_id for r in ranked], [8, 7])
        self.assertEqual([r.rank for r in ranked], [1, 2])
        self.assertEqual(ranked[0].sun_exposure, 95.0)
        self.assertEqual(ranked[0].time, (START + STEP).astimezone(LOCAL))

    def test_compare_picks_most_confident_patio(self):
        comparison = compare_timelines([self.first, self.second])
        self.assertEqual(comparison.best_patio_id, 8)
        self.assertEqual(comparison.total_sun_windows, 3)
        self.assertEqual(comparison.comparison_duration, 19 * STEP)
        self.assertEqual(len(comparison.best_times), 2)

    def test_compare_nothing(self):
        comparison = compare_timelines([])
        self.assertIsNone(comparison.best_patio_id)
        self.assertEqual(comparison.best_times, [])


if __name__ == "__main__":
    unittest.main()
