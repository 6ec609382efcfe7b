from __future__ import annotations

import unittest
from datetime import timedelta

import numpy as np

import st_core
from st_core import SegmentationConfig, TrackPoint
from track_fixtures import LIFT_STEP_M, LON0, T0, build_track, ski_day, steady_descent


class TestGeodesy(unittest.TestCase):
    def test_distance_to_self_is_zero(self) -> None:
        p = TrackPoint(lat=46.0, lon=7.75, ele=0.0, time=T0)
        self.assertEqual(st_core.distance(p, p), 0.0)

    def test_distance_is_symmetric(self) -> None:
        a = TrackPoint(lat=46.0, lon=7.75, ele=0.0, time=T0)
        b = TrackPoint(lat=46.01, lon=7.76, ele=0.0, time=T0)
        self.assertAlmostEqual(st_core.distance(a, b), st_core.distance(b, a), places=9)

    def test_one_degree_of_latitude(self) -> None:
        self.assertAlmostEqual(st_core.haversine_m(0.0, 0.0, 1.0, 0.0), 111194.93, delta=0.5)

    def test_degree_radian_conversion(self) -> None:
        self.assertAlmostEqual(st_core.to_deg(st_core.to_rad(123.4)), 123.4, places=9)


class TestSmoothing(unittest.TestCase):
    def test_constant_profile_is_unchanged(self) -> None:
        out = st_core.smooth_elevation([500.0] * 9, window=5)
        self.assertTrue(np.allclose(out, 500.0))

    def test_edges_are_truncated(self) -> None:
        out = st_core.smooth_elevation([0.0, 0.0, 10.0, 0.0, 0.0], window=5)
        self.assertAlmostEqual(out[0], 10.0 / 3.0)
        self.assertAlmostEqual(out[2], 2.0)
        self.assertEqual(out.size, 5)

    def test_empty(self) -> None:
        self.assertEqual(st_core.smooth_elevation([]).size, 0)


class TestAnalyze(unittest.TestCase):
    def test_empty_input(self) -> None:
        result = st_core.analyze([])
        self.assertEqual(result.points, [])
        self.assertEqual(result.runs, [])
        self.assertEqual(result.stats.total_distance, 0.0)
        self.assertIsNone(result.stats.start_time)

    def test_three_flat_points(self) -> None:
        pts = [
            TrackPoint(lat=45.0 + k * 0.001, lon=7.0 + k * 0.001, ele=1000.0, time=T0 + timedelta(seconds=30 * k))
            for k in range(3)
        ]
        stats = st_core.analyze(pts).stats
        self.assertEqual(stats.duration, 60.0)
        self.assertEqual(stats.total_ascent, 0.0)
        self.assertEqual(stats.total_descent, 0.0)
        self.assertGreater(stats.total_distance, 0.0)
        self.assertEqual(stats.run_count, 0)

    def test_stationary_points(self) -> None:
        pts = [TrackPoint(lat=46.0, lon=LON0, ele=1500.0, time=T0 + timedelta(seconds=s)) for s in (0, 30, 60)]
        stats = st_core.analyze(pts).stats
        self.assertEqual(stats.total_distance, 0.0)
        self.assertEqual(stats.max_speed, 0.0)
        self.assertEqual(stats.avg_speed, 0.0)

    def test_cumulative_distance_monotonic(self) -> None:
        result = st_core.analyze(ski_day())
        cum = [p.cumulative_distance for p in result.points]
        self.assertEqual(cum[0], 0.0)
        self.assertTrue(all(b >= a for a, b in zip(cum, cum[1:])))
        self.assertAlmostEqual(result.stats.total_distance, cum[-1])

    def test_input_points_are_not_mutated(self) -> None:
        pts = steady_descent()
        st_core.analyze(pts)
        self.assertTrue(all(p.speed is None for p in pts))

    def test_ascent_and_descent(self) -> None:
        stats = st_core.analyze(ski_day()).stats
        self.assertAlmostEqual(stats.total_ascent, 150.0, places=6)
        self.assertAlmostEqual(stats.total_descent, 238.0, places=6)

    def test_windowed_speed(self) -> None:
        result = st_core.analyze(steady_descent())
        self.assertEqual(result.points[0].speed, 0.0)
        for p in result.points[1:]:
            self.assertAlmostEqual(p.speed, 20.0, places=3)
        self.assertAlmostEqual(result.stats.max_speed, 20.0, places=3)
        self.assertTrue(all(p.is_descending for p in result.points[1:]))
        self.assertFalse(result.points[0].is_descending)

    def test_heart_rate_aggregates(self) -> None:
        pts = steady_descent(10)
        pts[2].heart_rate = 120.0
        pts[5].heart_rate = 160.0
        stats = st_core.analyze(pts).stats
        self.assertAlmostEqual(stats.avg_heart_rate, 140.0)
        self.assertEqual(stats.max_heart_rate, 160.0)

    def test_no_heart_rate(self) -> None:
        stats = st_core.analyze(steady_descent(10)).stats
        self.assertIsNone(stats.avg_heart_rate)
        self.assertIsNone(stats.max_heart_rate)


class TestRunDetection(unittest.TestCase):
    def test_steady_descent_is_one_run(self) -> None:
        result = st_core.analyze(steady_descent(50))
        self.assertEqual(len(result.runs), 1)
        run = result.runs[0]
        self.assertEqual(run.id, 1)
        self.assertGreaterEqual(run.vertical_drop, 98.0)
        self.assertGreaterEqual(run.duration, 98.0)
        self.assertEqual((run.start_index, run.end_index), (0, 49))

    def test_ski_day_has_two_runs(self) -> None:
        result = st_core.analyze(ski_day())
        runs = result.runs
        self.assertEqual([r.id for r in runs], [1, 2])
        self.assertLess(runs[0].start_index, 60)
        self.assertGreaterEqual(runs[1].start_index, 200)
        for run in runs:
            self.assertGreaterEqual(run.vertical_drop, 30.0)
            self.assertGreaterEqual(run.duration, 60.0)
            self.assertGreater(run.end_index, run.start_index)
            self.assertGreater(run.start_elevation, run.end_elevation)
        self.assertLess(runs[0].start_index, runs[1].start_index)

        stats = result.stats
        self.assertEqual(stats.run_count, 2)
        self.assertAlmostEqual(stats.ski_distance, sum(r.distance for r in runs))
        self.assertAlmostEqual(stats.ski_vertical, sum(r.vertical_drop for r in runs))
        self.assertAlmostEqual(stats.ski_duration, sum(r.duration for r in runs))

    def test_lift_ride_is_not_a_run(self) -> None:
        result = st_core.analyze(build_track([(100, LIFT_STEP_M, 1.0)]))
        self.assertEqual(result.runs, [])
        self.assertEqual(result.stats.ski_distance, 0.0)

    def test_short_track_has_no_runs(self) -> None:
        self.assertEqual(st_core.analyze(steady_descent(30)).runs, [])

    def test_thresholds_filter_runs(self) -> None:
        cfg = SegmentationConfig(min_vertical_drop_m=200.0)
        self.assertEqual(st_core.analyze(steady_descent(50), cfg).runs, [])

    def test_merge_across_short_pause(self) -> None:
        ele = np.linspace(1000.0, 900.0, 26)
        a = st_core._Segment(0, 10, 1000.0, 960.0, 0.0, 100.0)
        b = st_core._Segment(13, 25, 948.0, 900.0, 130.0, 250.0)
        merged = st_core._merge_segments([a, b], ele, ele, SegmentationConfig())
        self.assertEqual(len(merged), 1)
        self.assertEqual((merged[0].start_index, merged[0].end_index), (0, 25))
        self.assertAlmostEqual(merged[0].high - merged[0].low, 100.0)

    def test_no_merge_after_long_gap(self) -> None:
        ele = np.linspace(1000.0, 900.0, 26)
        a = st_core._Segment(0, 10, 1000.0, 960.0, 0.0, 100.0)
        b = st_core._Segment(13, 25, 948.0, 900.0, 300.0, 420.0)
        merged = st_core._merge_segments([a, b], ele, ele, SegmentationConfig())
        self.assertEqual(len(merged), 2)

    def test_run_heart_rate(self) -> None:
        pts = steady_descent(50)
        pts[10].heart_rate = 130.0
        pts[20].heart_rate = 150.0
        pts[30].heart_rate = 0.0
        run = st_core.analyze(pts).runs[0]
        self.assertAlmostEqual(run.avg_heart_rate, 140.0)
        self.assertEqual(run.max_heart_rate, 150.0)

    def test_run_without_heart_rate(self) -> None:
        run = st_core.analyze(steady_descent(50)).runs[0]
        self.assertIsNone(run.avg_heart_rate)
        self.assertIsNone(run.max_heart_rate)

    def test_no_merge_when_next_segment_is_higher(self) -> None:
        ele = np.linspace(1000.0, 900.0, 26)
        a = st_core._Segment(0, 10, 1000.0, 960.0, 0.0, 100.0)
        b = st_core._Segment(13, 25, 1050.0, 1010.0, 130.0, 250.0)
        merged = st_core._merge_segments([a, b], ele, ele, SegmentationConfig())
        self.assertEqual(len(merged), 2)
        self.assertEqual(merged[0].end_index, 10)

    def test_no_merge_when_climbing_in_gap(self) -> None:
        ele = np.full(26, 900.0)
        ele[11:13] = 1000.0
        a = st_core._Segment(0, 10, 960.0, 900.0, 0.0, 100.0)
        b = st_core._Segment(13, 25, 950.0, 900.0, 130.0, 250.0)
        merged = st_core._merge_segments([a, b], ele, ele, SegmentationConfig())
        self.assertEqual(len(merged), 2)


class TestConfigAndFormatting(unittest.TestCase):
    def test_segmentation_from_mapping(self) -> None:
        with self.assertLogs(level="WARNING"):
            cfg = SegmentationConfig.from_mapping({"trend_window": "10", "min_vertical_drop_m": 40, "bogus": 1})
        self.assertEqual(cfg.trend_window, 10)
        self.assertIsInstance(cfg.trend_window, int)
        self.assertEqual(cfg.min_vertical_drop_m, 40.0)
        self.assertEqual(cfg.max_gap_s, 120.0)

    def test_format_duration(self) -> None:
        self.assertEqual(st_core.format_duration(3725), "01:02:05")
        self.assertEqual(st_core.format_duration(-5), "00:00:00")
        self.assertEqual(st_core.format_duration_long(65), "1m 5s")
        self.assertEqual(st_core.format_duration_long(3725), "1h 2m 5s")

    def test_unit_conversions(self) -> None:
        self.assertAlmostEqual(st_core.meters_to_feet(100.0), 328.084)
        self.assertAlmostEqual(st_core.meters_to_miles(1609.344), 1.0)
        self.assertAlmostEqual(st_core.kmh_to_mph(100.0), 62.1371)

    def test_track_point_dict(self) -> None:
        p = TrackPoint(lat=46.1, lon=7.7, ele=2000.5, time=T0, heart_rate=150.0)
        back = TrackPoint.from_dict(p.to_dict())
        self.assertEqual((back.lat, back.lon, back.ele, back.time, back.heart_rate), (46.1, 7.7, 2000.5, T0, 150.0))
        millis = TrackPoint.from_dict({"lat": 1, "lon": 2, "time": 1705309200000})
        self.assertEqual(millis.time, T0)
        self.assertEqual(millis.ele, 0.0)


if __name__ == "__main__":
    unittest.main()
