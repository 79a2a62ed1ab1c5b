import json
import pathlib
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from io import StringIO

from shapely.geometry import mapping

from building_data import buildings_from_features, load_patios, patios_from_features, resolve_height
from helpers import lonlat_box
from shadow_engine import HeightSource

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1] / "scripts"))

import run_precomputation  # noqa: E402


def feature(geom, **props):
    return {"type": "Feature", "geometry": mapping(geom), "properties": props}


class HeightResolutionTests(unittest.TestCase):
    def test_explicit_height_then_levels_then_heuristic(self):
        self.assertEqual(resolve_height({"height": "18 m"}, 400.0), (18.0, HeightSource.SURVEYED))
        self.assertEqual(resolve_height({"building:levels": "4"}, 400.0), (12.0, HeightSource.OSM))
        height, source = resolve_height({"height": "tall"}, 400.0)
        self.assertEqual(source, HeightSource.HEURISTIC)
        self.assertGreaterEqual(height, 3.0)

    def test_height_is_capped(self):
        self.assertEqual(resolve_height({"height": 450}, 100.0)[0], 200.0)


class FeatureLoadingTests(unittest.TestCase):
    def test_buildings_skip_non_polygons(self):
        features = [
            feature(lonlat_box(0, 0, 10, 10), id=11, height=9),
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [11.97, 57.7]}, "properties": {}},
            feature(lonlat_box(20, 0, 30, 10), admin_height=22.5),
        ]
        buildings = buildings_from_features(features)
        self.assertEqual([b.building_id for b in buildings], [11, 3])
        self.assertEqual(buildings[1].admin_height_m, 22.5)

    def test_invalid_admin_height_raises(self):
        with self.assertRaises(ValueError):
            buildings_from_features([feature(lonlat_box(0, 0, 10, 10), admin_height=500)])

    def test_patios_carry_overrides(self):
        patios = patios_from_features([feature(lonlat_box(0, 0, 10, 10), id=5, height_override_m=2.5)])
        self.assertEqual(patios[0].patio_id, 5)
        self.assertEqual(patios[0].height_override_m, 2.5)
        self.assertEqual(patios[0].polygon_quality, 0.5)


class RunPrecomputationCliTests(unittest.TestCase):
    def test_cli_runs_a_date_and_writes_report(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = pathlib.Path(tmp)
            buildings = root / "buildings.geojson"
            patios = root / "patios.geojson"
            buildings.write_text(json.dumps({
                "type": "FeatureCollection",
                "features": [feature(lonlat_box(0, -30, 10, -10), id=1, height=30)],
            }), encoding="utf-8")
            patios.write_text(json.dumps({
                "type": "FeatureCollection",
                "features": [feature(lonlat_box(0, 0, 10, 10), id=7, polygon_quality=0.9)],
            }), encoding="utf-8")
            self.assertEqual(len(load_patios(patios)), 1)

            out = StringIO()
            with redirect_stdout(out):
                code = run_precomputation.main([
                    "--buildings", str(buildings),
                    "--patios", str(patios),
                    "--date", "2025-06-21",
                    "--database-url", f"sqlite:///{root / 'precomputed.db'}",
                    "--output", str(root / "report" / "run.json"),
                ])
            self.assertEqual(code, 0)
            report = json.loads((root / "report" / "run.json").read_text(encoding="utf-8"))
            self.assertEqual(report["status"], "completed")
            self.assertEqual(report["actual_points"], 73)
            self.assertTrue(report["is_valid"])
            self.assertEqual(json.loads(out.getvalue())["date"], "2025-06-21")

            args = [
                "--buildings", str(buildings),
                "--patios", str(patios),
                "--date", "2025-06-21",
                "--database-url", f"sqlite:///{root / 'precomputed.db'}",
            ]
            with redirect_stdout(StringIO()):
                self.assertEqual(run_precomputation.main(args), 1)
                self.assertEqual(run_precomputation.main(args + ["--rerun"]), 0)


if __name__ == "__main__":
    unittest.main()
