import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from zonechain import parameters as p
from zonechain.errors import ConfigError
from zonechain.results import OUTPUT_CATEGORIES


def _config(**overrides):
    config = {
        "description": "test",
        "geoclimatedb": {"folder": "/tmp/zonechain", "delete": True},
        "input": {"folder": "/data/input", "locations": ["Pont-de-Veyle"]},
    }
    config.update(overrides)
    return config


class DefaultsTests(unittest.TestCase):
    def test_processing_defaults_are_applied(self):
        params = p.resolve(_config())
        processing = params.processing
        self.assertEqual(processing.distance, 500.0)
        self.assertEqual(processing.prefix_name, "")
        self.assertEqual(processing.h_lev_min, 3)
        self.assertIsNone(processing.rsu_indicators)
        self.assertIsNone(processing.grid_indicators)
        self.assertFalse(processing.road_traffic)
        self.assertFalse(processing.worldpop_indicators)
        self.assertFalse(processing.ground_acoustic)

    def test_input_defaults(self):
        params = p.resolve(_config())
        self.assertEqual(params.input.zone_table, "commune")
        self.assertEqual(params.input.zone_id_column, "code_insee")
        self.assertEqual(params.input.folder, Path("/data/input"))
        self.assertIsNone(params.input.srid)
        self.assertIsNone(params.output.folder)
        self.assertIsNone(params.output.database)

    def test_rsu_defaults(self):
        params = p.resolve(_config(parameters={"rsu_indicators": {"indicatorUse": ["lcz", "teb"]}}))
        rsu = params.processing.rsu_indicators
        self.assertEqual(rsu.indicator_use, ("LCZ", "TEB"))
        self.assertTrue(rsu.svf_simplified)
        self.assertEqual(rsu.surface_vegetation, 10000.0)
        self.assertEqual(rsu.surface_hydro, 2500.0)
        self.assertEqual(rsu.snapping_tolerance, 0.01)
        self.assertEqual(dict(rsu.map_of_weights), p.DEFAULT_MAP_OF_WEIGHTS)

    def test_working_delete_accepts_string(self):
        params = p.resolve(_config(geoclimatedb={"folder": "/tmp/zonechain", "delete": "false", "name": "run_1"}))
        self.assertFalse(params.working.delete)
        self.assertEqual(params.working.name, "run_1")

    def test_working_store_cannot_use_system_schemas(self):
        for name in ("public", "PUBLIC", "information_schema", "pg_catalog", "pg_temp_3", "bd.work"):
            with self.subTest(name=name):
                with self.assertRaises(ConfigError):
                    p.resolve(_config(geoclimatedb={"folder": "/tmp/zonechain", "name": name}))


class InputTests(unittest.TestCase):
    def test_both_input_providers_are_rejected(self):
        config = _config(input={"folder": "/data", "database": {"user": "u"}, "locations": ["A"]})
        with self.assertRaisesRegex(ConfigError, "only one input data provider"):
            p.resolve(config)

    def test_missing_input_provider_is_rejected(self):
        with self.assertRaises(ConfigError):
            p.resolve(_config(input={"locations": ["A"]}))

    def test_missing_locations_are_rejected(self):
        with self.assertRaisesRegex(ConfigError, "locations"):
            p.resolve(_config(input={"folder": "/data"}))

    def test_invalid_srid_is_rejected(self):
        for srid in (0, -4326, "2154"):
            with self.assertRaisesRegex(ConfigError, "srid must be greater than 0"):
                p.resolve(_config(input={"folder": "/data", "locations": ["A"], "srid": srid}))

    def test_empty_document_is_rejected(self):
        with self.assertRaises(ConfigError):
            p.resolve({})
        with self.assertRaises(ConfigError):
            p.resolve(None)

    def test_duplicate_locations_are_collapsed_in_order(self):
        params = p.resolve(_config(input={"folder": "/data", "locations": ["B", " A ", "B", "A"]}))
        self.assertEqual([loc.id for loc in params.input.locations], ["B", "A"])

    def test_database_input_tables(self):
        raw = {
            "connection": {"host": "db", "port": 5433, "database": "bdtopo", "user": "u", "password": "x"},
            "tables": {"building": "bdtopo.batiment"},
        }
        with patch("zonechain.parameters.load_dotenv"):
            params = p.resolve(_config(input={"database": raw, "locations": ["A"]}))
        self.assertEqual(params.input.database.host, "db")
        self.assertEqual(params.input.database.port, 5433)
        self.assertEqual(params.input.tables["building"], "bdtopo.batiment")
        self.assertEqual(params.input.tables["road"], "road")

    def test_unknown_database_input_table_is_rejected(self):
        raw = {"tables": {"rivers": "x"}}
        with patch("zonechain.parameters.load_dotenv"):
            with self.assertRaises(ConfigError):
                p.resolve(_config(input={"database": raw, "locations": ["A"]}))


class LocationTests(unittest.TestCase):
    def test_string_location_is_trimmed(self):
        self.assertEqual(p.format_location("  69400 "), p.Location("69400"))

    def test_bbox_location_id_and_order(self):
        location = p.format_location([47.2, -1.6, 47.3, -1.5])
        self.assertEqual(location.id, "47.2_-1.6_47.3_-1.5")
        self.assertEqual(location.bbox, (47.2, -1.6, 47.3, -1.5))

    def test_malformed_locations_are_rejected(self):
        for bad in ([1, 2, 3], {"id": "A"}, 42, "", [3, 1, 1, 2]):
            with self.assertRaises(ConfigError, msg=f"{bad!r} should be rejected"):
                p.format_location(bad)


class GridTests(unittest.TestCase):
    def test_lcz_primary_adds_lcz_family(self):
        params = p.resolve(_config(parameters={
            "grid_indicators": {"x_size": 100, "y_size": 100, "indicators": ["LCZ_PRIMARY"]},
        }))
        self.assertEqual(params.processing.rsu_indicators.indicator_use, ("LCZ",))
        self.assertEqual(params.processing.grid_indicators.indicators, ("LCZ_PRIMARY",))

    def test_utrf_fraction_extends_existing_rsu_list(self):
        params = p.resolve(_config(parameters={
            "rsu_indicators": {"indicatorUse": ["TEB"], "svfSimplified": False},
            "grid_indicators": {"x_size": 10, "y_size": 10, "indicators": ["utrf_area_fraction", "LCZ_FRACTION"]},
        }))
        rsu = params.processing.rsu_indicators
        self.assertEqual(rsu.indicator_use, ("TEB", "UTRF", "LCZ"))
        self.assertFalse(rsu.svf_simplified)

    def test_grid_defaults(self):
        params = p.resolve(_config(parameters={
            "grid_indicators": {"x_size": 200, "y_size": 100, "indicators": ["BUILDING_FRACTION"]},
        }))
        grid = params.processing.grid_indicators
        self.assertEqual((grid.x_size, grid.y_size), (200.0, 100.0))
        self.assertEqual(grid.output, "fgb")
        self.assertFalse(grid.row_col)
        self.assertIsNone(grid.lcz_lod)
        self.assertIsNone(grid.origin)
        self.assertIsNone(params.processing.rsu_indicators)

    def test_invalid_grid_parameters_are_rejected(self):
        cases = [
            {"x_size": 0, "y_size": 100, "indicators": ["BUILDING_FRACTION"]},
            {"x_size": 100, "y_size": 100, "indicators": []},
            {"x_size": 100, "y_size": 100, "indicators": ["NOT_AN_INDICATOR"]},
            {"x_size": 100, "y_size": 100, "indicators": ["SVF"], "output": "tif"},
            {"x_size": 100, "y_size": 100, "indicators": ["SVF"], "lcz_lod": 11},
            {"x_size": 100, "y_size": 100, "indicators": ["SVF"], "origin": [0]},
            {"x_size": 100, "y_size": 100, "indicators": ["SVF"], "origin": ["0", "0"]},
        ]
        for grid in cases:
            with self.assertRaises(ConfigError, msg=str(grid)):
                p.resolve(_config(parameters={"grid_indicators": grid}))

    def test_grid_origin_is_read_as_coordinates(self):
        params = p.resolve(_config(parameters={
            "grid_indicators": {"x_size": 100, "y_size": 100, "indicators": ["SVF"], "origin": [5, -20.5]},
        }))
        self.assertEqual(params.processing.grid_indicators.origin, (5.0, -20.5))


class RsuTests(unittest.TestCase):
    def test_invalid_rsu_names_are_rejected(self):
        for use in ([], ["LCZ", "OTHER"], "LCZ"):
            with self.assertRaises(ConfigError):
                p.resolve(_config(parameters={"rsu_indicators": {"indicatorUse": use}}))

    def test_map_of_weights_must_have_every_key(self):
        weights = dict(p.DEFAULT_MAP_OF_WEIGHTS)
        weights.pop("aspect_ratio")
        with self.assertRaisesRegex(ConfigError, "mapOfWeights"):
            p.resolve(_config(parameters={"rsu_indicators": {"indicatorUse": ["LCZ"], "mapOfWeights": weights}}))

    def test_map_of_weights_is_replaced(self):
        weights = {key: 1 for key in p.DEFAULT_MAP_OF_WEIGHTS}
        params = p.resolve(_config(parameters={"rsu_indicators": {"indicatorUse": ["LCZ"], "mapOfWeights": weights}}))
        self.assertEqual(dict(params.processing.rsu_indicators.map_of_weights), weights)

    def test_wrong_types_are_rejected(self):
        for parameters in ({"distance": "far"}, {"hLevMin": 2.5}, {"road_traffic": "yes"}):
            with self.assertRaises(ConfigError, msg=str(parameters)):
                p.resolve(_config(parameters=parameters))


class OutputTests(unittest.TestCase):
    def test_folder_string_exports_every_category(self):
        params = p.resolve(_config(output={"folder": "/out"}))
        self.assertEqual(params.output.folder, Path("/out"))
        self.assertEqual(params.output.folder_tables, OUTPUT_CATEGORIES)

    def test_folder_tables_subset(self):
        params = p.resolve(_config(output={"folder": {"path": "/out", "tables": ["building", "zone"]}}))
        self.assertEqual(params.output.folder_tables, ("building", "zone"))
        with self.assertRaises(ConfigError):
            p.resolve(_config(output={"folder": {"path": "/out", "tables": ["buildings"]}}))

    def test_database_output(self):
        output = {"database": {"user": "u", "tables": {"building_indicators": "out.building_indicators"}, "srid": 4326}}
        with patch("zonechain.parameters.load_dotenv"):
            params = p.resolve(_config(output=output))
        self.assertEqual(params.output.database_tables, {"building_indicators": "out.building_indicators"})
        self.assertEqual(params.output.srid, 4326)

    def test_database_output_rejects_unknown_category(self):
        output = {"database": {"tables": {"buildings": "out.b"}}}
        with patch("zonechain.parameters.load_dotenv"):
            with self.assertRaises(ConfigError):
                p.resolve(_config(output=output))


class ConnectionTests(unittest.TestCase):
    def test_environment_fills_missing_values(self):
        env = {"PGHOST": "pg.local", "PGPORT": "6543", "PGUSER": "gis", "PGPASSWORD": "secret", "PGDATABASE": "climate"}
        with patch.dict(os.environ, env), patch("zonechain.parameters.load_dotenv"):
            settings = p.resolve_connection({"user": "override"})
        self.assertEqual(settings.host, "pg.local")
        self.assertEqual(settings.port, 6543)
        self.assertEqual(settings.user, "override")
        self.assertEqual(settings.database, "climate")
        self.assertEqual(settings.connect_kwargs()["dbname"], "climate")

    def test_url_wins(self):
        with patch("zonechain.parameters.load_dotenv"):
            settings = p.resolve_connection({"connection": {"url": "postgresql://u:x@h:5432/db"}})
        self.assertEqual(settings.connect_kwargs(), {"dsn": "postgresql://u:x@h:5432/db"})
        self.assertEqual(settings.describe(), "h:5432/db")


class LoadConfigTests(unittest.TestCase):
    def test_reads_json_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "workflow.json"
            path.write_text(json.dumps(_config()), encoding="utf-8")
            self.assertEqual(p.load_config(path)["description"], "test")

    def test_rejects_missing_or_non_json_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ConfigError):
                p.load_config(Path(tmp) / "missing.json")
            other = Path(tmp) / "workflow.yaml"
            other.write_text("{}", encoding="utf-8")
            with self.assertRaises(ConfigError):
                p.load_config(other)
            broken = Path(tmp) / "broken.json"
            broken.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                p.load_config(broken)


if __name__ == "__main__":
    unittest.main()
