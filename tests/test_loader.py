import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import geopandas as gpd
from shapely.geometry import Point, box

from tests.fakes import FakeStore
from zonechain.errors import ConfigError
from zonechain.loader import DatabaseSourceLoader, FolderSourceLoader, geodataframe_to_store
from zonechain.naming import TableNamer
from zonechain.parameters import ConnectionSettings, Location


def _write(path, crs="EPSG:2154", driver="GeoJSON"):
    gdf = gpd.GeoDataFrame(
        {"CODE_INSEE": ["69400", "69401"], "height_roof": [3.5, 7.0]},
        geometry=[box(0, 0, 10, 10), box(20, 0, 30, 10)],
        crs=crs,
    )
    gdf.to_file(path, driver=driver)


class GeodataframeToStoreTests(unittest.TestCase):
    def test_columns_rows_and_index(self):
        gdf = gpd.GeoDataFrame(
            {"ID": [1, 2], "Name": ["a", None], "h": [1.5, float("nan")]},
            geometry=[Point(0, 0), None],
        )
        store = FakeStore()
        with patch("zonechain.loader.insert_rows") as insert:
            count = geodataframe_to_store(store, gdf, "building_s_1", 2154)
        self.assertEqual(count, 2)
        args, kwargs = insert.call_args
        self.assertEqual(args[2], {"id": "bigint", "name": "text", "h": "double precision", "the_geom": "geometry"})
        rows = args[3]
        self.assertEqual(rows[0][:3], (1, "a", 1.5))
        self.assertEqual(rows[1], (2, None, None, None))
        self.assertEqual(kwargs["srid"], 2154)
        sql = store.sql()
        self.assertIn('CREATE TABLE building_s_1 ("id" bigint, "name" text, "h" double precision, "the_geom" geometry(GEOMETRY, 2154));', sql)
        self.assertIn("USING GIST (the_geom)", sql)


class FolderSourceLoaderTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.folder = Path(self.tmp.name)

    def test_find_files_keeps_known_layers(self):
        _write(self.folder / "commune.geojson")
        _write(self.folder / "building.geojson")
        (self.folder / "notes.txt").write_text("x")
        (self.folder / "rivers.geojson").write_text("{}")
        files = FolderSourceLoader(self.folder, "commune").find_files()
        self.assertEqual(set(files), {"commune", "building"})

    def test_zone_file_is_required(self):
        _write(self.folder / "building.geojson")
        with self.assertRaises(ConfigError):
            FolderSourceLoader(self.folder, "commune").find_files()
        with self.assertRaises(ConfigError):
            FolderSourceLoader(self.folder / "missing", "commune").find_files()

    def test_load_uses_the_zone_srid_and_reprojects_layers(self):
        _write(self.folder / "commune.gpkg", driver="GPKG")
        _write(self.folder / "building.gpkg", crs="EPSG:4326", driver="GPKG")
        stored = {}

        def capture(store, gdf, table, srid):
            stored[table] = (gdf, srid)
            return len(gdf)

        with patch("zonechain.loader.geodataframe_to_store", side_effect=capture):
            layers = FolderSourceLoader(self.folder, "commune").load(FakeStore(), TableNamer("s"))
        self.assertEqual(layers.srid, 2154)
        self.assertEqual(set(layers.tables), {"commune", "building"})
        building, srid = stored[layers.tables["building"]]
        self.assertEqual(srid, 2154)
        self.assertEqual(building.crs.to_epsg(), 2154)


class DatabaseSourceLoaderTests(unittest.TestCase):
    def test_zone_without_srid_needs_a_forced_srid(self):
        source = FakeStore({"commune": {"the_geom": "geometry", "code_insee": "character varying"}}, srid=0)
        loader = DatabaseSourceLoader(
            ConnectionSettings(), {"commune": "commune"}, "commune", "code_insee", [Location("69400")], 500.0
        )
        with patch("zonechain.loader.PostGISStore.open", return_value=source):
            with self.assertRaises(ConfigError):
                loader.load(FakeStore(), TableNamer("s"))
        self.assertTrue(source.closed)

    def test_layers_are_copied_inside_the_area(self):
        source = FakeStore({
            "commune": {"the_geom": "geometry(MultiPolygon,2154)", "code_insee": "character varying"},
            "bd.batiment": {"geom": "geometry(Polygon,2154)", "hauteur": "double precision"},
        })
        source.fetchrow_values = [(b"zone",), (b"area",)]
        source.fetchall_values = [[(b"z", "69400")], [(b"b", 12.0)]]
        working = FakeStore()
        loader = DatabaseSourceLoader(
            ConnectionSettings(),
            {"commune": "commune", "building": "bd.batiment", "road": "bd.route"},
            "commune",
            "code_insee",
            [Location("69400")],
            500.0,
        )
        with patch("zonechain.loader.PostGISStore.open", return_value=source), \
                patch("zonechain.loader.insert_rows") as insert:
            layers = loader.load(working, TableNamer("s"))
        self.assertEqual(layers.srid, 2154)
        self.assertEqual(set(layers.tables), {"commune", "building"})
        building_columns = insert.call_args_list[1][0][2]
        self.assertEqual(building_columns, {"the_geom": "geometry(Polygon,2154)", "hauteur": "double precision"})
        self.assertIn('ST_Intersects("geom", ST_GeomFromEWKB(%s))', source.sql())
        self.assertTrue(source.closed)


if __name__ == "__main__":
    unittest.main()
