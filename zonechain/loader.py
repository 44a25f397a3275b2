"""
Source loading into the working store.

FolderSourceLoader reads vector files with geopandas; DatabaseSourceLoader
copies the tables of another PostGIS database, restricted to the requested
locations. Both return the working SRID actually used.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import geopandas as gpd
import pandas as pd
from psycopg2 import Binary

from zonechain.errors import ConfigError, ResourceError
from zonechain.naming import TableNamer
from zonechain.parameters import INPUT_LAYERS, ConnectionSettings, Location
from zonechain.store import PostGISStore, create_table, insert_rows, is_geometry_type, quote_ident, read_rows

logger = logging.getLogger(__name__)

VECTOR_SUFFIXES = (".shp", ".geojson", ".json", ".fgb", ".gpkg")

PANDAS_TO_POSTGRES = {
    "i": "bigint",
    "u": "bigint",
    "f": "double precision",
    "b": "boolean",
    "M": "timestamp",
}


@dataclass(frozen=True)
class SourceLayers:
    tables: Dict[str, str]
    srid: int


def _postgres_type(dtype) -> str:
    return PANDAS_TO_POSTGRES.get(dtype.kind, "text")


def _cell(value):
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if hasattr(value, "item"):
        return value.item()
    return value


def _intersects_filter(geom: str, layer_srid: int, srid: int) -> str:
    area = "ST_GeomFromEWKB(%s)"
    if not layer_srid:
        return f"ST_Intersects(ST_SetSRID({quote_ident(geom)}, {int(srid)}), {area})"
    if layer_srid != srid:
        area = f"ST_Transform({area}, {int(layer_srid)})"
    return f"ST_Intersects({quote_ident(geom)}, {area})"


def geodataframe_to_store(store: PostGISStore, gdf: gpd.GeoDataFrame, table: str, srid: int) -> int:
    """Write a GeoDataFrame into a new working table with a ``the_geom`` column."""
    gdf = gdf.rename(columns={c: c.lower() for c in gdf.columns if c != gdf.geometry.name})
    attributes = [c for c in gdf.columns if c != gdf.geometry.name and c != "the_geom"]
    columns = {c: _postgres_type(gdf[c].dtype) for c in attributes}
    columns["the_geom"] = "geometry"
    store.drop_tables([table])
    create_table(store, table, columns, srid)
    rows = []
    for values, geometry in zip(gdf[attributes].itertuples(index=False, name=None), gdf.geometry):
        ewkb = None
        if geometry is not None and not geometry.is_empty:
            ewkb = Binary(geometry.wkb)
        rows.append(tuple(_cell(v) for v in values) + (ewkb,))
    insert_rows(store, table, columns, rows, srid=srid)
    store.execute(f"CREATE INDEX ON {table} USING GIST (the_geom);")
    return len(rows)


class FolderSourceLoader:
    def __init__(self, folder: Path, zone_table: str, srid: Optional[int] = None) -> None:
        self.folder = Path(folder)
        self.zone_table = zone_table
        self.forced_srid = srid

    def find_files(self) -> Dict[str, Path]:
        if not self.folder.exists():
            raise ConfigError("The input folder doesn't exist")
        if not self.folder.is_dir():
            raise ConfigError("The input folder must be a directory")
        wanted = (self.zone_table,) + INPUT_LAYERS
        files: Dict[str, Path] = {}
        for path in sorted(self.folder.rglob("*")):
            name = path.stem.lower()
            if path.suffix.lower() in VECTOR_SUFFIXES and name in wanted and name not in files:
                files[name] = path
        if self.zone_table not in files:
            raise ConfigError(f"The input folder must contains a file named {self.zone_table}")
        return files

    def load(self, store: PostGISStore, namer: TableNamer) -> SourceLayers:
        files = self.find_files()
        try:
            zone = gpd.read_file(files.pop(self.zone_table))
        except Exception as exc:
            raise ResourceError(f"Cannot read the {self.zone_table} file: {exc}") from exc
        srid = zone.crs.to_epsg() if zone.crs is not None else None
        if not srid:
            if not self.forced_srid:
                raise ConfigError(
                    f"Cannot find a SRID value for the layer {self.zone_table}.\n"
                    "Please set a valid OGC prj or use the parameter srid to force it."
                )
            srid = self.forced_srid
            zone = zone.set_crs(epsg=srid, allow_override=True)

        tables = {self.zone_table: namer.name(self.zone_table)}
        geodataframe_to_store(store, zone, tables[self.zone_table], srid)
        for index, (layer, path) in enumerate(files.items(), start=1):
            logger.debug("Loading file %s %d on %d", path, index, len(files))
            try:
                gdf = gpd.read_file(path)
            except Exception as exc:
                raise ResourceError(f"Cannot read the file {path}: {exc}") from exc
            if gdf.crs is None:
                gdf = gdf.set_crs(epsg=srid)
            elif gdf.crs.to_epsg() != srid:
                gdf = gdf.to_crs(epsg=srid)
            tables[layer] = namer.name(layer)
            geodataframe_to_store(store, gdf, tables[layer], srid)
        logger.info("Loaded %d layers from %s (srid=%d)", len(tables), self.folder, srid)
        return SourceLayers(tables, srid)


class DatabaseSourceLoader:
    """Copies the input tables that intersect the requested locations."""

    def __init__(
        self,
        settings: ConnectionSettings,
        tables: Mapping[str, str],
        zone_table: str,
        zone_id_column: str,
        locations: Sequence[Location],
        distance: float,
        srid: Optional[int] = None,
    ) -> None:
        self.settings = settings
        self.tables = dict(tables)
        self.zone_table = zone_table
        self.zone_id_column = zone_id_column
        self.locations = list(locations)
        self.distance = distance
        self.forced_srid = srid

    def _area_filter(self, source: PostGISStore, zone_source: str, srid: int) -> Optional[bytes]:
        ids = [location.id for location in self.locations if location.bbox is None]
        parts: List[bytes] = []
        if ids:
            row = source.fetch_row(
                f"SELECT ST_AsEWKB(ST_Union(the_geom)) FROM {zone_source} "
                f"WHERE {quote_ident(self.zone_id_column)}::varchar = ANY(%s);",
                (ids,),
            )
            if row and row[0] is not None:
                parts.append(bytes(row[0]))
        for location in self.locations:
            if location.bbox is not None:
                min_y, min_x, max_y, max_x = location.bbox
                row = source.fetch_row(
                    f"SELECT ST_AsEWKB(ST_MakeEnvelope(%s, %s, %s, %s, {int(srid)}));",
                    (min_x, min_y, max_x, max_y),
                )
                parts.append(bytes(row[0]))
        if not parts:
            return None
        row = source.fetch_row(
            "SELECT ST_AsEWKB(ST_Buffer(ST_Union(ST_GeomFromEWKB(g)), %s)) FROM unnest(%s::bytea[]) AS g;",
            (self.distance, [Binary(p) for p in parts]),
        )
        return bytes(row[0]) if row and row[0] is not None else None

    def load(self, store: PostGISStore, namer: TableNamer) -> SourceLayers:
        source = PostGISStore.open(self.settings)
        try:
            zone_source = self.tables.get(self.zone_table, self.zone_table)
            if not source.has_table(zone_source):
                raise ConfigError(f"Cannot find the zone table {zone_source} in the input database")
            srid = source.srid(zone_source) or self.forced_srid
            if not srid:
                raise ConfigError(f"Cannot find a SRID value for the table {zone_source}. Use the parameter srid.")
            area = self._area_filter(source, zone_source, srid)
            if area is None:
                raise ConfigError("None of the requested locations can be found in the input database")

            tables: Dict[str, str] = {}
            for layer, source_table in self.tables.items():
                if not source.has_table(source_table):
                    logger.warning("The input table %s does not exist, the layer %s is skipped", source_table, layer)
                    continue
                columns = source.columns(source_table)
                geometry_columns = [c for c, t in columns.items() if is_geometry_type(t)]
                if not geometry_columns:
                    logger.warning("The input table %s has no geometry column, skipped", source_table)
                    continue
                geom = geometry_columns[0]
                layer_srid = source.srid(source_table, geom)
                target_srid = srid if layer_srid and layer_srid != srid else None
                rows = read_rows(
                    source,
                    source_table,
                    columns,
                    target_srid=target_srid,
                    where=_intersects_filter(geom, layer_srid, srid),
                    params=(Binary(area),),
                )
                working_columns = {("the_geom" if c == geom else c): t for c, t in columns.items()}
                tables[layer] = namer.name(layer)
                store.drop_tables([tables[layer]])
                create_table(store, tables[layer], working_columns, srid)
                insert_rows(store, tables[layer], working_columns, rows, srid=srid)
                store.execute(f"CREATE INDEX ON {tables[layer]} USING GIST (the_geom);")
                logger.debug("Copied %d rows from %s", len(rows), source_table)
        finally:
            source.close()
        logger.info("Loaded %d tables from %s (srid=%d)", len(tables), self.settings.describe(), srid)
        return SourceLayers(tables, srid)
