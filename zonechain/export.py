"""
Result exporters.

FileExporter writes one folder per location (FlatGeobuf vectors, optional
ESRI ASCII grids). DatabaseExporter appends into a destination PostGIS
database: missing tables are created, existing ones are only ever extended.
A category that fails to export is logged and the others go on.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.transform import from_origin

from zonechain.errors import ExportError, ResourceError
from zonechain.results import ResultSet
from zonechain.store import (
    PostGISStore,
    create_table,
    insert_rows,
    is_geometry_type,
    quote_ident,
    read_rows,
)

logger = logging.getLogger(__name__)

BATCH_MAX_SIZE = 100

EXPORT_FILTERS: Dict[str, str] = {
    "block_indicators": "id_rsu IS NOT NULL",
}

GRID_KEY_COLUMNS = ("id_grid", "id_row", "id_col")
ASC_NODATA = -9999.0

# Types some engines expose that PostgreSQL cannot store.
TYPE_FIXUPS = {
    "decfloat": "float",
}


def destination_type(type_name: str) -> str:
    return TYPE_FIXUPS.get(type_name.lower(), type_name)


def reconcile_srid(source_srid: int, target_srid: int, category: str) -> Optional[int]:
    """SRID to reproject the source rows to before insertion, None to copy them as is."""
    if source_srid == target_srid:
        return None
    if source_srid and target_srid:
        return target_srid
    raise ExportError(
        category, f"The output SRID ({target_srid}) of {category} is inconsistent with the source SRID ({source_srid})"
    )


def _geometry_column(columns: Mapping[str, str]) -> Optional[str]:
    for column, type_name in columns.items():
        if is_geometry_type(type_name):
            return column
    return None


class FileExporter:
    def __init__(
        self,
        store: PostGISStore,
        folder: Path,
        categories: Sequence[str],
        working_srid: int,
        srid: Optional[int] = None,
        grid_output: str = "fgb",
        cell_size: Optional[tuple] = None,
        delete: bool = True,
    ) -> None:
        self.store = store
        self.folder = Path(folder)
        self.categories = list(categories)
        self.working_srid = working_srid
        self.srid = srid or working_srid
        self.grid_output = grid_output
        self.cell_size = cell_size
        self.delete = delete

    def location_folder(self, location_id: str) -> Path:
        return self.folder / f"zonechain_{location_id}"

    def prepare_folder(self, location_id: str) -> Path:
        folder = self.location_folder(location_id)
        try:
            if folder.exists() and self.delete:
                shutil.rmtree(folder)
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ResourceError(f"Cannot create the output folder {folder}: {exc}") from exc
        return folder

    def export(self, location_id: str, results: ResultSet) -> Dict[str, bool]:
        folder = self.prepare_folder(location_id)
        outcomes: Dict[str, bool] = {}
        for category in self.categories:
            table = results.get(category)
            if not table:
                continue
            try:
                if category == "grid_indicators" and self.grid_output == "asc":
                    written = self.write_ascii_grids(table, folder)
                else:
                    written = self.write_vector(table, folder / f"{category}.fgb")
                outcomes[category] = True
                if written:
                    logger.info("The table %s has been saved in %s", category, folder)
            except Exception as exc:
                error = exc if isinstance(exc, ExportError) else ExportError(category, str(exc))
                logger.error("Cannot save the table %s in %s: %s", category, folder, error)
                outcomes[category] = False
        return outcomes

    def read_frame(self, table: str) -> gpd.GeoDataFrame:
        columns = self.store.columns(table)
        geometry = _geometry_column(columns)
        if geometry is None:
            raise ExportError(table, f"The table {table} has no geometry column")
        expressions = []
        for column, type_name in columns.items():
            quoted = quote_ident(column)
            if is_geometry_type(type_name) and column != geometry:
                # FlatGeobuf carries a single geometry column
                continue
            if is_geometry_type(type_name) and self.srid != self.working_srid:
                expressions.append(f"ST_Transform({quoted}, {int(self.srid)}) AS {quoted}")
            else:
                expressions.append(quoted)
        sql = f"SELECT {', '.join(expressions)} FROM {table}"
        return gpd.read_postgis(sql, self.store.conn, geom_col=geometry, crs=f"EPSG:{self.srid}")

    def write_vector(self, table: str, path: Path) -> bool:
        if path.exists() and not self.delete:
            raise ExportError(path.stem, f"The file {path} already exists")
        gdf = self.read_frame(table)
        if gdf.empty:
            logger.info("The table %s is empty and is not saved", table)
            return False
        gdf.to_file(path, driver="FlatGeobuf")
        return True

    def write_ascii_grids(self, table: str, folder: Path) -> bool:
        """One ESRI ASCII grid per numeric indicator column of the grid table."""
        gdf = self.read_frame(table)
        if gdf.empty:
            logger.info("The grid %s is empty and is not saved", table)
            return False
        xmin, ymin, xmax, ymax = gdf.total_bounds
        if self.cell_size:
            x_size, y_size = self.cell_size
        else:
            first = gdf.geometry.iloc[0].bounds
            x_size, y_size = first[2] - first[0], first[3] - first[1]
        width = max(1, int(round((xmax - xmin) / x_size)))
        height = max(1, int(round((ymax - ymin) / y_size)))
        centroids = gdf.geometry.centroid
        cols = np.clip(((centroids.x - xmin) // x_size).astype(int), 0, width - 1)
        rows = np.clip(((ymax - centroids.y) // y_size).astype(int), 0, height - 1)

        numeric = [
            column
            for column in gdf.columns
            if column != gdf.geometry.name
            and column not in GRID_KEY_COLUMNS
            and np.issubdtype(gdf[column].dtype, np.number)
        ]
        transform = from_origin(xmin, ymax, x_size, y_size)
        for column in numeric:
            band = np.full((height, width), ASC_NODATA, dtype="float32")
            values = gdf[column].astype("float32").fillna(ASC_NODATA).to_numpy()
            band[rows.to_numpy(), cols.to_numpy()] = values
            profile = {
                "driver": "AAIGrid",
                "height": height,
                "width": width,
                "count": 1,
                "dtype": "float32",
                "crs": f"EPSG:{self.srid}",
                "transform": transform,
                "nodata": ASC_NODATA,
            }
            with rasterio.open(folder / f"grid_indicators_{column}.asc", "w", **profile) as dst:
                dst.write(band, 1)
        return bool(numeric)


class DatabaseExporter:
    def __init__(
        self,
        store: PostGISStore,
        destination: PostGISStore,
        tables: Mapping[str, str],
        working_srid: int,
        srid: Optional[int] = None,
    ) -> None:
        self.store = store
        self.destination = destination
        self.tables = dict(tables)
        self.working_srid = working_srid
        self.srid = srid or working_srid

    def export(self, location_id: str, results: ResultSet) -> Dict[str, bool]:
        outcomes: Dict[str, bool] = {}
        for category, target in self.tables.items():
            source = results.get(category)
            if not source:
                continue
            try:
                count = self.export_table(category, source, target, location_id)
                outcomes[category] = True
                logger.info("%d rows of %s exported into %s", count, category, target)
            except Exception as exc:
                error = exc if isinstance(exc, ExportError) else ExportError(category, str(exc))
                logger.error("Cannot export the table %s into %s: %s", category, target, error)
                outcomes[category] = False
        return outcomes

    def _filter(self, category: str, columns: Mapping[str, str]) -> str:
        predicate = EXPORT_FILTERS.get(category, "")
        if predicate and predicate.split()[0] not in columns:
            logger.warning("The filter '%s' does not apply to %s", predicate, category)
            return ""
        return predicate

    def export_table(self, category: str, source: str, target: str, location_id: str) -> int:
        columns = self.store.columns(source)
        if not columns:
            raise ExportError(category, f"The source table {source} does not exist")
        where = self._filter(category, columns)
        if not self.destination.has_table(target):
            return self.create_target(source, target, columns, where, location_id)
        return self.append_target(category, source, target, columns, where, location_id)

    def create_target(
        self, source: str, target: str, columns: Mapping[str, str], where: str, location_id: str
    ) -> int:
        transform = self.srid if self.srid != self.working_srid else None
        rows = read_rows(self.store, source, dict(columns), target_srid=transform, where=where)
        target_columns = {column: destination_type(type_name) for column, type_name in columns.items()}
        with self.destination.transaction():
            create_table(self.destination, target, target_columns, self.srid)
            insert_rows(self.destination, target, target_columns, rows, page_size=BATCH_MAX_SIZE, srid=self.srid)
            self.destination.execute(
                f"""
                ALTER TABLE {target} ADD COLUMN IF NOT EXISTS id_zone varchar;
                UPDATE {target} SET id_zone = %s;
                ALTER TABLE {target} ADD COLUMN IF NOT EXISTS gid serial;
                """,
                (location_id,),
            )
        return len(rows)

    def append_target(
        self,
        category: str,
        source: str,
        target: str,
        columns: Mapping[str, str],
        where: str,
        location_id: str,
    ) -> int:
        existing = self.destination.columns(target)
        by_lower = {column.lower(): column for column in existing}
        target_geometry = _geometry_column(existing)
        source_geometry = _geometry_column(columns)
        transform = None
        if target_geometry and source_geometry:
            transform = reconcile_srid(
                self.working_srid, self.destination.srid(target, target_geometry), category
            )

        copied = {c: t for c, t in columns.items() if c.lower() not in ("gid", "id_zone")}
        added: List[str] = []
        statements: List[str] = []
        for column, type_name in copied.items():
            if column.lower() not in by_lower:
                target_type = destination_type(type_name)
                if is_geometry_type(target_type):
                    target_type = "geometry"
                statements.append(f"ALTER TABLE {target} ADD COLUMN {quote_ident(column)} {target_type};")
                by_lower[column.lower()] = column
                added.append(column)
        if "id_zone" not in by_lower:
            statements.append(f"ALTER TABLE {target} ADD COLUMN id_zone varchar;")
            by_lower["id_zone"] = "id_zone"

        rows = read_rows(self.store, source, copied, target_srid=transform, where=where)
        insert_columns = {by_lower[c.lower()]: t for c, t in copied.items()}
        insert_columns[by_lower["id_zone"]] = "varchar"
        rows = [tuple(row) + (location_id,) for row in rows]
        with self.destination.transaction():
            for statement in statements:
                self.destination.execute(statement)
            insert_rows(self.destination, target, insert_columns, rows, page_size=BATCH_MAX_SIZE)
        if added:
            logger.info("The columns %s have been added to %s", ", ".join(added), target)
        return len(rows)
