"""
Grid aggregation.

A regular grid is laid over the envelope of the merged ``zone`` table and
every requested indicator is aggregated onto its cells. Each indicator kind
produces one ``(id_grid, ...)`` table; they are joined onto the grid cells
to form ``grid_indicators``. The urban sprawl pass then works on that table.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg2

from zonechain.naming import TableNamer
from zonechain.parameters import GridParameters
from zonechain.results import ResultSet
from zonechain.store import Extent, quote_ident

logger = logging.getLogger(__name__)

SPRAWL_INDICATORS = ("URBAN_SPRAWL_AREAS", "URBAN_SPRAWL_DISTANCES", "URBAN_SPRAWL_COOL_DISTANCES")

URBAN_LCZ = (1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 105)
COOL_LCZ = (101, 102, 103, 104, 106, 107)

GRID_CELLS_SQL = """
DROP TABLE IF EXISTS {grid};
CREATE TABLE {grid} AS
SELECT
  (row_number() OVER (ORDER BY r, c))::integer AS id_grid,
  r AS id_row,
  c AS id_col,
  ST_MakeEnvelope(
    %(xmin)s + (c - 1) * %(dx)s, %(ymax)s - r * %(dy)s,
    %(xmin)s + c * %(dx)s, %(ymax)s - (r - 1) * %(dy)s,
    {srid}
  ) AS the_geom
FROM generate_series(1, %(rows)s) AS r, generate_series(1, %(cols)s) AS c;
CREATE INDEX ON {grid} USING GIST (the_geom);
"""


@dataclass(frozen=True)
class IndicatorSpec:
    kind: str
    category: str
    output: str
    column: Optional[str] = None
    geometry: str = "s.the_geom"
    weight: Optional[str] = None
    where: Optional[str] = None


INDICATORS: Dict[str, IndicatorSpec] = {
    "BUILDING_FRACTION": IndicatorSpec("fraction", "building", "building_fraction"),
    "WATER_FRACTION": IndicatorSpec("fraction", "water", "water_fraction"),
    "VEGETATION_FRACTION": IndicatorSpec("fraction", "vegetation", "vegetation_fraction"),
    "IMPERVIOUS_FRACTION": IndicatorSpec("fraction", "impervious", "impervious_fraction"),
    "ROAD_FRACTION": IndicatorSpec(
        "fraction", "road", "road_fraction", column="width",
        geometry="ST_Buffer(s.the_geom, COALESCE(s.width, 2) / 2.0, 'endcap=flat')",
    ),
    "SEA_LAND_FRACTION": IndicatorSpec("fraction", "water", "sea_fraction", column="type", where="s.type = 'sea'"),
    "BUILDING_HEIGHT": IndicatorSpec("mean", "building", "building_height", column="height_roof"),
    "BUILDING_HEIGHT_WEIGHTED": IndicatorSpec(
        "mean", "building", "building_height_weighted", column="height_roof", weight="s.height_roof"
    ),
    "BUILDING_POP": IndicatorSpec("sum", "building", "building_pop", column="pop"),
    "BUILDING_TYPE_FRACTION": IndicatorSpec("category", "building", "type", column="type"),
    "LCZ_FRACTION": IndicatorSpec("category", "rsu_lcz", "lcz_primary", column="lcz_primary"),
    "LCZ_PRIMARY": IndicatorSpec("majority", "rsu_lcz", "lcz_primary", column="lcz_primary"),
    "UTRF_AREA_FRACTION": IndicatorSpec("category", "rsu_utrf_area", "area_type", column="type"),
    "UTRF_FLOOR_AREA_FRACTION": IndicatorSpec("category", "rsu_utrf_floor_area", "floor_area_type", column="type"),
    "FREE_EXTERNAL_FACADE_DENSITY": IndicatorSpec(
        "mean", "rsu_indicators", "free_external_facade_density", column="free_external_facade_density"
    ),
    "BUILDING_SURFACE_DENSITY": IndicatorSpec(
        "mean", "rsu_indicators", "building_surface_density", column="building_surface_density"
    ),
    "BUILDING_HEIGHT_DIST": IndicatorSpec(
        "mean", "rsu_indicators", "building_height_dist", column="std_height_roof_area_weighted"
    ),
    "FRONTAL_AREA_INDEX": IndicatorSpec("mean", "rsu_indicators", "frontal_area_index", column="frontal_area_index"),
    "ASPECT_RATIO": IndicatorSpec("mean", "rsu_indicators", "aspect_ratio", column="aspect_ratio"),
    "SVF": IndicatorSpec("mean", "rsu_indicators", "svf", column="ground_sky_view_factor"),
    "HEIGHT_OF_ROUGHNESS_ELEMENTS": IndicatorSpec(
        "mean", "rsu_indicators", "height_of_roughness_elements", column="geom_avg_height_roof"
    ),
    "TERRAIN_ROUGHNESS_CLASS": IndicatorSpec(
        "majority", "rsu_indicators", "terrain_roughness_class", column="effective_terrain_roughness_class"
    ),
}

_COLUMN_SUFFIX_RE = re.compile(r"[^a-z0-9]+")


def grid_shape(extent: Extent, x_size: float, y_size: float) -> Optional[Tuple[int, int]]:
    """(columns, rows) of cells covering the extent, None when the extent is degenerate."""
    xmin, ymin, xmax, ymax = extent
    width, height = xmax - xmin, ymax - ymin
    if width <= 0 or height <= 0:
        return None
    return max(1, math.ceil(width / x_size)), max(1, math.ceil(height / y_size))


def align_extent(extent: Extent, x_size: float, y_size: float, origin: Tuple[float, float]) -> Extent:
    """Move the top-left corner of the extent onto the cell lattice anchored at origin."""
    xmin, ymin, xmax, ymax = extent
    x0, y0 = origin
    left = x0 + math.floor((xmin - x0) / x_size) * x_size
    top = y0 + math.ceil((ymax - y0) / y_size) * y_size
    return left, ymin, xmax, top


def category_column(prefix: str, value) -> str:
    suffix = _COLUMN_SUFFIX_RE.sub("_", str(value).lower()).strip("_") or "null"
    return f"{prefix}_{suffix}"


def _intersection_area(geometry: str) -> str:
    return f"ST_Area(ST_Intersection(g.the_geom, {geometry}))"


class GridAggregator:
    def __init__(self, store, namer: TableNamer, srid: int) -> None:
        self.store = store
        self.namer = namer
        self.srid = srid

    def aggregate(self, results: ResultSet, grid_params: Optional[GridParameters]) -> ResultSet:
        if grid_params is None:
            return results
        zone = results.get("zone")
        extent = self.store.extent(zone) if zone else None
        shape = grid_shape(extent, grid_params.x_size, grid_params.y_size) if extent else None
        if shape is None:
            logger.warning("Cannot create a grid to aggregate the indicators")
            return results
        if grid_params.origin is not None:
            extent = align_extent(extent, grid_params.x_size, grid_params.y_size, grid_params.origin)
            shape = grid_shape(extent, grid_params.x_size, grid_params.y_size)

        try:
            grid = self.create_grid(extent, shape, grid_params.x_size, grid_params.y_size)
        except psycopg2.Error as exc:
            logger.warning("Cannot create a grid to aggregate the indicators: %s", exc)
            return results
        sprawl = [name for name in grid_params.indicators if name in SPRAWL_INDICATORS]
        names = [name for name in grid_params.indicators if name in INDICATORS]
        if sprawl and "LCZ_PRIMARY" not in names:
            names.append("LCZ_PRIMARY")

        parts: List[Tuple[str, List[str]]] = []
        for name in names:
            computed = self._indicator(grid, name, INDICATORS[name], results)
            if computed is not None:
                parts.append(computed)

        grid_indicators = self.namer.name("grid_indicators")
        self._join(grid_indicators, grid, parts, grid_params.row_col)
        self.store.drop_tables([grid] + [table for table, _ in parts])
        logger.info("Grid indicators computed on %d x %d cells", shape[0], shape[1])
        updated = results.updated({"grid_indicators": grid_indicators})

        if sprawl:
            has_lcz = any("lcz_primary" in columns for _, columns in parts)
            if has_lcz:
                updated = updated.updated(self.sprawl(grid_indicators, sprawl))
            else:
                logger.warning("The urban sprawl indicators need the LCZ_PRIMARY grid indicator, skipped")
        return updated

    def create_grid(self, extent: Extent, shape: Tuple[int, int], x_size: float, y_size: float) -> str:
        grid = self.namer.name("grid")
        cols, rows = shape
        self.store.execute(
            GRID_CELLS_SQL.format(grid=grid, srid=int(self.srid)),
            {"xmin": extent[0], "ymax": extent[3], "dx": x_size, "dy": y_size, "rows": rows, "cols": cols},
        )
        return grid

    def _source(self, name: str, spec: IndicatorSpec, results: ResultSet) -> Optional[str]:
        table = results.get(spec.category)
        if not table or not self.store.has_table(table):
            logger.warning("The grid indicator %s cannot be computed: no %s table", name, spec.category)
            return None
        if spec.column and spec.column not in self.store.columns(table):
            logger.warning("The grid indicator %s cannot be computed: missing column %s", name, spec.column)
            return None
        return table

    def _indicator(
        self, grid: str, name: str, spec: IndicatorSpec, results: ResultSet
    ) -> Optional[Tuple[str, List[str]]]:
        source = self._source(name, spec, results)
        if source is None:
            return None
        target = self.namer.name(spec.output)
        where = f" AND {spec.where}" if spec.where else ""
        join = f"FROM {grid} g JOIN {source} s ON ST_Intersects(g.the_geom, {spec.geometry}){where}"
        area = _intersection_area(spec.geometry)
        output = quote_ident(spec.output)
        column = f"s.{quote_ident(spec.column)}" if spec.column else None

        if spec.kind == "fraction":
            select = (
                f"SELECT g.id_grid, ST_Area(ST_Intersection(g.the_geom, ST_Union({spec.geometry}))) "
                f"/ ST_Area(g.the_geom) AS {output} {join} GROUP BY g.id_grid, g.the_geom"
            )
            columns = [spec.output]
        elif spec.kind == "mean":
            weight = f"{area} * {spec.weight}" if spec.weight else area
            select = (
                f"SELECT g.id_grid, SUM({weight} * {column}) / NULLIF(SUM({weight}), 0) AS {output} "
                f"{join} GROUP BY g.id_grid"
            )
            columns = [spec.output]
        elif spec.kind == "sum":
            select = (
                f"SELECT g.id_grid, SUM({column} * {area} / NULLIF(ST_Area(s.the_geom), 0)) AS {output} "
                f"{join} GROUP BY g.id_grid"
            )
            columns = [spec.output]
        elif spec.kind == "majority":
            # class with the largest total area in the cell
            select = (
                f"WITH a AS (SELECT g.id_grid, {column} AS v, SUM({area}) AS w "
                f"{join} WHERE {column} IS NOT NULL GROUP BY g.id_grid, {column}) "
                f"SELECT DISTINCT ON (id_grid) id_grid, v AS {output} FROM a ORDER BY id_grid, w DESC, v"
            )
            columns = [spec.output]
        else:
            values = [
                row[0]
                for row in self.store.fetch_all(
                    f"SELECT DISTINCT {quote_ident(spec.column)} FROM {source} "
                    f"WHERE {quote_ident(spec.column)} IS NOT NULL ORDER BY 1;"
                )
            ]
            if not values:
                logger.warning("The grid indicator %s cannot be computed: no %s values", name, spec.column)
                return None
            columns = [category_column(spec.output, value) for value in values]
            fractions = ", ".join(
                f"COALESCE(SUM(CASE WHEN {column} = %s THEN {area} END), 0) / ST_Area(g.the_geom) "
                f"AS {quote_ident(output_column)}"
                for output_column in columns
            )
            self.store.execute(
                f"DROP TABLE IF EXISTS {target}; CREATE TABLE {target} AS "
                f"SELECT g.id_grid, {fractions} {join} GROUP BY g.id_grid, g.the_geom;",
                tuple(values),
            )
            return target, columns

        self.store.execute(f"DROP TABLE IF EXISTS {target}; CREATE TABLE {target} AS {select};")
        logger.debug("Grid indicator %s aggregated into %s", name, target)
        return target, columns

    def _join(self, target: str, grid: str, parts: Sequence[Tuple[str, List[str]]], row_col: bool) -> None:
        select = ["g.id_grid"]
        if row_col:
            select += ["g.id_row", "g.id_col"]
        joins = []
        seen = set()
        for index, (table, columns) in enumerate(parts, start=1):
            alias = f"t{index}"
            for column in columns:
                if column not in seen:
                    seen.add(column)
                    select.append(f"{alias}.{quote_ident(column)}")
            joins.append(f"LEFT JOIN {table} {alias} ON {alias}.id_grid = g.id_grid")
        select.append("g.the_geom")
        self.store.execute(
            f"DROP TABLE IF EXISTS {target}; "
            f"CREATE TABLE {target} AS SELECT {', '.join(select)} FROM {grid} g {' '.join(joins)};"
        )

    def sprawl(self, grid_indicators: str, requested: Sequence[str]) -> Dict[str, str]:
        """Urban sprawl areas from urban LCZ cells, plus cool areas and distance columns."""
        urban = ", ".join(str(v) for v in URBAN_LCZ)
        cool = ", ".join(str(v) for v in COOL_LCZ)
        sprawl_areas = self.namer.name("urban_sprawl_areas")
        self.store.execute(
            f"""
            DROP TABLE IF EXISTS {sprawl_areas};
            CREATE TABLE {sprawl_areas} AS
            SELECT (row_number() OVER ())::integer AS id, the_geom
            FROM (
              SELECT (ST_Dump(ST_Union(the_geom))).geom AS the_geom
              FROM {grid_indicators}
              WHERE lcz_primary IN ({urban})
            ) s;
            """
        )
        categories = {"urban_sprawl_areas": sprawl_areas}

        cool_areas = self.namer.name("urban_cool_areas")
        self.store.execute(
            f"""
            DROP TABLE IF EXISTS {cool_areas};
            CREATE TABLE {cool_areas} AS
            SELECT (row_number() OVER ())::integer AS id, the_geom
            FROM (
              SELECT (ST_Dump(ST_Union(g.the_geom))).geom AS the_geom
              FROM {grid_indicators} g JOIN {sprawl_areas} s ON ST_Contains(s.the_geom, ST_Centroid(g.the_geom))
              WHERE g.lcz_primary IN ({cool})
            ) c;
            """
        )
        if self.store.row_count(cool_areas) > 0:
            categories["urban_cool_areas"] = cool_areas
        else:
            self.store.drop_tables([cool_areas])

        if "URBAN_SPRAWL_DISTANCES" in requested:
            self.store.execute(
                f"""
                ALTER TABLE {grid_indicators} ADD COLUMN IF NOT EXISTS sprawl_distance double precision;
                UPDATE {grid_indicators} g SET sprawl_distance = (
                  SELECT MIN(ST_Distance(ST_Centroid(g.the_geom), ST_Boundary(s.the_geom)))
                  FROM {sprawl_areas} s
                  WHERE ST_Contains(s.the_geom, ST_Centroid(g.the_geom))
                );
                """
            )
        if "URBAN_SPRAWL_COOL_DISTANCES" in requested and "urban_cool_areas" in categories:
            self.store.execute(
                f"""
                ALTER TABLE {grid_indicators} ADD COLUMN IF NOT EXISTS cool_distance double precision;
                UPDATE {grid_indicators} g SET cool_distance = (
                  SELECT MIN(ST_Distance(ST_Centroid(g.the_geom), c.the_geom))
                  FROM {cool_areas} c
                )
                WHERE EXISTS (
                  SELECT 1 FROM {sprawl_areas} s WHERE ST_Contains(s.the_geom, ST_Centroid(g.the_geom))
                );
                """
            )
        logger.info("Urban sprawl areas computed from %s", grid_indicators)
        return categories
