"""
Per sub-area computation.

SubAreaProcessor is the seam to the indicator subsystem: it receives one
sub-area table and returns category -> table handles. LayerClipProcessor is
the default implementation; indicator families and population rasters are
delegated to pluggable collaborators.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol, Tuple

from zonechain.decompose import SubArea
from zonechain.errors import DataUnavailableError
from zonechain.naming import TableNamer
from zonechain.parameters import ProcessingParameters
from zonechain.results import ResultSet
from zonechain.store import quote_ident

logger = logging.getLogger(__name__)

BBox4326 = Tuple[float, float, float, float]

WGS84_EXTENT_SQL = """
SELECT ST_XMin(extent), ST_YMin(extent), ST_XMax(extent), ST_YMax(extent)
FROM (SELECT ST_Extent(ST_Transform(the_geom, 4326)) AS extent FROM {table}) s;
"""

# Each population cell is shared between its buildings by floor area.
BUILDING_POPULATION_SQL = """
DROP TABLE IF EXISTS {target};
CREATE TABLE {target} AS
WITH shares AS (
  SELECT b.id_build, c.id_pop, c.pop,
         ST_Area(ST_Intersection(b.the_geom, c.the_geom)) * {floors} AS floor_area
  FROM {building} b JOIN {population} c ON ST_Intersects(b.the_geom, c.the_geom)
),
totals AS (
  SELECT id_pop, SUM(floor_area) AS floor_area FROM shares GROUP BY id_pop
),
per_building AS (
  SELECT s.id_build, SUM(s.pop * s.floor_area / NULLIF(t.floor_area, 0)) AS pop
  FROM shares s JOIN totals t ON t.id_pop = s.id_pop
  GROUP BY s.id_build
)
SELECT {columns}, COALESCE(p.pop, 0)::float AS pop
FROM {building} b LEFT JOIN per_building p ON p.id_build = b.id_build;
"""


class SubAreaProcessor(Protocol):
    def process(
        self, store, namer: TableNamer, sub_area: SubArea, params: ProcessingParameters
    ) -> Optional[Mapping[str, str]]:
        ...


class IndicatorComputer(Protocol):
    """RSU/LCZ/UTRF/TEB families, road traffic and ground acoustic indicators."""

    def compute(
        self, store, namer: TableNamer, layers: ResultSet, params: ProcessingParameters
    ) -> Mapping[str, str]:
        ...


class PopulationProvider(Protocol):
    def fetch(self, store, namer: TableNamer, bbox: BBox4326, srid: int) -> str:
        """Import a population grid covering bbox (min_lon, min_lat, max_lon, max_lat).

        Raises DataUnavailableError when no data covers the area.
        """
        ...


def create_empty_population_table(store, namer: TableNamer, srid: int) -> str:
    table = namer.name("population")
    store.execute(
        f"""
        DROP TABLE IF EXISTS {table};
        CREATE TABLE {table} (the_geom geometry(POLYGON, {int(srid)}), id_pop integer, pop float);
        """
    )
    return table


class LayerClipProcessor:
    def __init__(
        self,
        layers: Mapping[str, str],
        srid: int,
        indicators: Optional[IndicatorComputer] = None,
        population: Optional[PopulationProvider] = None,
    ) -> None:
        self.layers = dict(layers)
        self.srid = srid
        self.indicators = indicators
        self.population = population

    def process(
        self, store, namer: TableNamer, sub_area: SubArea, params: ProcessingParameters
    ) -> Optional[Dict[str, str]]:
        zone = namer.name("zone")
        store.execute(
            f"""
            DROP TABLE IF EXISTS {zone};
            CREATE TABLE {zone} AS SELECT the_geom, id_zone FROM {sub_area.table};
            """
        )
        results: Dict[str, str] = {"zone": zone}
        for layer, source in self.layers.items():
            if not store.has_table(source):
                continue
            clipped = namer.name(layer)
            store.execute(
                f"""
                DROP TABLE IF EXISTS {clipped};
                CREATE TABLE {clipped} AS
                SELECT s.*
                FROM {source} s, {zone} z
                WHERE ST_Intersects(s.the_geom, ST_Buffer(z.the_geom, %s));
                """,
                (params.distance,),
            )
            results[layer] = clipped
        logger.info("GIS layers prepared for %s", sub_area.id)

        if params.worldpop_indicators:
            population, found = self._population(store, namer, zone)
            results["population"] = population
            if found and "building" in results:
                results["building"] = self._building_population(store, namer, results["building"], population)

        requested = []
        if params.rsu_indicators:
            requested.extend(params.rsu_indicators.indicator_use)
        if params.road_traffic:
            requested.append("road_traffic")
        if params.ground_acoustic:
            requested.append("ground_acoustic")
        if self.indicators is not None:
            computed = self.indicators.compute(store, namer, ResultSet(results), params)
            results.update({k: v for k, v in computed.items() if v})
        elif requested:
            logger.warning("No indicator subsystem configured, skipping %s for %s", ", ".join(requested), sub_area.id)

        logger.info("%s has been processed", sub_area.id)
        return results

    def _population(self, store, namer: TableNamer, zone: str) -> Tuple[str, bool]:
        """Population table of the zone and whether real data was found."""
        try:
            if self.population is None:
                raise DataUnavailableError("no population provider configured")
            row = store.fetch_row(WGS84_EXTENT_SQL.format(table=zone))
            if not row or row[0] is None:
                raise DataUnavailableError("the zone has no extent")
            return self.population.fetch(store, namer, (row[0], row[1], row[2], row[3]), self.srid), True
        except DataUnavailableError as exc:
            logger.info("Cannot find the population grid (%s). Create a default empty population table", exc)
            return create_empty_population_table(store, namer, self.srid), False

    def _building_population(self, store, namer: TableNamer, building: str, population: str) -> str:
        columns = store.columns(building)
        if "id_build" not in columns:
            logger.info("Cannot compute any population data at building level: no id_build column in %s", building)
            return building
        floors = "GREATEST(COALESCE(b.nb_lev, 1), 1)" if "nb_lev" in columns else "1"
        kept = ", ".join(f"b.{quote_ident(c)}" for c in columns if c != "pop")
        target = namer.name("building")
        store.execute(
            BUILDING_POPULATION_SQL.format(
                target=target, building=building, population=population, floors=floors, columns=kept
            )
        )
        store.drop_tables([building])
        logger.info("Population distributed on the buildings of %s", building)
        return target
