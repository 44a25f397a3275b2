from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from zonechain.errors import LocationError
from zonechain.naming import TableNamer
from zonechain.parameters import Location

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubArea:
    id: str
    table: str
    part_index: int


class BoundaryZoneSource:
    """Materialises the zone of a location from a boundary layer, or from its bbox."""

    def __init__(self, boundary_table: str, id_column: str, srid: int) -> None:
        self.boundary_table = boundary_table
        self.id_column = id_column
        self.srid = srid

    def materialize(self, store, namer: TableNamer, location: Location) -> str:
        zone_table = namer.name("zone_source")
        if location.bbox is not None:
            min_y, min_x, max_y, max_x = location.bbox
            store.execute(
                f"""
                DROP TABLE IF EXISTS {zone_table};
                CREATE TABLE {zone_table} AS
                SELECT ST_MakeEnvelope(%s, %s, %s, %s, {int(self.srid)}) AS the_geom, %s::varchar AS id_zone;
                """,
                (min_x, min_y, max_x, max_y, location.id),
            )
            return zone_table
        store.execute(
            f"""
            DROP TABLE IF EXISTS {zone_table};
            CREATE TABLE {zone_table} AS
            SELECT ST_CollectionExtract(ST_MakeValid(the_geom), 3) AS the_geom, %s::varchar AS id_zone
            FROM {self.boundary_table}
            WHERE {self.id_column}::varchar = %s;
            """,
            (location.id, location.id),
        )
        if store.row_count(zone_table) == 0:
            store.drop_tables([zone_table])
            raise LocationError(location.id, f"Cannot find the zone {location.id} in {self.boundary_table}")
        return zone_table


class AreaDecomposer:
    def __init__(self, store, namer: TableNamer) -> None:
        self.store = store
        self.namer = namer

    def decompose(self, zone_table: str, location_id: str, srid: int) -> List[SubArea]:
        parts = self.store.geometry_parts(zone_table)
        if len(parts) > 1:
            logger.info(
                "The location %s is represented by %d polygons. Each polygon is processed individually.",
                location_id,
                len(parts),
            )
        sub_areas: List[SubArea] = []
        for index, wkt in enumerate(parts, start=1):
            if wkt is None:
                logger.debug("Skipping empty part %d of %s", index, location_id)
                continue
            sub_area_id = location_id if len(parts) == 1 else f"{location_id}_{index}"
            table = self.namer.name("sub_area")
            self.store.create_sub_area_table(table, wkt, srid, sub_area_id)
            sub_areas.append(SubArea(sub_area_id, table, index))
        return sub_areas
