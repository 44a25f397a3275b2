"""Per-location failure log: a ``log_zones`` working table mirrored to GeoJSON files."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import psycopg2

from zonechain import __version__

logger = logging.getLogger(__name__)

LOG_TABLE = "log_zones"

_UNSAFE_FILE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

CREATE_LOG_SQL = f"""
CREATE TABLE IF NOT EXISTS {LOG_TABLE} (
  the_geom geometry(GEOMETRY, 4326),
  location varchar,
  info varchar,
  version varchar,
  build_number varchar
);
"""

LOG_GEOJSON_SQL = f"""
SELECT jsonb_build_object(
  'type', 'FeatureCollection',
  'features', COALESCE(jsonb_agg(
    jsonb_build_object(
      'type', 'Feature',
      'geometry', ST_AsGeoJSON(the_geom)::jsonb,
      'properties', jsonb_build_object(
        'location', location,
        'info', info,
        'version', version,
        'build_number', build_number
      )
    )
  ), '[]'::jsonb)
)
FROM {LOG_TABLE}
WHERE location = %s;
"""


def log_file_name(location: str) -> str:
    return f"{LOG_TABLE}_{_UNSAFE_FILE_CHARS.sub('_', location)}.geojson"


def build_number() -> str:
    return os.environ.get("ZONECHAIN_BUILD", "dev")


def export_geojson(store, sql: str, out_path: Path, params=None) -> None:
    """
    Runs a query expected to return a single row with a single JSON/JSONB column.
    Writes it to out_path.
    """
    row = store.fetch_row(sql, params or ())
    if not row:
        raise RuntimeError("GeoJSON query returned no rows.")
    geo = row[0]
    if isinstance(geo, str):
        data = json.loads(geo)
    else:
        data = geo
    out_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")


@dataclass(frozen=True)
class FailureEntry:
    location: str
    message: str
    path: Optional[Path] = None


class FailureLog:
    def __init__(self, store, folder: Path) -> None:
        self.store = store
        self.folder = Path(folder)
        self.entries: List[FailureEntry] = []
        self._created = False

    def _ensure_table(self) -> None:
        if not self._created:
            self.store.execute(CREATE_LOG_SQL)
            self._created = True

    def record(self, location: str, message: str, zone_table: Optional[str] = None) -> FailureEntry:
        message = message or "Unknown error"
        self._ensure_table()
        values = (location, message, __version__, build_number())
        inserted = False
        if zone_table and self.store.has_table(zone_table):
            try:
                self.store.execute(
                    f"INSERT INTO {LOG_TABLE} (the_geom, location, info, version, build_number) "
                    f"SELECT ST_Transform(ST_Union(the_geom), 4326), %s, %s, %s, %s FROM {zone_table};",
                    values,
                )
                inserted = True
            except psycopg2.Error as exc:
                logger.warning("Cannot log the geometry of the zone %s: %s", location, exc)
        if not inserted:
            self.store.execute(
                f"INSERT INTO {LOG_TABLE} (the_geom, location, info, version, build_number) "
                "VALUES (NULL, %s, %s, %s, %s);",
                values,
            )

        path: Optional[Path] = self.folder / log_file_name(location)
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
            export_geojson(self.store, LOG_GEOJSON_SQL, path, (location,))
        except OSError as exc:
            logger.warning("Cannot write the log file of the location %s: %s", location, exc)
            path = None
        entry = FailureEntry(location, message, path)
        self.entries.append(entry)
        logger.error("The location %s has failed: %s. See %s", location, message, path)
        return entry
