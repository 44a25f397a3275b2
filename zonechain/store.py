"""
PostGIS access layer.

Every pipeline stage talks to the working database through PostGISStore and
only ever passes table names around. The store is the single place where
SQL strings are rendered from table/column metadata.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2.extras import execute_values

from zonechain.errors import ResourceError
from zonechain.parameters import ConnectionSettings

if TYPE_CHECKING:
    from zonechain.merge import TableProjection

logger = logging.getLogger(__name__)

Extent = Tuple[float, float, float, float]

COLUMNS_SQL = """
SELECT a.attname, format_type(a.atttypid, a.atttypmod)
FROM pg_attribute a
WHERE a.attrelid = to_regclass(%s)
  AND a.attnum > 0
  AND NOT a.attisdropped
ORDER BY a.attnum;
"""

TYPMOD_SRID_SQL = """
SELECT postgis_typmod_srid(a.atttypmod)
FROM pg_attribute a
WHERE a.attrelid = to_regclass(%s)
  AND a.attname = %s
  AND NOT a.attisdropped;
"""

GEOMETRY_PARTS_SQL = """
WITH zone AS (
  SELECT ST_CollectionExtract(ST_Collect({geom}), 3) AS geom
  FROM {table}
)
SELECT
  n,
  CASE WHEN ST_IsEmpty(ST_GeometryN(zone.geom, n)) THEN NULL
       ELSE ST_AsText(ST_GeometryN(zone.geom, n))
  END
FROM zone, generate_series(1, ST_NumGeometries(zone.geom)) AS n
ORDER BY n;
"""

EXTENT_SQL = """
SELECT ST_XMin(extent), ST_YMin(extent), ST_XMax(extent), ST_YMax(extent)
FROM (SELECT ST_Extent({geom}) AS extent FROM {table}) s;
"""


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def connect(settings: ConnectionSettings):
    try:
        return psycopg2.connect(**settings.connect_kwargs())
    except psycopg2.Error as exc:
        raise ResourceError(f"Cannot connect to Postgres {settings.describe()}: {exc}") from exc


def exec_sql(cur, sql: str, params=None) -> None:
    cur.execute(sql, params)


def fetch_one(cur, sql: str, params=None) -> Any:
    cur.execute(sql, params or ())
    row = cur.fetchone()
    return row[0] if row else None


def fetch_row(cur, sql: str, params=None):
    cur.execute(sql, params or ())
    return cur.fetchone()


def fetch_all(cur, sql: str, params=None) -> List[tuple]:
    cur.execute(sql, params or ())
    return cur.fetchall()


def is_geometry_type(type_name: str) -> bool:
    return type_name.lower().startswith("geometry")


class PostGISStore:
    def __init__(self, conn, schema: Optional[str] = None, owns_schema: bool = True) -> None:
        self.conn = conn
        self.schema = schema
        # only a schema created by this store is dropped on teardown
        self.owns_schema = owns_schema

    @classmethod
    def open(cls, settings: ConnectionSettings, schema: Optional[str] = None) -> "PostGISStore":
        conn = connect(settings)
        # Statement-level autocommit keeps the session usable after a failed location.
        conn.autocommit = True
        store = cls(conn, schema)
        try:
            store.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            if schema:
                store.owns_schema = not store.fetch_one("SELECT to_regnamespace(%s) IS NOT NULL;", (schema,))
                store.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}; SET search_path TO {schema}, public;")
        except psycopg2.Error as exc:
            conn.close()
            raise ResourceError(f"Cannot prepare the working schema {schema}: {exc}") from exc
        logger.debug("Opened PostGIS store %s (schema=%s)", settings.describe(), schema)
        return store

    def execute(self, sql: str, params=None) -> None:
        with self.conn.cursor() as cur:
            exec_sql(cur, sql, params)

    def fetch_one(self, sql: str, params=None) -> Any:
        with self.conn.cursor() as cur:
            return fetch_one(cur, sql, params)

    def fetch_row(self, sql: str, params=None):
        with self.conn.cursor() as cur:
            return fetch_row(cur, sql, params)

    def fetch_all(self, sql: str, params=None) -> List[tuple]:
        with self.conn.cursor() as cur:
            return fetch_all(cur, sql, params)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        previous = self.conn.autocommit
        self.conn.autocommit = False
        try:
            yield
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            self.conn.autocommit = previous

    def has_table(self, name: Optional[str]) -> bool:
        if not name:
            return False
        return bool(self.fetch_one("SELECT to_regclass(%s) IS NOT NULL;", (name,)))

    def columns(self, name: str) -> Dict[str, str]:
        return {column: type_name for column, type_name in self.fetch_all(COLUMNS_SQL, (name,))}

    def geometry_columns(self, name: str) -> List[str]:
        return [column for column, type_name in self.columns(name).items() if is_geometry_type(type_name)]

    def srid(self, name: str, geom_column: str = "the_geom") -> int:
        srid = self.fetch_one(TYPMOD_SRID_SQL, (name, geom_column)) or 0
        if srid:
            return srid
        return self.fetch_one(
            f"SELECT ST_SRID({quote_ident(geom_column)}) FROM {name} "
            f"WHERE {quote_ident(geom_column)} IS NOT NULL LIMIT 1;"
        ) or 0

    def row_count(self, name: str) -> int:
        return self.fetch_one(f"SELECT count(*) FROM {name};") or 0

    def extent(self, name: str, geom_column: str = "the_geom") -> Optional[Extent]:
        row = self.fetch_row(EXTENT_SQL.format(geom=quote_ident(geom_column), table=name))
        if not row or row[0] is None:
            return None
        return (row[0], row[1], row[2], row[3])

    def geometry_parts(self, name: str, geom_column: str = "the_geom") -> List[Optional[str]]:
        """WKT of every polygon part in collection order, None for empty parts."""
        rows = self.fetch_all(GEOMETRY_PARTS_SQL.format(geom=quote_ident(geom_column), table=name))
        return [wkt for _, wkt in rows]

    def create_sub_area_table(self, name: str, wkt: str, srid: int, id_zone: str) -> None:
        self.execute(
            f"""
            DROP TABLE IF EXISTS {name};
            CREATE TABLE {name} (the_geom geometry(POLYGON, {int(srid)}), id_zone varchar);
            INSERT INTO {name} (the_geom, id_zone) VALUES (ST_GeomFromText(%s, {int(srid)}), %s);
            """,
            (wkt, id_zone),
        )

    def union_all(self, target: str, projections: Sequence["TableProjection"]) -> None:
        selects = []
        for projection in projections:
            columns = ", ".join(
                quote_ident(column.name) if column.present
                else f"NULL::{column.type} AS {quote_ident(column.name)}"
                for column in projection.columns
            )
            selects.append(f"SELECT {columns} FROM {projection.table}")
        self.execute(f"DROP TABLE IF EXISTS {target}; CREATE TABLE {target} AS {' UNION ALL '.join(selects)};")

    def drop_tables(self, names: Iterable[Optional[str]]) -> None:
        names = [name for name in names if name]
        if names:
            self.execute(f"DROP TABLE IF EXISTS {', '.join(names)};")

    def close(self) -> None:
        if self.conn is not None and not self.conn.closed:
            self.conn.close()

    def teardown(self, delete: bool) -> None:
        """Close the session and, when asked, drop the working schema with everything in it."""
        if not delete:
            self.close()
            return
        if self.conn is None or self.conn.closed:
            raise ResourceError(f"Cannot delete the working store {self.schema}: the connection is closed")
        try:
            if self.schema and self.owns_schema:
                self.execute(f"DROP SCHEMA IF EXISTS {self.schema} CASCADE;")
            elif self.schema:
                logger.warning("The schema %s existed before the run, it is kept", self.schema)
            self.conn.close()
        except psycopg2.Error as exc:
            raise ResourceError(f"Cannot delete the working store {self.schema}: {exc}") from exc
        logger.debug("The working store %s has been deleted", self.schema)


def geometry_type_for(type_name: str, srid: int) -> str:
    return f"geometry(GEOMETRY, {int(srid)})" if is_geometry_type(type_name) else type_name


def create_table(store: PostGISStore, name: str, columns: Dict[str, str], srid: int) -> None:
    """Create ``name`` from a column -> type mapping; geometry columns get the given SRID."""
    definitions = ", ".join(
        f"{quote_ident(column)} {geometry_type_for(type_name, srid)}" for column, type_name in columns.items()
    )
    store.execute(f"CREATE TABLE {name} ({definitions});")


def read_rows(
    store: PostGISStore,
    table: str,
    columns: Dict[str, str],
    target_srid: Optional[int] = None,
    where: str = "",
    params=None,
) -> List[tuple]:
    """Rows of ``table`` in column order, geometries as EWKB, reprojected when target_srid is set."""
    expressions = []
    for column, type_name in columns.items():
        quoted = quote_ident(column)
        if is_geometry_type(type_name):
            geometry = f"ST_Transform({quoted}, {int(target_srid)})" if target_srid else quoted
            expressions.append(f"ST_AsEWKB({geometry})")
        else:
            expressions.append(quoted)
    sql = f"SELECT {', '.join(expressions)} FROM {table}"
    if where:
        sql += f" WHERE {where}"
    return store.fetch_all(sql + ";", params)


def insert_rows(
    store: PostGISStore,
    table: str,
    columns: Dict[str, str],
    rows: Sequence[tuple],
    page_size: int = 100,
    srid: Optional[int] = None,
) -> int:
    """Batch insert; geometries arrive as (E)WKB and are stamped with srid when given."""
    if not rows:
        return 0
    geometry = f"ST_SetSRID(ST_GeomFromEWKB(%s), {int(srid)})" if srid else "ST_GeomFromEWKB(%s)"
    template = "(" + ", ".join(
        geometry if is_geometry_type(type_name) else "%s" for type_name in columns.values()
    ) + ")"
    sql = f"INSERT INTO {table} ({', '.join(quote_ident(c) for c in columns)}) VALUES %s;"
    with store.conn.cursor() as cur:
        execute_values(cur, sql, rows, template=template, page_size=page_size)
    return len(rows)
