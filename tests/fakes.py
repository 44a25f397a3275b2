from contextlib import contextmanager


class FakeCursor:
    def __init__(self, rowcount=None, fetchone_values=None, fetchall_values=None):
        self.rowcount = rowcount
        self.fetchone_values = list(fetchone_values or [])
        self.fetchall_values = list(fetchall_values or [])
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        self.executed.append((sql, params))

    def fetchone(self):
        if self.fetchone_values:
            return self.fetchone_values.pop(0)
        return None

    def fetchall(self):
        if self.fetchall_values:
            return self.fetchall_values.pop(0)
        return []


class FakeConnection:
    def __init__(self, cursor=None):
        self.cur = cursor or FakeCursor()
        self.autocommit = True
        self.closed = 0
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return self.cur

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


class FakeStore:
    """In-memory stand-in for PostGISStore: tracks table schemas, records SQL."""

    def __init__(self, tables=None, srid=2154):
        self.tables = {name: dict(columns) for name, columns in (tables or {}).items()}
        self.default_srid = srid
        self.srids = {}
        self.rows = {}
        self.default_rows = 1
        self.parts = {}
        self.extents = {}
        self.unions = {}
        self.sub_areas = {}
        self.executed = []
        self.fetchall_values = []
        self.fetchrow_values = []
        self.default_row = None
        self.dropped = []
        self.transactions = 0
        self.torn_down = None
        self.closed = False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def sql(self):
        return "\n".join(sql for sql, _ in self.executed)

    def fetch_one(self, sql, params=None):
        row = self.fetch_row(sql, params)
        return row[0] if row else None

    def fetch_row(self, sql, params=None):
        self.executed.append((sql, params))
        if self.fetchrow_values:
            return self.fetchrow_values.pop(0)
        return self.default_row

    def fetch_all(self, sql, params=None):
        self.executed.append((sql, params))
        if self.fetchall_values:
            return self.fetchall_values.pop(0)
        return []

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def has_table(self, name):
        return bool(name) and name in self.tables

    def columns(self, name):
        return dict(self.tables.get(name, {}))

    def geometry_columns(self, name):
        return [c for c, t in self.columns(name).items() if t.startswith("geometry")]

    def srid(self, name, geom_column="the_geom"):
        return self.srids.get(name, self.default_srid)

    def row_count(self, name):
        return self.rows.get(name, self.default_rows)

    def extent(self, name, geom_column="the_geom"):
        return self.extents.get(name)

    def geometry_parts(self, name, geom_column="the_geom"):
        return list(self.parts.get(name, []))

    def create_sub_area_table(self, name, wkt, srid, id_zone):
        self.tables[name] = {"the_geom": f"geometry(Polygon,{srid})", "id_zone": "character varying"}
        self.sub_areas[name] = (wkt, id_zone)

    def union_all(self, target, projections):
        self.unions[target] = list(projections)
        self.tables[target] = {column.name: column.type for column in projections[0].columns}

    def drop_tables(self, names):
        for name in names:
            if name:
                self.tables.pop(name, None)
                self.dropped.append(name)

    def close(self):
        self.closed = True

    def teardown(self, delete):
        self.torn_down = delete
        self.closed = True
