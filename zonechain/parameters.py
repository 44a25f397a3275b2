"""
Configuration resolution.

Turns the nested JSON configuration document into a frozen tree of
dataclasses with every default applied. Anything structurally invalid is
rejected here with a ConfigError so the rest of the pipeline only ever sees
canonical values.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from dotenv import load_dotenv

from zonechain.errors import ConfigError
from zonechain.results import OUTPUT_CATEGORIES

ALLOWED_RSU_INDICATORS = ("LCZ", "UTRF", "TEB")

ALLOWED_GRID_INDICATORS = (
    "BUILDING_FRACTION",
    "BUILDING_HEIGHT",
    "BUILDING_POP",
    "BUILDING_TYPE_FRACTION",
    "WATER_FRACTION",
    "VEGETATION_FRACTION",
    "ROAD_FRACTION",
    "IMPERVIOUS_FRACTION",
    "UTRF_AREA_FRACTION",
    "UTRF_FLOOR_AREA_FRACTION",
    "LCZ_FRACTION",
    "LCZ_PRIMARY",
    "FREE_EXTERNAL_FACADE_DENSITY",
    "BUILDING_HEIGHT_WEIGHTED",
    "BUILDING_SURFACE_DENSITY",
    "BUILDING_HEIGHT_DIST",
    "FRONTAL_AREA_INDEX",
    "SEA_LAND_FRACTION",
    "ASPECT_RATIO",
    "SVF",
    "HEIGHT_OF_ROUGHNESS_ELEMENTS",
    "TERRAIN_ROUGHNESS_CLASS",
    "URBAN_SPRAWL_AREAS",
    "URBAN_SPRAWL_DISTANCES",
    "URBAN_SPRAWL_COOL_DISTANCES",
)

# Grid indicators that can only be computed from an RSU indicator family.
GRID_TO_RSU_FAMILY: Dict[str, str] = {
    "LCZ_FRACTION": "LCZ",
    "LCZ_PRIMARY": "LCZ",
    "URBAN_SPRAWL_AREAS": "LCZ",
    "URBAN_SPRAWL_DISTANCES": "LCZ",
    "URBAN_SPRAWL_COOL_DISTANCES": "LCZ",
    "UTRF_AREA_FRACTION": "UTRF",
    "UTRF_FLOOR_AREA_FRACTION": "UTRF",
}

GRID_OUTPUT_FORMATS = ("fgb", "asc")

DEFAULT_MAP_OF_WEIGHTS: Dict[str, float] = {
    "sky_view_factor": 4,
    "aspect_ratio": 3,
    "building_surface_fraction": 8,
    "impervious_surface_fraction": 0,
    "pervious_surface_fraction": 0,
    "height_of_roughness_elements": 6,
    "terrain_roughness_length": 0.5,
}

INPUT_LAYERS = ("building", "road", "rail", "water", "vegetation", "impervious", "urban_areas")

DEFAULT_ZONE_TABLE = "commune"
DEFAULT_ZONE_ID_COLUMN = "code_insee"

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

RESERVED_SCHEMAS = ("public", "information_schema")

BBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class Location:
    id: str
    bbox: Optional[BBox] = None


@dataclass(frozen=True)
class ConnectionSettings:
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str = "postgres"
    password: str = ""
    url: Optional[str] = None

    def connect_kwargs(self) -> Dict[str, Any]:
        if self.url:
            return {"dsn": self.url}
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
        }

    def describe(self) -> str:
        if self.url:
            return self.url.split("@")[-1]
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class WorkingStoreSettings:
    folder: Path
    name: Optional[str] = None
    delete: bool = True


@dataclass(frozen=True)
class InputSettings:
    locations: Tuple[Location, ...]
    folder: Optional[Path] = None
    database: Optional[ConnectionSettings] = None
    tables: Mapping[str, str] = field(default_factory=dict)
    srid: Optional[int] = None
    zone_table: str = DEFAULT_ZONE_TABLE
    zone_id_column: str = DEFAULT_ZONE_ID_COLUMN


@dataclass(frozen=True)
class OutputSettings:
    folder: Optional[Path] = None
    folder_tables: Tuple[str, ...] = ()
    database: Optional[ConnectionSettings] = None
    database_tables: Mapping[str, str] = field(default_factory=dict)
    srid: Optional[int] = None
    delete: bool = True


@dataclass(frozen=True)
class RsuParameters:
    indicator_use: Tuple[str, ...]
    svf_simplified: bool = True
    surface_vegetation: float = 10000.0
    surface_hydro: float = 2500.0
    surface_urban_areas: float = 10000.0
    snapping_tolerance: float = 0.01
    map_of_weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_MAP_OF_WEIGHTS))


@dataclass(frozen=True)
class GridParameters:
    x_size: float
    y_size: float
    indicators: Tuple[str, ...]
    output: str = "fgb"
    row_col: bool = False
    lcz_lod: Optional[int] = None
    # None aligns the cells on the zone extent
    origin: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class ProcessingParameters:
    distance: float = 500.0
    prefix_name: str = ""
    h_lev_min: int = 3
    rsu_indicators: Optional[RsuParameters] = None
    grid_indicators: Optional[GridParameters] = None
    road_traffic: bool = False
    worldpop_indicators: bool = False
    ground_acoustic: bool = False


@dataclass(frozen=True)
class CanonicalParameters:
    working: WorkingStoreSettings
    input: InputSettings
    output: OutputSettings
    processing: ProcessingParameters
    description: str = ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(section: Mapping[str, Any], key: str, default: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    if not _is_number(value):
        raise ConfigError(f"The parameter '{key}' must be a number, got {value!r}")
    return float(value)


def _boolean(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigError(f"The parameter '{key}' must be a boolean value, got {value!r}")


def _mapping(value: Any, key: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"The section '{key}' must be a key/value object")
    return value


def _positive_srid(value: Any, key: str) -> Optional[int]:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"The {key} srid must be greater than 0.")
    return value


def check_identifier(name: Any, what: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ConfigError(f"Invalid {what} name: {name!r}")
    return name


def format_location(location: Any) -> Location:
    if isinstance(location, str):
        location_id = location.strip()
        if not location_id:
            raise ConfigError("A location cannot be an empty string")
        return Location(location_id)
    if isinstance(location, (list, tuple)):
        if len(location) != 4 or not all(_is_number(v) for v in location):
            raise ConfigError(
                "Invalid location input. \n"
                "The location input must be a string value or an array of 4 coordinates to define a bbox "
            )
        min_y, min_x, max_y, max_x = (float(v) for v in location)
        if min_x >= max_x or min_y >= max_y:
            raise ConfigError(f"The bbox {list(location)} is empty")
        return Location("_".join(str(v) for v in location), (min_y, min_x, max_y, max_x))
    raise ConfigError(
        "Invalid location input. \n"
        "The location input must be a string value or an array of 4 coordinates to define a bbox "
    )


def resolve_connection(raw: Mapping[str, Any]) -> ConnectionSettings:
    """Fill a connection block with the PG* environment variables (``.env`` included)."""
    load_dotenv()
    raw = _mapping(raw.get("connection", raw), "connection")
    url = raw.get("url")
    if url is not None and not isinstance(url, str):
        raise ConfigError("The connection url must be a string")
    port = raw.get("port", os.environ.get("PGPORT", "5432"))
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid connection port {port!r}") from None
    return ConnectionSettings(
        host=str(raw.get("host", os.environ.get("PGHOST", "localhost"))),
        port=port,
        database=str(raw.get("database", raw.get("databaseName", os.environ.get("PGDATABASE", "postgres")))),
        user=str(raw.get("user", os.environ.get("PGUSER", "postgres"))),
        password=str(raw.get("password", os.environ.get("PGPASSWORD", ""))),
        url=url,
    )


def _resolve_working(raw: Mapping[str, Any]) -> WorkingStoreSettings:
    folder = raw.get("folder")
    name = raw.get("name")
    if name is not None:
        name = check_identifier(name.split(";")[0] if isinstance(name, str) else name, "working store")
        if "." in name or name.lower() in RESERVED_SCHEMAS or name.lower().startswith("pg_"):
            raise ConfigError(f"The working store cannot use the schema {name}")
    if folder is not None and not isinstance(folder, str):
        raise ConfigError("The geoclimatedb folder must be a path")
    return WorkingStoreSettings(
        folder=Path(folder) if folder else Path(tempfile.gettempdir()),
        name=name,
        delete=_boolean(raw, "delete", True),
    )


def _resolve_input(raw: Mapping[str, Any]) -> InputSettings:
    if not raw:
        raise ConfigError("Cannot find any input parameters.")
    folder = raw.get("folder")
    database = raw.get("database")
    if folder and database:
        raise ConfigError("Please set only one input data provider")
    if not folder and not database:
        raise ConfigError("Please set an input folder or an input database")

    raw_locations = raw.get("locations")
    if not raw_locations or not isinstance(raw_locations, (list, tuple)):
        raise ConfigError("Cannot find any locations parameter.")
    locations: list[Location] = []
    seen = set()
    for raw_location in raw_locations:
        location = format_location(raw_location)
        if location.id not in seen:
            seen.add(location.id)
            locations.append(location)

    zone_table = check_identifier(raw.get("zone_table", DEFAULT_ZONE_TABLE), "zone table")
    zone_id_column = check_identifier(raw.get("zone_id_column", DEFAULT_ZONE_ID_COLUMN), "zone id column")

    tables: Dict[str, str] = {}
    connection = None
    if database:
        database = _mapping(database, "input.database")
        connection = resolve_connection(database)
        raw_tables = _mapping(database.get("tables"), "input.database.tables")
        known = (zone_table,) + INPUT_LAYERS
        for layer in known:
            tables[layer] = layer
        for layer, table in raw_tables.items():
            if layer.lower() not in known:
                raise ConfigError(f"Unknown input table '{layer}'. Please use one of {', '.join(known)}")
            tables[layer.lower()] = check_identifier(table, "input table")
    elif not isinstance(folder, str):
        raise ConfigError("The input folder must be a path")

    return InputSettings(
        locations=tuple(locations),
        folder=Path(folder) if folder else None,
        database=connection,
        tables=tables,
        srid=_positive_srid(raw.get("srid"), "input"),
        zone_table=zone_table,
        zone_id_column=zone_id_column,
    )


def _resolve_output(raw: Mapping[str, Any]) -> OutputSettings:
    if not raw:
        return OutputSettings()
    srid = _positive_srid(raw.get("srid"), "output")
    delete = _boolean(raw, "delete", True)

    folder = None
    folder_tables: Tuple[str, ...] = ()
    raw_folder = raw.get("folder")
    if raw_folder:
        if isinstance(raw_folder, str):
            folder, requested = Path(raw_folder), None
        else:
            raw_folder = _mapping(raw_folder, "output.folder")
            if not isinstance(raw_folder.get("path"), str):
                raise ConfigError("The output folder must define a path")
            folder, requested = Path(raw_folder["path"]), raw_folder.get("tables")
        if requested:
            unknown = [t for t in requested if t not in OUTPUT_CATEGORIES]
            if unknown:
                raise ConfigError(f"Unknown output tables {unknown}. Allowed: {', '.join(OUTPUT_CATEGORIES)}")
            folder_tables = tuple(dict.fromkeys(requested))
        else:
            folder_tables = OUTPUT_CATEGORIES

    database = None
    database_tables: Dict[str, str] = {}
    raw_database = raw.get("database")
    if raw_database:
        raw_database = _mapping(raw_database, "output.database")
        srid = _positive_srid(raw_database.get("srid"), "output") or srid
        raw_tables = _mapping(raw_database.get("tables"), "output.database.tables")
        if not raw_tables:
            raise ConfigError("Please set the output tables to store the results in the database")
        for category, table in raw_tables.items():
            if category not in OUTPUT_CATEGORIES:
                raise ConfigError(f"Unknown output table '{category}'. Allowed: {', '.join(OUTPUT_CATEGORIES)}")
            database_tables[category] = check_identifier(table, "output table")
        database = resolve_connection(raw_database)

    return OutputSettings(
        folder=folder,
        folder_tables=folder_tables,
        database=database,
        database_tables=database_tables,
        srid=srid,
        delete=delete,
    )


def _normalized_names(values: Any, allowed: Sequence[str], what: str) -> Tuple[str, ...]:
    if not values or not isinstance(values, (list, tuple)):
        raise ConfigError(f"The list of {what} names cannot be null or empty")
    names = []
    for value in values:
        if not isinstance(value, str):
            raise ConfigError(f"Invalid {what} name {value!r}")
        name = value.strip().upper()
        if name not in allowed:
            raise ConfigError(f"Please set a valid list of {what} names in {list(allowed)}")
        names.append(name)
    return tuple(dict.fromkeys(names))


def _resolve_rsu(raw: Mapping[str, Any]) -> RsuParameters:
    indicator_use = _normalized_names(raw.get("indicatorUse"), ALLOWED_RSU_INDICATORS, "RSU indicator")
    weights = raw.get("mapOfWeights")
    map_of_weights = dict(DEFAULT_MAP_OF_WEIGHTS)
    if weights is not None:
        weights = _mapping(weights, "mapOfWeights")
        if set(weights) != set(DEFAULT_MAP_OF_WEIGHTS):
            raise ConfigError(
                "The number of mapOfWeights parameters must contain exactly the parameters "
                f"{','.join(DEFAULT_MAP_OF_WEIGHTS)}"
            )
        for key, weight in weights.items():
            if not _is_number(weight):
                raise ConfigError(f"The weight '{key}' must be a number")
            map_of_weights[key] = weight
    return RsuParameters(
        indicator_use=indicator_use,
        svf_simplified=_boolean(raw, "svfSimplified", True),
        surface_vegetation=_number(raw, "surface_vegetation", 10000.0),
        surface_hydro=_number(raw, "surface_hydro", 2500.0),
        surface_urban_areas=_number(raw, "surface_urban_areas", 10000.0),
        snapping_tolerance=_number(raw, "snappingTolerance", 0.01),
        map_of_weights=map_of_weights,
    )


def _resolve_grid(raw: Mapping[str, Any]) -> GridParameters:
    x_size = raw.get("x_size")
    y_size = raw.get("y_size")
    if not _is_number(x_size) or not _is_number(y_size) or x_size <= 0 or y_size <= 0:
        raise ConfigError("Invalid grid size padding. Must be greater that 0")
    indicators = _normalized_names(raw.get("indicators"), ALLOWED_GRID_INDICATORS, "grid indicator")
    output = raw.get("output", "fgb")
    if not isinstance(output, str) or output.lower() not in GRID_OUTPUT_FORMATS:
        raise ConfigError(f"The grid output must be one of {list(GRID_OUTPUT_FORMATS)}")
    lcz_lod = raw.get("lcz_lod")
    if lcz_lod is not None:
        if not isinstance(lcz_lod, int) or isinstance(lcz_lod, bool) or not 0 <= lcz_lod <= 10:
            raise ConfigError("The number of level of details to aggregate the LCZ must be between 0 and 10")
    origin = raw.get("origin")
    if origin is not None:
        if not isinstance(origin, (list, tuple)) or len(origin) != 2 or not all(_is_number(v) for v in origin):
            raise ConfigError("The grid origin must be an array of 2 coordinates [x, y]")
        origin = (float(origin[0]), float(origin[1]))
    return GridParameters(
        x_size=float(x_size),
        y_size=float(y_size),
        indicators=indicators,
        output=output.lower(),
        row_col=_boolean(raw, "rowCol", False),
        lcz_lod=lcz_lod,
        origin=origin,
    )


def resolve_processing(raw: Mapping[str, Any]) -> ProcessingParameters:
    raw = _mapping(raw, "parameters")
    prefix_name = raw.get("prefixName", "")
    if prefix_name and not isinstance(prefix_name, str):
        raise ConfigError("The prefixName must be a string")
    if prefix_name:
        check_identifier(prefix_name, "prefix")
    h_lev_min = raw.get("hLevMin", 3)
    if not isinstance(h_lev_min, int) or isinstance(h_lev_min, bool):
        raise ConfigError("The hLevMin parameter must be an integer")

    rsu = None
    raw_rsu = _mapping(raw.get("rsu_indicators"), "rsu_indicators")
    if raw_rsu:
        rsu = _resolve_rsu(raw_rsu)

    grid = None
    raw_grid = _mapping(raw.get("grid_indicators"), "grid_indicators")
    if raw_grid:
        grid = _resolve_grid(raw_grid)
        implied = [GRID_TO_RSU_FAMILY[name] for name in grid.indicators if name in GRID_TO_RSU_FAMILY]
        if implied:
            if rsu is None:
                rsu = RsuParameters(indicator_use=tuple(dict.fromkeys(implied)))
            else:
                merged = tuple(dict.fromkeys(rsu.indicator_use + tuple(implied)))
                rsu = RsuParameters(
                    indicator_use=merged,
                    svf_simplified=rsu.svf_simplified,
                    surface_vegetation=rsu.surface_vegetation,
                    surface_hydro=rsu.surface_hydro,
                    surface_urban_areas=rsu.surface_urban_areas,
                    snapping_tolerance=rsu.snapping_tolerance,
                    map_of_weights=rsu.map_of_weights,
                )

    noise = _mapping(raw.get("noise_indicators"), "noise_indicators")
    return ProcessingParameters(
        distance=_number(raw, "distance", 500.0),
        prefix_name=prefix_name or "",
        h_lev_min=h_lev_min,
        rsu_indicators=rsu,
        grid_indicators=grid,
        road_traffic=_boolean(raw, "road_traffic", False),
        worldpop_indicators=_boolean(raw, "worldpop_indicators", False),
        ground_acoustic=_boolean(noise, "ground_acoustic", False),
    )


def resolve(raw: Any) -> CanonicalParameters:
    if not raw or not isinstance(raw, Mapping):
        raise ConfigError(
            "The input parameters cannot be null or empty.\n Please set a path to a configuration file or "
            "a map with all required parameters"
        )
    description = raw.get("description") or ""
    if not isinstance(description, str):
        raise ConfigError("The description must be a string")
    return CanonicalParameters(
        working=_resolve_working(_mapping(raw.get("geoclimatedb"), "geoclimatedb")),
        input=_resolve_input(_mapping(raw.get("input"), "input")),
        output=_resolve_output(_mapping(raw.get("output"), "output")),
        processing=resolve_processing(raw.get("parameters")),
        description=description,
    )


def load_config(path: Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.is_file():
        raise ConfigError("The configuration file doesn't exist")
    if path.suffix.lower() != ".json":
        raise ConfigError("The configuration file must be a json file")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse JSON from {path}: {exc}") from exc
