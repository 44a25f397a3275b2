from __future__ import annotations

from typing import Dict, Iterable, Iterator, Mapping, Optional

OUTPUT_CATEGORIES = (
    "building_indicators",
    "block_indicators",
    "rsu_indicators",
    "rsu_lcz",
    "zone",
    "building",
    "road",
    "rail",
    "water",
    "vegetation",
    "impervious",
    "urban_areas",
    "rsu_utrf_area",
    "rsu_utrf_floor_area",
    "building_utrf",
    "grid_indicators",
    "road_traffic",
    "population",
    "ground_acoustic",
    "urban_sprawl_areas",
    "urban_cool_areas",
)


class ResultSet(Mapping[str, str]):
    """Immutable category -> working table name mapping.

    Categories bound to an empty handle are dropped on construction, so
    ``category in results`` always means a table exists for it.
    """

    __slots__ = ("_tables",)

    def __init__(self, tables: Optional[Mapping[str, Optional[str]]] = None) -> None:
        self._tables: Dict[str, str] = {k: v for k, v in (tables or {}).items() if v}

    def __getitem__(self, category: str) -> str:
        return self._tables[category]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    def __repr__(self) -> str:
        return f"ResultSet({self._tables!r})"

    def updated(self, tables: Mapping[str, Optional[str]]) -> "ResultSet":
        merged = dict(self._tables)
        merged.update(tables)
        return ResultSet(merged)

    def without(self, categories: Iterable[str]) -> "ResultSet":
        dropped = set(categories)
        return ResultSet({k: v for k, v in self._tables.items() if k not in dropped})
