"""
Union of per sub-area result tables.

The schema reconciliation is computed as plain data (union_schema,
plan_projections); PostGISStore.union_all renders it into one
``CREATE TABLE ... AS SELECT ... UNION ALL ...`` statement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple

from zonechain.naming import TableNamer
from zonechain.results import ResultSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnProjection:
    name: str
    type: str
    present: bool


@dataclass(frozen=True)
class TableProjection:
    table: str
    columns: Tuple[ColumnProjection, ...]


def union_schema(schemas: Sequence[Mapping[str, str]]) -> Dict[str, str]:
    """Columns of every schema in first-seen order, typed by their first occurrence."""
    union: Dict[str, str] = {}
    for schema in schemas:
        for column, type_name in schema.items():
            union.setdefault(column, type_name)
    return union


def plan_projections(table_schemas: Sequence[Tuple[str, Mapping[str, str]]]) -> List[TableProjection]:
    union = union_schema([schema for _, schema in table_schemas])
    return [
        TableProjection(
            table=table,
            columns=tuple(
                ColumnProjection(column, type_name, column in schema)
                for column, type_name in union.items()
            ),
        )
        for table, schema in table_schemas
    ]


def collect_tables(sub_results: Sequence[Mapping[str, str]]) -> Dict[str, List[str]]:
    """category -> contributing tables, in sub-area order."""
    tables: Dict[str, List[str]] = {}
    for results in sub_results:
        for category, table in results.items():
            if table:
                tables.setdefault(category, []).append(table)
    return tables


def merge_result_tables(store, namer: TableNamer, tables_to_merge: Mapping[str, Sequence[str]]) -> ResultSet:
    merged: Dict[str, str] = {}
    for category, tables in tables_to_merge.items():
        tables = [table for table in tables if table]
        if not tables:
            continue
        projections = plan_projections([(table, store.columns(table)) for table in tables])
        target = namer.name(category)
        store.union_all(target, projections)
        store.drop_tables(tables)
        merged[category] = target
        logger.debug("Merged %d %s tables into %s", len(tables), category, target)
    return ResultSet(merged)


def assemble(store, namer: TableNamer, sub_results: Sequence[Mapping[str, str]]) -> ResultSet:
    """One ResultSet for a location, merging only when several sub-areas contributed."""
    sub_results = [results for results in sub_results if results]
    if not sub_results:
        return ResultSet()
    if len(sub_results) == 1:
        return ResultSet(sub_results[0])
    return merge_result_tables(store, namer, collect_tables(sub_results))
