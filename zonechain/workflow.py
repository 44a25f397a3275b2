"""
Top-level per-location loop.

WorkflowDriver opens one working store per run, loads the sources once and
then processes every location in input order:

    zone -> sub-areas -> per sub-area processing -> merge -> grid -> export

Each location ends as a LocationSuccess or a LocationFailure. Failures are
written to the FailureLog and never stop the next location; configuration
and resource errors end the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

from zonechain.decompose import AreaDecomposer, BoundaryZoneSource
from zonechain.errors import ConfigError, LocationError, ResourceError
from zonechain.export import DatabaseExporter, FileExporter
from zonechain.failures import FailureLog
from zonechain.grid import GridAggregator
from zonechain.loader import DatabaseSourceLoader, FolderSourceLoader, SourceLayers
from zonechain.merge import assemble
from zonechain.naming import TableNamer
from zonechain.parameters import INPUT_LAYERS, CanonicalParameters, ConnectionSettings, Location
from zonechain.processing import IndicatorComputer, LayerClipProcessor, PopulationProvider, SubAreaProcessor
from zonechain.results import ResultSet
from zonechain.store import PostGISStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationSuccess:
    location: str
    results: ResultSet
    sub_areas: Tuple[str, ...] = ()
    exports: Mapping[str, Mapping[str, bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class LocationFailure:
    location: str
    message: str


LocationOutcome = Union[LocationSuccess, LocationFailure]


@dataclass
class WorkflowReport:
    outcomes: List[LocationOutcome] = field(default_factory=list)

    @property
    def results(self) -> Dict[str, ResultSet]:
        return {o.location: o.results for o in self.outcomes if isinstance(o, LocationSuccess)}

    @property
    def failures(self) -> List[LocationFailure]:
        return [o for o in self.outcomes if isinstance(o, LocationFailure)]

    @property
    def succeeded(self) -> int:
        return len(self.outcomes) - len(self.failures)

    @property
    def failed(self) -> int:
        return len(self.failures)


class WorkflowDriver:
    def __init__(
        self,
        params: CanonicalParameters,
        working_connection: Optional[ConnectionSettings] = None,
        store=None,
        loader=None,
        zone_source=None,
        processor: Optional[SubAreaProcessor] = None,
        indicators: Optional[IndicatorComputer] = None,
        population: Optional[PopulationProvider] = None,
        destination=None,
        salt: Optional[str] = None,
    ) -> None:
        self.params = params
        self.working_connection = working_connection or ConnectionSettings()
        self.store = store
        self.loader = loader
        self.zone_source = zone_source
        self.processor = processor
        self.indicators = indicators
        self.population = population
        self.destination = destination
        self.namer = TableNamer(salt, prefix=params.processing.prefix_name)

    def _open_store(self) -> PostGISStore:
        if self.store is not None:
            return self.store
        schema = self.params.working.name or f"zonechain_{self.namer.salt}"
        return PostGISStore.open(self.working_connection, schema=schema)

    def _loader(self):
        if self.loader is not None:
            return self.loader
        source = self.params.input
        if source.folder is not None:
            return FolderSourceLoader(source.folder, source.zone_table, source.srid)
        return DatabaseSourceLoader(
            source.database,
            source.tables,
            source.zone_table,
            source.zone_id_column,
            source.locations,
            self.params.processing.distance,
            source.srid,
        )

    def _exporters(self, store, srid: int) -> List[Tuple[str, object]]:
        output = self.params.output
        exporters: List[Tuple[str, object]] = []
        if output.folder is not None:
            grid = self.params.processing.grid_indicators
            exporters.append((
                "folder",
                FileExporter(
                    store,
                    output.folder,
                    output.folder_tables,
                    srid,
                    output.srid,
                    grid_output=grid.output if grid else "fgb",
                    cell_size=(grid.x_size, grid.y_size) if grid else None,
                    delete=output.delete,
                ),
            ))
        if output.database is not None:
            if self.destination is None:
                self.destination = PostGISStore.open(output.database)
            exporters.append((
                "database",
                DatabaseExporter(store, self.destination, output.database_tables, srid, output.srid),
            ))
        return exporters

    def run(self) -> WorkflowReport:
        report = WorkflowReport()
        store = self._open_store()
        try:
            layers = self._loader().load(store, self.namer)
            failure_log = FailureLog(store, self.params.working.folder)
            exporters = self._exporters(store, layers.srid)
            locations = self.params.input.locations
            for index, location in enumerate(locations, start=1):
                logger.info("Processing location %s (%d on %d)", location.id, index, len(locations))
                outcome = self.process_location(store, layers, location, exporters, failure_log)
                report.outcomes.append(outcome)
        finally:
            if self.destination is not None:
                self.destination.close()
            store.teardown(self.params.working.delete)
        logger.info("%d location(s) processed, %d failed", report.succeeded, report.failed)
        return report

    def process_location(
        self, store, layers: SourceLayers, location: Location, exporters, failure_log: FailureLog
    ) -> LocationOutcome:
        zone_table = None
        sub_areas = []
        produced: List[str] = []
        try:
            zone_table = self._zone_source(layers).materialize(store, self.namer, location)
            sub_areas = AreaDecomposer(store, self.namer).decompose(zone_table, location.id, layers.srid)
            if not sub_areas:
                raise LocationError(location.id, f"The zone {location.id} has no polygon to process")
            processor = self._processor(layers)
            sub_results = []
            for sub_area in sub_areas:
                sub_result = processor.process(store, self.namer, sub_area, self.params.processing)
                produced.extend((sub_result or {}).values())
                sub_results.append(sub_result)
            results = assemble(store, self.namer, sub_results)
            produced.extend(results.values())

            results = GridAggregator(store, self.namer, layers.srid).aggregate(
                results, self.params.processing.grid_indicators
            )
            produced.extend(results.values())
            exports = {name: exporter.export(location.id, results) for name, exporter in exporters}
            return LocationSuccess(location.id, results, tuple(s.id for s in sub_areas), exports)
        except (ConfigError, ResourceError):
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Cannot execute the workflow on the location %s", location.id)
            try:
                failure_log.record(location.id, message, zone_table)
            except Exception:
                logger.exception("Cannot log the failure of the location %s", location.id)
            self._drop_quietly(store, produced)
            return LocationFailure(location.id, message)
        finally:
            store.drop_tables([zone_table] + [sub_area.table for sub_area in sub_areas])

    @staticmethod
    def _drop_quietly(store, tables: List[str]) -> None:
        try:
            store.drop_tables(list(dict.fromkeys(t for t in tables if t)))
        except Exception:
            logger.warning("Cannot drop the tables of a failed location: %s", ", ".join(tables), exc_info=True)

    def _zone_source(self, layers: SourceLayers):
        if self.zone_source is not None:
            return self.zone_source
        source = self.params.input
        return BoundaryZoneSource(
            layers.tables.get(source.zone_table, source.zone_table), source.zone_id_column, layers.srid
        )

    def _processor(self, layers: SourceLayers) -> SubAreaProcessor:
        if self.processor is not None:
            return self.processor
        inputs = {layer: table for layer, table in layers.tables.items() if layer in INPUT_LAYERS}
        return LayerClipProcessor(inputs, layers.srid, self.indicators, self.population)


def run_workflow(params: CanonicalParameters, working_connection: Optional[ConnectionSettings] = None) -> WorkflowReport:
    return WorkflowDriver(params, working_connection).run()
