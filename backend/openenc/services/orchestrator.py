"""Concurrent, per-chart transactional chart import.

The orchestrator discovers chart cells below an input root and imports each
one as an independent unit of work on a bounded thread pool:

1. decode the cell (in the worker thread, it is blocking I/O),
2. decide from the catalog whether to skip, import or force a reimport,
3. make sure every layer table the chart needs exists,
4. in one store transaction: delete the chart's previous rows, upsert its
   precomputed features, then insert or replace its catalog record.

A failing chart is logged and reported; it never aborts the batch and it
leaves nothing committed. Transient store errors (pool exhaustion, lost
connections) are retried with exponential backoff.

Example:
    >>> import pathlib
    >>> from openenc.db import database
    >>> from openenc.services import decoder, orchestrator
    >>> runner = orchestrator.IngestionOrchestrator(
    ...     store=database.InMemoryChartStore(),
    ...     decoder=decoder.GdalChartDecoder(),
    ...     parallel=4,
    ... )
    >>> report = runner.run(pathlib.Path("ENC_ROOT"))
    >>> print(report.summary())
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import TYPE_CHECKING

import psycopg
import tenacity
from tqdm import tqdm

from openenc.core import errors
from openenc.db import models as db_models
from openenc.services import catalog
from openenc.services import coverage as coverage_service
from openenc.services import decoder as decoder_service
from openenc.services import layer_registry, precompute, zoom

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

    from openenc.core import config
    from openenc.db import database

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (errors.PoolTimeoutError, psycopg.OperationalError)


class IngestionOrchestrator:
    """Imports a directory tree of charts with bounded concurrency.

    Attributes:
        store: Chart store receiving catalog records and features.
        decoder: Decoder turning chart cells into features.
        registry: Layer shapes shared by all workers.
        parallel: Maximum number of charts in flight.
        retry_attempts: Attempts per chart on transient store errors.
        retry_max_wait: Ceiling in seconds of the retry backoff.
        coverage_layer: Layer whose polygons define chart coverage.
        include_layers: Feature layers to import, all when empty.
        progress: Show a progress bar on stderr.
    """

    def __init__(
        self,
        store: database.ChartStoreProtocol,
        decoder: decoder_service.ChartDecoder,
        *,
        registry: layer_registry.LayerRegistry | None = None,
        parallel: int = 10,
        retry_attempts: int = 3,
        retry_max_wait: float = 10.0,
        coverage_layer: str = "M_COVR",
        include_layers: Iterable[str] = (),
        progress: bool = True,
    ) -> None:
        if parallel < 1:
            raise ValueError("parallel must be at least 1")
        self.store = store
        self.decoder = decoder
        self.registry = registry or layer_registry.LayerRegistry()
        self.parallel = parallel
        self.retry_attempts = max(1, retry_attempts)
        self.retry_max_wait = retry_max_wait
        self.coverage_layer = coverage_layer.upper()
        self.include_layers = frozenset(name.upper() for name in include_layers)
        self.progress = progress

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        store: database.ChartStoreProtocol,
        decoder: decoder_service.ChartDecoder,
        **kwargs: object,
    ) -> IngestionOrchestrator:
        """Build an orchestrator configured from application settings."""
        return cls(
            store,
            decoder,
            parallel=settings.parallel_enc,
            retry_attempts=settings.retry_attempts,
            retry_max_wait=settings.retry_max_wait_seconds,
            coverage_layer=settings.coverage_layer,
            include_layers=settings.include_layers,
            **kwargs,  # type: ignore[arg-type]
        )

    def run(
        self,
        root: pathlib.Path,
        force: bool = False,
    ) -> db_models.BatchReport:
        """Import every chart cell below ``root``.

        Args:
            root: Directory holding one subdirectory per chart unit.
            force: Reimport charts whose version is already recorded.

        Returns:
            Per-chart outcomes in discovery order.

        Raises:
            NotADirectoryError: If ``root`` is not a directory.
        """
        cells = decoder_service.find_charts(root)
        logger.info("Found %d chart cells below %s", len(cells), root)
        self.registry.preload(self.store.layer_shapes())
        return self.run_cells(cells, force=force)

    def run_cells(
        self,
        cells: Iterable[pathlib.Path],
        force: bool = False,
    ) -> db_models.BatchReport:
        """Import the given chart cells with at most ``parallel`` in flight.

        The calling thread only schedules: it blocks before submitting a
        cell while ``parallel`` cells are still running.
        """
        cells = list(cells)
        slots = threading.BoundedSemaphore(self.parallel)
        futures: list[concurrent.futures.Future[db_models.ChartOutcome]] = []

        # The executor exits first so every job has ticked the bar before it
        # closes.
        with (
            tqdm(total=len(cells), desc="Charts", unit="chart",
                 disable=not self.progress) as bar,
            concurrent.futures.ThreadPoolExecutor(
                max_workers=self.parallel,
                thread_name_prefix="enc",
            ) as executor,
        ):
            for cell in cells:
                slots.acquire()
                future = executor.submit(self.import_cell, cell, force)
                future.add_done_callback(lambda _: slots.release())
                future.add_done_callback(lambda _: bar.update())
                futures.append(future)

        report = db_models.BatchReport([future.result() for future in futures])
        logger.info("Import finished: %s", report.summary())
        for outcome in report.failed:
            logger.error("Failed %s: %s", outcome.source, outcome.error)
        return report

    def import_cell(
        self,
        path: pathlib.Path,
        force: bool = False,
    ) -> db_models.ChartOutcome:
        """Run one chart unit of work; failures become a failed outcome."""
        source = str(path)
        enc_name = decoder_service.enc_name_from_path(path)
        try:
            chart = self.decoder.decode(path, self.include_layers or None)
            enc_name = chart.metadata.enc_name
            retrying = tenacity.Retrying(
                retry=tenacity.retry_if_exception_type(TRANSIENT_ERRORS),
                stop=tenacity.stop_after_attempt(self.retry_attempts),
                wait=tenacity.wait_exponential(multiplier=0.5,
                                               max=self.retry_max_wait),
                before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            return retrying(self._import_chart, chart, force)
        except Exception as exc:
            logger.exception("Failed to import %s (%s)", enc_name, source)
            return db_models.ChartOutcome(
                source=source,
                status="failed",
                enc_name=enc_name,
                error=f"{type(exc).__name__}: {exc}",
            )

    def _wanted(self, layer: str) -> bool:
        if not layer_registry.is_feature_layer(layer):
            return False
        return not self.include_layers or layer.upper() in self.include_layers

    def _import_chart(
        self,
        chart: db_models.DecodedChart,
        force: bool,
    ) -> db_models.ChartOutcome:
        metadata = chart.metadata
        decision = catalog.decide(self.store, metadata, force)
        if decision is db_models.Decision.SKIP:
            logger.info("Skipping %s - already imported with same "
                        "edition/update", metadata.enc_name)
            return db_models.ChartOutcome(
                source=chart.source_path,
                status="skipped",
                enc_name=metadata.enc_name,
            )

        # Fails the chart before any write when the scale is unusable.
        zoom.min_zoom(metadata.compilation_scale)
        chart_coverage = coverage_service.resolve_coverage(
            chart.features, self.coverage_layer,
        )

        shapes: dict[str, db_models.LayerShape] = {}
        for layer in chart.layers():
            if not self._wanted(layer):
                continue
            shape = self.registry.shape_for(layer, chart.features_for(layer))
            authoritative = self.store.ensure_layer_schema(shape)
            if authoritative != shape:
                self.registry.adopt(authoritative)
            shapes[layer] = authoritative

        count = 0
        with self.store.chart_session(metadata.enc_name) as session:
            removed = session.clear_chart(metadata.enc_name)
            if removed:
                logger.info("%s: replacing %d rows of a previous import "
                            "(%s)", metadata.enc_name, removed, decision.value)
            for layer, shape in shapes.items():
                layer_count = 0
                for feature in chart.features_for(layer):
                    precompute.upsert_feature(session, metadata, shape, feature)
                    layer_count += 1
                logger.debug("%s: %d features written to %s",
                             metadata.enc_name, layer_count, shape.table)
                count += layer_count
            catalog.register(session, metadata, chart_coverage)

        logger.info("Completed %s: %d total features", metadata.enc_name, count)
        return db_models.ChartOutcome(
            source=chart.source_path,
            status="imported",
            enc_name=metadata.enc_name,
            feature_count=count,
        )
