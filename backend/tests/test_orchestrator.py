"""Tests for the concurrent chart import orchestrator.

Charts come from FakeDecoder and land in the in-memory store, whose chart
sessions commit or discard as a whole like a database transaction.
"""

from __future__ import annotations

import contextlib
import pathlib
import threading
import time
from typing import TYPE_CHECKING

import pytest
import shapely

from chart_factories import FakeDecoder, make_chart, point, square, write_cells
from openenc.core import config, errors
from openenc.db import database
from openenc.db import models as db_models
from openenc.services import orchestrator

if TYPE_CHECKING:
    from collections.abc import Iterator


def _runner(
    store: database.ChartStoreProtocol,
    charts: dict[str, db_models.DecodedChart | Exception],
    **kwargs: object,
) -> orchestrator.IngestionOrchestrator:
    options: dict = {"parallel": 2, "retry_max_wait": 0, "progress": False}
    options.update(kwargs)
    return orchestrator.IngestionOrchestrator(store, FakeDecoder(charts), **options)


def _cells(charts: dict[str, object]) -> dict[str, object]:
    return {f"{name}.000": chart for name, chart in charts.items()}


def test_import_writes_features_and_catalog(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    report = _runner(store, _cells({"US5WA22M": make_chart()})).run(chart_root)

    assert [o.status for o in report.outcomes] == ["imported"]
    assert report.outcomes[0].feature_count == 3
    record = store.get("US5WA22M")
    assert record is not None
    assert record.bbox == pytest.approx((-122.5, 47.5, -122.0, 48.0))
    depare = store.rows("DEPARE")
    assert [(r.feature_fid, r.min_zoom, r.max_zoom) for r in depare] == [
        (10, 12, None), (11, 12, 13),
    ]
    assert [r.feature_fid for r in store.rows("SOUNDG")] == [20]
    assert store.rows("M_COVR") == []


def test_second_run_is_idempotent(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    runner = _runner(store, _cells({"US5WA22M": make_chart()}))
    runner.run(chart_root)
    before = store.get("US5WA22M")
    rows_before = len(store.rows("DEPARE")) + len(store.rows("SOUNDG"))

    report = runner.run(chart_root)

    assert [o.status for o in report.outcomes] == ["skipped"]
    assert store.get("US5WA22M") is before
    assert len(store.rows("DEPARE")) + len(store.rows("SOUNDG")) == rows_before


def test_forced_reimport_replaces_old_version(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    _runner(store, _cells({"US5WA22M": make_chart()})).run(chart_root)

    updated = make_chart(update_number=1, features=[
        db_models.DecodedFeature("M_COVR", 1, square(-122.5, 47.5, 0.5), {}),
        db_models.DecodedFeature("DEPARE", 10, square(-122.4, 47.6),
                                 {"DRVAL1": 7.0, "DRVAL2": 8.0}),
    ])
    report = _runner(store, _cells({"US5WA22M": updated})).run(chart_root, force=True)

    assert [o.status for o in report.outcomes] == ["imported"]
    assert len(store.all()) == 1
    assert store.get("US5WA22M").update_number == 1  # type: ignore[union-attr]
    depare = store.rows("DEPARE")
    assert [(r.feature_fid, r.values["drval1"], r.update_number) for r in depare] == [
        (10, 7.0, 1),
    ]
    assert store.rows("SOUNDG") == []


def test_forced_reimport_of_same_version(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    runner = _runner(store, _cells({"US5WA22M": make_chart()}))
    runner.run(chart_root)
    report = runner.run(chart_root, force=True)
    assert [o.status for o in report.outcomes] == ["imported"]
    assert len(store.rows("DEPARE")) == 2


def test_new_update_without_force_replaces_rows(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    _runner(store, _cells({"US5WA22M": make_chart()})).run(chart_root)
    newer = make_chart(update_number=2, features=[
        db_models.DecodedFeature("SOUNDG", 21, point(-122.3, 47.7), {"DEPTH": 12.0}),
    ])
    report = _runner(store, _cells({"US5WA22M": newer})).run(chart_root)
    assert [o.status for o in report.outcomes] == ["imported"]
    assert store.rows("DEPARE") == []
    assert [r.feature_fid for r in store.rows("SOUNDG")] == [21]


def test_coverage_falls_back_to_hull(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "NOCOVR")
    chart = make_chart("NOCOVR", features=[
        db_models.DecodedFeature("SOUNDG", 1, point(0, 0), {"DEPTH": 1.0}),
        db_models.DecodedFeature("SOUNDG", 2, point(2, 0), {"DEPTH": 1.0}),
        db_models.DecodedFeature("SOUNDG", 3, point(0, 2), {"DEPTH": 1.0}),
    ])
    _runner(store, _cells({"NOCOVR": chart})).run(chart_root)
    record = store.get("NOCOVR")
    assert record is not None
    expected = shapely.MultiPoint([(0, 0), (2, 0), (0, 2)]).convex_hull
    assert shapely.from_wkb(record.coverage_wkb).equals(expected)


def test_failures_are_isolated(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "A", "B", "C", "D", "E")
    charts = _cells({
        "A": make_chart("A"),
        "B": errors.DecodeError("B.000: truncated record"),
        "C": make_chart("C", features=[
            db_models.DecodedFeature("DEPARE", 1, None, {"DRVAL1": 1.0}),
        ]),
        "D": make_chart("D"),
        "E": make_chart("E", compilation_scale=0),
    })
    report = _runner(store, charts).run(chart_root)

    assert [(o.enc_name, o.status) for o in report.outcomes] == [
        ("A", "imported"), ("B", "failed"), ("C", "failed"),
        ("D", "imported"), ("E", "failed"),
    ]
    assert "DecodeError" in report.outcomes[1].error  # type: ignore[operator]
    assert "CoverageUnresolvableError" in report.outcomes[2].error  # type: ignore[operator]
    assert "InvalidScaleError" in report.outcomes[4].error  # type: ignore[operator]
    assert [r.enc_name for r in store.all()] == ["A", "D"]
    assert {r.enc_name for r in store.rows("DEPARE")} == {"A", "D"}
    assert report.summary() == "2 imported, 0 skipped, 3 failed"


def test_failed_chart_leaves_nothing_committed(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    bad = make_chart(features=[
        *make_chart().features,
        db_models.DecodedFeature("DEPARE", 99, square(0, 0), {"DRVAL1": 1.0}),
    ])

    class BrokenSessionStore(database.InMemoryChartStore):
        @contextlib.contextmanager
        def chart_session(self, enc_name: str) -> Iterator[database.InMemoryChartSession]:
            with super().chart_session(enc_name) as session:
                original = session.upsert_feature

                def upsert(shape: db_models.LayerShape, row: db_models.FeatureRow) -> None:
                    if row.feature_fid == 99:
                        raise ValueError("constraint violated")
                    original(shape, row)

                session.upsert_feature = upsert  # type: ignore[method-assign]
                yield session

    broken = BrokenSessionStore()
    report = _runner(broken, _cells({"US5WA22M": bad})).run(chart_root)
    assert report.outcomes[0].status == "failed"
    assert broken.get("US5WA22M") is None
    assert broken.rows("DEPARE") == []


def test_concurrency_is_bounded(chart_root: pathlib.Path) -> None:
    names = [f"CELL{i:02d}" for i in range(12)]
    write_cells(chart_root, *names)
    lock = threading.Lock()
    active = 0
    peak = 0

    def slow_decode(path: pathlib.Path) -> None:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1

    store = database.InMemoryChartStore()
    decoder = FakeDecoder(
        {f"{name}.000": make_chart(name) for name in names},
        on_decode=slow_decode,
    )
    runner = orchestrator.IngestionOrchestrator(
        store, decoder, parallel=3, progress=False,
    )
    report = runner.run(chart_root)

    assert len(report.succeeded) == 12
    assert 1 <= peak <= 3
    assert sorted(decoder.calls) == sorted(f"{n}.000" for n in names)


def test_open_chart_transactions_are_bounded(chart_root: pathlib.Path) -> None:
    names = [f"CELL{i:02d}" for i in range(10)]
    write_cells(chart_root, *names)
    lock = threading.Lock()
    active = 0
    peak = 0

    class CountingStore(database.InMemoryChartStore):
        @contextlib.contextmanager
        def chart_session(self, enc_name: str) -> Iterator[database.InMemoryChartSession]:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            try:
                time.sleep(0.02)
                with super().chart_session(enc_name) as session:
                    yield session
            finally:
                with lock:
                    active -= 1

    store = CountingStore()
    runner = orchestrator.IngestionOrchestrator(
        store,
        FakeDecoder({f"{name}.000": make_chart(name) for name in names}),
        parallel=3,
        progress=False,
    )
    report = runner.run(chart_root)

    assert len(report.succeeded) == 10
    assert 1 <= peak <= 3


def test_progress_bar_counts_every_chart(
    monkeypatch: pytest.MonkeyPatch,
    chart_root: pathlib.Path,
) -> None:
    names = [f"CELL{i:02d}" for i in range(6)]
    write_cells(chart_root, *names)
    closed_at: list[int] = []

    class RecordingBar(orchestrator.tqdm):
        def close(self) -> None:
            if not self.disable:
                closed_at.append(self.n)
            super().close()

    monkeypatch.setattr(orchestrator, "tqdm", RecordingBar)
    runner = orchestrator.IngestionOrchestrator(
        database.InMemoryChartStore(),
        FakeDecoder(
            {f"{name}.000": make_chart(name) for name in names},
            on_decode=lambda path: time.sleep(0.05),
        ),
        parallel=3,
        progress=True,
    )
    runner.run(chart_root)

    assert closed_at == [6]


def test_transient_errors_are_retried(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    attempts = []

    class FlakyStore(database.InMemoryChartStore):
        @contextlib.contextmanager
        def chart_session(self, enc_name: str) -> Iterator[database.InMemoryChartSession]:
            attempts.append(enc_name)
            if len(attempts) < 3:
                raise errors.PoolTimeoutError("pool exhausted")
            with super().chart_session(enc_name) as session:
                yield session

    flaky = FlakyStore()
    report = _runner(flaky, _cells({"US5WA22M": make_chart()}),
                     retry_attempts=3).run(chart_root)
    assert report.outcomes[0].status == "imported"
    assert len(attempts) == 3


def test_retries_are_bounded(chart_root: pathlib.Path) -> None:
    write_cells(chart_root, "US5WA22M")

    class DownStore(database.InMemoryChartStore):
        def is_imported(self, *args: object) -> bool:
            raise errors.PoolTimeoutError("pool exhausted")

    report = _runner(DownStore(), _cells({"US5WA22M": make_chart()}),
                     retry_attempts=2).run(chart_root)
    assert report.outcomes[0].status == "failed"
    assert "PoolTimeoutError" in report.outcomes[0].error  # type: ignore[operator]


def test_include_layers_filter(
    store: database.InMemoryChartStore,
    chart_root: pathlib.Path,
) -> None:
    write_cells(chart_root, "US5WA22M")
    _runner(store, _cells({"US5WA22M": make_chart()}),
            include_layers=["soundg"]).run(chart_root)
    assert store.rows("DEPARE") == []
    assert len(store.rows("SOUNDG")) == 1
    assert store.get("US5WA22M") is not None


def test_registry_is_preloaded_from_store(chart_root: pathlib.Path) -> None:
    store = database.InMemoryChartStore()
    narrow = db_models.LayerShape("DEPARE", "depare", (
        db_models.ColumnDef("drval1", "DRVAL1", db_models.ColType.FLOAT),
    ))
    store.ensure_layer_schema(narrow)
    write_cells(chart_root, "US5WA22M")
    _runner(store, _cells({"US5WA22M": make_chart()})).run(chart_root)
    row = store.rows("DEPARE")[0]
    assert set(row.values) == {"drval1"}
    assert row.attributes == {"DRVAL2": 5.0}


def test_from_settings() -> None:
    settings = config.Settings(parallel_enc=4, retry_attempts=5,
                               coverage_layer="m_covr", include_layers=["DEPARE"])
    runner = orchestrator.IngestionOrchestrator.from_settings(
        settings, database.InMemoryChartStore(), FakeDecoder(), progress=False,
    )
    assert runner.parallel == 4
    assert runner.retry_attempts == 5
    assert runner.coverage_layer == "M_COVR"
    assert runner.include_layers == {"DEPARE"}


def test_invalid_parallelism() -> None:
    with pytest.raises(ValueError):
        orchestrator.IngestionOrchestrator(database.InMemoryChartStore(),
                                           FakeDecoder(), parallel=0)
