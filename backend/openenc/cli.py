"""Command line entry point.

``openenc import`` loads a directory tree of S-57 charts into PostGIS and
``openenc functions`` prints the tile functions of the registered layers.

Example:
    $ openenc import --input-dir /data/ENC_ROOT --parallel-enc 4
    $ openenc functions --output tiles.sql
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import pathlib
import sys
from typing import TYPE_CHECKING

import psycopg

from openenc.core import config, errors
from openenc.core import logging as core_logging
from openenc.db import database
from openenc.db import pool as db_pool
from openenc.services import decoder, layer_registry, orchestrator, tiles_postgis

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 2


@contextlib.contextmanager
def open_store(settings: config.Settings) -> Iterator[database.ChartStoreProtocol]:
    """Open the connection pool and an initialized store on top of it."""
    with db_pool.ConnectionPool.from_settings(settings) as pool:
        store = database.PostgresChartStore(pool)
        store.initialize()
        yield store


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openenc",
        description="Import S-57 nautical charts into PostGIS",
    )
    parser.add_argument(
        "--log-level",
        help="Log level name (defaults to LOG_LEVEL or INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    importer = commands.add_parser("import", help="Import a directory of charts")
    importer.add_argument(
        "--input-dir",
        required=True,
        type=pathlib.Path,
        help="Directory holding one subdirectory per chart",
    )
    importer.add_argument(
        "--force-reimport",
        action="store_true",
        help="Reimport charts already recorded with the same edition/update",
    )
    importer.add_argument("--parallel-enc", type=int,
                          help="Charts imported concurrently")
    importer.add_argument("--max-connections", type=int,
                          help="Connection pool upper bound")
    importer.add_argument("--min-connections", type=int,
                          help="Connections opened at startup")
    importer.add_argument("--no-progress", action="store_true",
                          help="Hide the progress bar")

    functions = commands.add_parser(
        "functions",
        help="Print the tile functions of the registered layers",
    )
    functions.add_argument("--output", type=pathlib.Path,
                           help="Write the SQL to this file instead of stdout")
    functions.add_argument(
        "--builtin",
        action="store_true",
        help="Use the built-in layers without connecting to the database",
    )
    return parser


def _settings_from_args(args: argparse.Namespace) -> config.Settings:
    overrides = {
        "parallel_enc": getattr(args, "parallel_enc", None),
        "max_connections": getattr(args, "max_connections", None),
        "min_connections": getattr(args, "min_connections", None),
        "log_level": args.log_level,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    return config.Settings.model_validate(
        {**config.get_settings().model_dump(), **updates},
    )


def run_import(args: argparse.Namespace, settings: config.Settings) -> int:
    input_dir: pathlib.Path = args.input_dir
    if not input_dir.is_dir():
        logger.error("Input directory not found: %s", input_dir)
        return EXIT_STARTUP_FAILURE

    try:
        with open_store(settings) as store:
            runner = orchestrator.IngestionOrchestrator.from_settings(
                settings,
                store,
                decoder.GdalChartDecoder(settings.coverage_layer),
                progress=not args.no_progress,
            )
            report = runner.run(input_dir, force=args.force_reimport)
    except (psycopg.Error, errors.PoolTimeoutError) as exc:
        logger.error("Cannot use the chart store: %s", exc)
        return EXIT_STARTUP_FAILURE

    print(report.summary())
    return EXIT_OK


def run_functions(args: argparse.Namespace, settings: config.Settings) -> int:
    if args.builtin:
        shapes = layer_registry.LayerRegistry().shapes()
    else:
        try:
            with open_store(settings) as store:
                shapes = store.layer_shapes()
        except (psycopg.Error, errors.PoolTimeoutError) as exc:
            logger.error("Cannot use the chart store: %s", exc)
            return EXIT_STARTUP_FAILURE

    script = "\n\n".join(tiles_postgis.build_function_statements(shapes)) + "\n"
    if args.output is None:
        sys.stdout.write(script)
    else:
        args.output.write_text(script, encoding="utf-8")
        logger.info("Wrote %d tile functions to %s", len(shapes) + 1, args.output)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = _settings_from_args(args)
        core_logging.configure_logging(settings.log_level)
    except ValueError as exc:
        print(f"openenc: {exc}", file=sys.stderr)
        return EXIT_STARTUP_FAILURE

    if args.command == "import":
        return run_import(args, settings)
    return run_functions(args, settings)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
