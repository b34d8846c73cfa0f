"""Chart stores: catalog, layer tables and chart-scoped transactions.

A chart store persists everything the importer produces. Work on one chart
happens inside a chart session, a single transaction that either commits
the chart's features together with its catalog record or leaves no trace
of it at all.

Two implementations share the protocols below: PostgresChartStore writes to
PostGIS through a ConnectionPool, InMemoryChartStore keeps the same data in
dictionaries for tests and local development.

Example:
    Import one feature into the in-memory store:
        >>> from openenc.db import database
        >>> store = database.InMemoryChartStore()
        >>> store.initialize()
        >>> with store.chart_session("US5WA22M") as session:
        ...     session.clear_chart("US5WA22M")
"""

from __future__ import annotations

import contextlib
import copy
import datetime
import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

from psycopg import rows as psycopg_rows
from psycopg import sql
from psycopg.types import json as psycopg_json

from openenc.db import models as db_models
from openenc.db import pool as db_pool
from openenc.db import schema
from openenc.services import tiles_postgis

if TYPE_CHECKING:
    from collections.abc import Iterator

    import psycopg

    from openenc.core import config

logger = logging.getLogger(__name__)


class ChartSessionProtocol(Protocol):
    """Writes belonging to one chart transaction."""

    def clear_chart(self, enc_name: str) -> int: ...

    def upsert_feature(
        self,
        shape: db_models.LayerShape,
        row: db_models.FeatureRow,
    ) -> None: ...

    def register(self, record: db_models.CatalogRecord) -> None: ...


class ChartStoreProtocol(Protocol):
    """Protocol interface for the chart catalog and layer tables.

    Implementations provide persistence for imported charts, supporting
    both in-memory (testing) and PostgreSQL (production) backends.
    """

    def initialize(self) -> None: ...

    def is_imported(
        self,
        enc_name: str,
        edition: int | None,
        update_number: int | None,
    ) -> bool: ...

    def get(self, enc_name: str) -> db_models.CatalogRecord | None: ...

    def all(self) -> list[db_models.CatalogRecord]: ...

    def layer_shapes(self) -> list[db_models.LayerShape]: ...

    def ensure_layer_schema(
        self,
        shape: db_models.LayerShape,
    ) -> db_models.LayerShape: ...

    def chart_session(
        self,
        enc_name: str,
    ) -> contextlib.AbstractContextManager[ChartSessionProtocol]: ...


class InMemoryChartSession(ChartSessionProtocol):
    """Buffers one chart's writes until its session commits."""

    def __init__(self, store: InMemoryChartStore) -> None:
        self._store = store
        self.cleared: set[str] = set()
        self.rows: dict[str, dict[tuple[str, int], db_models.FeatureRow]] = {}
        self.records: list[db_models.CatalogRecord] = []

    def clear_chart(self, enc_name: str) -> int:
        self.cleared.add(enc_name)
        removed = 0
        for table_rows in self.rows.values():
            for key in [k for k in table_rows if k[0] == enc_name]:
                del table_rows[key]
        for table_rows in self._store.tables.values():
            removed += sum(1 for key in table_rows if key[0] == enc_name)
        return removed

    def upsert_feature(
        self,
        shape: db_models.LayerShape,
        row: db_models.FeatureRow,
    ) -> None:
        if shape.table not in self._store.tables:
            raise KeyError(f"Layer table {shape.table} does not exist")
        table_rows = self.rows.setdefault(shape.table, {})
        table_rows[(row.enc_name, row.feature_fid)] = copy.deepcopy(row)

    def register(self, record: db_models.CatalogRecord) -> None:
        self.records.append(record)


class InMemoryChartStore(ChartStoreProtocol):
    """Simple in-memory store for tests and local development.

    Chart sessions are transactional: writes become visible only when the
    ``with`` block exits normally and are discarded on an exception. Data is
    lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._lock = threading.RLock()
        self.catalog: dict[str, db_models.CatalogRecord] = {}
        self.shapes: dict[str, db_models.LayerShape] = {}
        self.tables: dict[str, dict[tuple[str, int], db_models.FeatureRow]] = {}
        self.initialized = False

    def initialize(self) -> None:
        self.initialized = True

    def is_imported(
        self,
        enc_name: str,
        edition: int | None,
        update_number: int | None,
    ) -> bool:
        record = self.get(enc_name)
        return record is not None and record.matches(edition, update_number)

    def get(self, enc_name: str) -> db_models.CatalogRecord | None:
        with self._lock:
            return self.catalog.get(enc_name)

    def all(self) -> list[db_models.CatalogRecord]:
        with self._lock:
            return sorted(
                self.catalog.values(),
                key=lambda r: (-r.compilation_scale, r.enc_name),
            )

    def layer_shapes(self) -> list[db_models.LayerShape]:
        with self._lock:
            return sorted(self.shapes.values(), key=lambda s: s.table)

    def ensure_layer_schema(
        self,
        shape: db_models.LayerShape,
    ) -> db_models.LayerShape:
        """Create the layer table once; the first registered shape wins."""
        with self._lock:
            existing = self.shapes.get(shape.layer_id)
            if existing is not None:
                return existing
            self.shapes[shape.layer_id] = shape
            self.tables.setdefault(shape.table, {})
            return shape

    @contextlib.contextmanager
    def chart_session(self, enc_name: str) -> Iterator[InMemoryChartSession]:
        session = InMemoryChartSession(self)
        yield session
        with self._lock:
            for table_rows in self.tables.values():
                for key in [k for k in table_rows if k[0] in session.cleared]:
                    del table_rows[key]
            for table, rows in session.rows.items():
                self.tables[table].update(rows)
            for record in session.records:
                self.catalog[record.enc_name] = record
        logger.debug("Committed chart session %s", enc_name)

    def rows(self, layer_id: str) -> list[db_models.FeatureRow]:
        """Committed rows of one layer, ordered by chart and feature."""
        with self._lock:
            shape = self.shapes.get(layer_id.upper())
            if shape is None:
                return []
            return [
                self.tables[shape.table][key]
                for key in sorted(self.tables[shape.table])
            ]

    def tile_rows(
        self,
        layer_id: str,
        z: int,
        x: int,
        y: int,
    ) -> list[db_models.FeatureRow]:
        """Rows of one layer that the tile functions would return."""
        return [
            row for row in self.rows(layer_id)
            if tiles_postgis.row_in_tile(row, z, x, y)
        ]


class PostgresChartSession(ChartSessionProtocol):
    """Chart writes issued on the cursor of an open transaction."""

    def __init__(self, cursor: psycopg.Cursor[dict[str, Any]]) -> None:
        self.cursor = cursor
        self._upsert_sql: dict[db_models.LayerShape, str] = {}

    def clear_chart(self, enc_name: str) -> int:
        """Delete the chart's rows from every registered layer table."""
        self.cursor.execute("SELECT table_name FROM enc_layer_registry")
        tables = [row["table_name"] for row in self.cursor.fetchall()]
        removed = 0
        for table in tables:
            self.cursor.execute(
                sql.SQL("DELETE FROM {} WHERE enc_name = %s").format(
                    sql.Identifier(table),
                ),
                (enc_name,),
            )
            removed += max(self.cursor.rowcount, 0)
        return removed

    def upsert_feature(
        self,
        shape: db_models.LayerShape,
        row: db_models.FeatureRow,
    ) -> None:
        statement = self._upsert_sql.get(shape)
        if statement is None:
            statement = self._upsert_sql[shape] = schema.upsert_feature_sql(shape)
        self.cursor.execute(statement, self._to_params(row))

    def register(self, record: db_models.CatalogRecord) -> None:
        self.cursor.execute(
            """
            INSERT INTO enc_catalog (
                enc_name, compilation_scale, edition, update_number,
                coverage, imported_at
            ) VALUES (
                %(enc_name)s, %(compilation_scale)s, %(edition)s,
                %(update_number)s,
                ST_SetSRID(ST_GeomFromWKB(%(coverage)s), 4326),
                %(imported_at)s
            )
            ON CONFLICT (enc_name) DO UPDATE SET
                compilation_scale = EXCLUDED.compilation_scale,
                edition = EXCLUDED.edition,
                update_number = EXCLUDED.update_number,
                coverage = EXCLUDED.coverage,
                imported_at = EXCLUDED.imported_at;
            """,
            {
                "enc_name": record.enc_name,
                "compilation_scale": record.compilation_scale,
                "edition": record.edition,
                "update_number": record.update_number,
                "coverage": record.coverage_wkb,
                "imported_at": record.imported_at,
            },
        )

    @staticmethod
    def _to_params(row: db_models.FeatureRow) -> dict[str, Any]:
        """Convert a FeatureRow to named statement parameters."""
        params: dict[str, Any] = {
            "enc_name": row.enc_name,
            "feature_fid": row.feature_fid,
            "edition": row.edition,
            "update_number": row.update_number,
            "compilation_scale": row.compilation_scale,
            "scamin": row.scamin,
            "objl": row.objl,
            "ac": row.ac,
            "lc": row.lc,
            "sy": row.sy,
            "sordat": row.sordat,
            "sorind": row.sorind,
            "attributes": psycopg_json.Jsonb(row.attributes),
            "geom_wkb": row.geom_wkb,
            "projected_wkb": row.projected_wkb,
            "min_zoom": row.min_zoom,
            "max_zoom": row.max_zoom,
        }
        for name, value in row.values.items():
            params[f"col_{name}"] = value
        return params


class PostgresChartStore(ChartStoreProtocol):
    """PostgreSQL/PostGIS-backed chart store.

    Connections are borrowed from an injected ConnectionPool, which the
    caller owns and closes. Layer tables are created on a connection of
    their own, serialized by a transaction-scoped advisory lock keyed on
    the table name, so concurrent workers meeting the same new layer never
    race on its DDL.
    """

    def __init__(self, pool: db_pool.ConnectionPool) -> None:
        """Initialize the store on an open connection pool.

        Args:
            pool: Pool the store borrows its connections from.
        """
        self.pool = pool
        self._lock = threading.Lock()
        self._layer_locks: dict[str, threading.Lock] = {}
        self._ensured: dict[str, db_models.LayerShape] = {}

    @contextlib.contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor[dict[str, Any]]]:
        """Borrow a connection and run one transaction on it."""
        with self.pool.connection() as conn:
            with conn.transaction(), conn.cursor(
                row_factory=psycopg_rows.dict_row,
            ) as cur:
                yield cur

    def initialize(self) -> None:
        """Ensure PostGIS, the catalog and the layer registry exist."""
        with self._cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext('enc_bootstrap'))")
            for statement in schema.bootstrap_statements():
                cur.execute(statement)
        logger.info("Chart store schema ready")

    def is_imported(
        self,
        enc_name: str,
        edition: int | None,
        update_number: int | None,
    ) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT 1 FROM enc_catalog
                WHERE enc_name = %s
                  AND edition IS NOT DISTINCT FROM %s
                  AND update_number IS NOT DISTINCT FROM %s
                """,
                (enc_name, edition, update_number),
            )
            return cur.fetchone() is not None

    _CATALOG_SELECT = """
        SELECT enc_name, compilation_scale, edition, update_number,
               ST_AsBinary(coverage) AS coverage_wkb, imported_at
        FROM enc_catalog
    """

    def get(self, enc_name: str) -> db_models.CatalogRecord | None:
        with self._cursor() as cur:
            cur.execute(self._CATALOG_SELECT + " WHERE enc_name = %s",
                        (enc_name,))
            row = cur.fetchone()
            if row is None:
                return None
            return self._record_from_row(row)

    def all(self) -> list[db_models.CatalogRecord]:
        with self._cursor() as cur:
            cur.execute(self._CATALOG_SELECT
                        + " ORDER BY compilation_scale DESC, enc_name")
            return [self._record_from_row(row) for row in cur.fetchall()]

    def layer_shapes(self) -> list[db_models.LayerShape]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT layer_id, table_name, columns FROM enc_layer_registry "
                "ORDER BY table_name",
            )
            return [self._shape_from_row(row) for row in cur.fetchall()]

    def _layer_lock(self, layer_id: str) -> threading.Lock:
        with self._lock:
            return self._layer_locks.setdefault(layer_id, threading.Lock())

    def ensure_layer_schema(
        self,
        shape: db_models.LayerShape,
    ) -> db_models.LayerShape:
        """Create a layer's table, indexes and tile functions if absent.

        Safe under concurrent calls from threads of this process and from
        other processes. When the layer is already registered, its persisted
        shape is returned and ``shape`` is ignored.

        Returns:
            The authoritative shape of the layer.
        """
        cached = self._ensured.get(shape.layer_id)
        if cached is not None:
            return cached

        with self._layer_lock(shape.layer_id):
            cached = self._ensured.get(shape.layer_id)
            if cached is not None:
                return cached

            with self._cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))",
                            (shape.table,))
                cur.execute(
                    "SELECT layer_id, table_name, columns "
                    "FROM enc_layer_registry WHERE layer_id = %s",
                    (shape.layer_id,),
                )
                row = cur.fetchone()
                if row is not None:
                    authoritative = self._shape_from_row(row)
                else:
                    self._create_layer(cur, shape)
                    authoritative = shape

            self._ensured[shape.layer_id] = authoritative
            return authoritative

    def _create_layer(
        self,
        cur: psycopg.Cursor[dict[str, Any]],
        shape: db_models.LayerShape,
    ) -> None:
        cur.execute(schema.create_table_sql(shape))
        for statement in schema.create_indexes_sql(shape):
            cur.execute(statement)
        cur.execute(
            "INSERT INTO enc_layer_registry (layer_id, table_name, columns) "
            "VALUES (%s, %s, %s)",
            (
                shape.layer_id,
                shape.table,
                psycopg_json.Jsonb([col.to_dict() for col in shape.columns]),
            ),
        )
        cur.execute(tiles_postgis.build_layer_function_sql(shape))

        # Serialize regeneration of the unified function across layers.
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (tiles_postgis.CHART_FUNCTION,))
        cur.execute(
            "SELECT layer_id, table_name, columns FROM enc_layer_registry",
        )
        shapes = [self._shape_from_row(r) for r in cur.fetchall()]
        cur.execute(tiles_postgis.build_chart_function_sql(shapes))
        logger.info("Created layer table %s", shape.table)

    @contextlib.contextmanager
    def chart_session(self, enc_name: str) -> Iterator[PostgresChartSession]:
        """Open the single transaction holding one chart's writes.

        Commits when the block exits normally, rolls back otherwise.
        """
        with self._cursor() as cur:
            yield PostgresChartSession(cur)
        logger.debug("Committed chart transaction %s", enc_name)

    @staticmethod
    def _shape_from_row(row: dict[str, Any]) -> db_models.LayerShape:
        return db_models.LayerShape(
            layer_id=str(row["layer_id"]),
            table=str(row["table_name"]),
            columns=tuple(
                db_models.ColumnDef.from_dict(col)
                for col in cast(list[dict[str, str]], row["columns"])
            ),
        )

    @staticmethod
    def _record_from_row(row: dict[str, Any]) -> db_models.CatalogRecord:
        imported_at = row.get("imported_at") or datetime.datetime.now(
            datetime.UTC,
        )
        return db_models.CatalogRecord(
            enc_name=str(row["enc_name"]),
            compilation_scale=int(row["compilation_scale"]),
            edition=row.get("edition"),
            update_number=row.get("update_number"),
            coverage_wkb=bytes(row["coverage_wkb"]),
            imported_at=imported_at,
        )


def get_chart_store(
    settings: config.Settings,
    pool: db_pool.ConnectionPool | None = None,
) -> PostgresChartStore:
    """Factory function to create a Postgres chart store.

    Args:
        settings: Application settings for pool sizing and database URL.
        pool: Existing pool to use. When omitted, a pool is built from
            ``settings`` and opened; the caller owns closing it through
            ``store.pool.close()``.

    Returns:
        PostgresChartStore instance for production use.
    """
    if pool is None:
        pool = db_pool.ConnectionPool.from_settings(settings)
        pool.open()
    return PostgresChartStore(pool)
