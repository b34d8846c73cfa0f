"""DDL for the chart catalog, the layer registry and per-layer tables.

All statements are idempotent (``IF NOT EXISTS``) so they can be replayed
on every start. Table and column names come from LayerShape objects whose
identifiers were validated by the layer registry; they are interpolated
into the SQL text, values never are.

Every layer table carries the same fixed columns around its layer-specific
ones:

- ``geom``: raw geometry, EPSG:4326, GIST indexed.
- ``geom_3857``: geometry projected for tile serving, NULL when the raw
  geometry is absent or invalid, GIST indexed.
- ``min_zoom`` / ``max_zoom``: precomputed zoom bounds with partial btree
  indexes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from openenc.db import models as db_models

POSTGIS_EXTENSION_SQL = "CREATE EXTENSION IF NOT EXISTS postgis;"

# imported_at extends the chart catalog and defaults for writers that omit it.
CATALOG_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS enc_catalog (
    enc_name TEXT PRIMARY KEY,
    compilation_scale INTEGER NOT NULL,
    edition INTEGER,
    update_number INTEGER,
    coverage GEOMETRY(GEOMETRY, 4326) NOT NULL,
    imported_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
""".strip()

CATALOG_INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS enc_catalog_coverage_idx "
    "ON enc_catalog USING GIST(coverage);",
    "CREATE INDEX IF NOT EXISTS enc_catalog_scale_idx "
    "ON enc_catalog(compilation_scale);",
)

REGISTRY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS enc_layer_registry (
    layer_id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL UNIQUE,
    columns JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
""".strip()


def bootstrap_statements() -> list[str]:
    """Statements creating everything that does not depend on a layer."""
    return [
        POSTGIS_EXTENSION_SQL,
        CATALOG_TABLE_SQL,
        *CATALOG_INDEXES_SQL,
        REGISTRY_TABLE_SQL,
    ]


def create_table_sql(shape: db_models.LayerShape) -> str:
    """Return ``CREATE TABLE IF NOT EXISTS`` DDL for a layer."""
    lines = [
        "id BIGSERIAL PRIMARY KEY",
        "enc_name TEXT NOT NULL",
        "feature_fid BIGINT NOT NULL",
        "edition INTEGER",
        "update_number INTEGER",
        "compilation_scale INTEGER NOT NULL",
        "scamin NUMERIC",
        "objl INTEGER",
    ]
    lines.extend(f"{col.name} {col.col_type.sql_type}" for col in shape.columns)
    lines.extend([
        "ac TEXT",
        "lc TEXT",
        "sy TEXT",
        "sordat TEXT",
        "sorind TEXT",
        "attributes JSONB",
        "geom GEOMETRY(GEOMETRY, 4326)",
        "geom_3857 GEOMETRY(GEOMETRY, 3857)",
        "min_zoom SMALLINT NOT NULL",
        "max_zoom SMALLINT",
        "created_at TIMESTAMPTZ DEFAULT now()",
        f"CONSTRAINT {shape.table}_unique_feature UNIQUE (enc_name, feature_fid)",
    ])
    body = ",\n".join(f"    {line}" for line in lines)
    return f"CREATE TABLE IF NOT EXISTS {shape.table} (\n{body}\n);"


def create_indexes_sql(shape: db_models.LayerShape) -> list[str]:
    """Return the index DDL every layer table needs."""
    table = shape.table
    return [
        f"CREATE INDEX IF NOT EXISTS {table}_geom_idx "
        f"ON {table} USING GIST(geom);",
        f"CREATE INDEX IF NOT EXISTS {table}_geom_3857_idx "
        f"ON {table} USING GIST(geom_3857);",
        f"CREATE INDEX IF NOT EXISTS {table}_min_zoom_idx "
        f"ON {table}(min_zoom) WHERE min_zoom IS NOT NULL;",
        f"CREATE INDEX IF NOT EXISTS {table}_max_zoom_idx "
        f"ON {table}(max_zoom) WHERE max_zoom IS NOT NULL;",
        f"CREATE INDEX IF NOT EXISTS {table}_enc_name_idx "
        f"ON {table}(enc_name);",
        f"CREATE INDEX IF NOT EXISTS {table}_compilation_scale_idx "
        f"ON {table}(compilation_scale);",
    ]


def upsert_feature_sql(shape: db_models.LayerShape) -> str:
    """Return the parameterized insert-or-update statement for a layer.

    Parameters are named after FeatureRow fields; layer-specific values use
    ``%(col_<name>)s``. PostGIS projects ``projected_wkb`` to EPSG:3857 on
    write; a NULL input leaves ``geom_3857`` NULL.
    """
    layer_cols = [col.name for col in shape.columns]
    columns = [
        "enc_name", "feature_fid", "edition", "update_number",
        "compilation_scale", "scamin", "objl", *layer_cols,
        "ac", "lc", "sy", "sordat", "sorind", "attributes",
        "geom", "geom_3857", "min_zoom", "max_zoom",
    ]
    values = [
        "%(enc_name)s", "%(feature_fid)s", "%(edition)s", "%(update_number)s",
        "%(compilation_scale)s", "%(scamin)s", "%(objl)s",
        *(f"%(col_{name})s" for name in layer_cols),
        "%(ac)s", "%(lc)s", "%(sy)s", "%(sordat)s", "%(sorind)s",
        "%(attributes)s",
        "ST_SetSRID(ST_GeomFromWKB(%(geom_wkb)s), 4326)",
        "ST_Transform(ST_SetSRID(ST_GeomFromWKB(%(projected_wkb)s), 4326), 3857)",
        "%(min_zoom)s", "%(max_zoom)s",
    ]
    updates = ", ".join(
        f"{col} = EXCLUDED.{col}"
        for col in columns
        if col not in ("enc_name", "feature_fid")
    )
    return (
        f"INSERT INTO {shape.table} ({', '.join(columns)}) "
        f"VALUES ({', '.join(values)}) "
        f"ON CONFLICT (enc_name, feature_fid) DO UPDATE SET {updates}"
    )
