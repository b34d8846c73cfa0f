"""PostGIS MVT (Mapbox Vector Tiles) function generator.

This module generates the SQL functions a tile server calls to render
charts as Mapbox Vector Tiles. Each registered layer gets a
``{table}_mvt(z, x, y, query_params)`` function and all layers together are
served by ``enc_mvt(z, x, y, query_params)``, which concatenates one
``ST_AsMVT`` layer per table into a single multi-layer tile.

The generated functions never reproject features or evaluate the scale
formula: geometries are already stored in EPSG:3857 (``geom_3857``) and the
zoom bounds are precomputed integers. A row is part of tile ``(z, x, y)``
when:

- its raw geometry's bounding box intersects the tile envelope expressed in
  EPSG:4326,
- ``min_zoom <= z``,
- ``max_zoom IS NULL OR max_zoom <= z``,
- ``geom_3857 IS NOT NULL``.

Table names are interpolated into the SQL text and must come from the layer
registry, which only admits plain identifiers.

Example:
    Generate the functions for the built-in layers:
        >>> from openenc.services import layer_registry, tiles_postgis
        >>> shapes = layer_registry.LayerRegistry().shapes()
        >>> statements = tiles_postgis.build_function_statements(shapes)
        >>> statements[-1].startswith("CREATE OR REPLACE FUNCTION enc_mvt")
        True
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import shapely

if TYPE_CHECKING:
    from collections.abc import Sequence

    from openenc.db import models as db_models

MVT_EXTENT = 4096
MVT_BUFFER = 64
CHART_FUNCTION = "enc_mvt"

# Columns exposed as MVT feature properties besides the layer columns.
_TILE_PROPERTIES = (
    "enc_name", "compilation_scale", "scamin", "objl",
    "ac", "lc", "sy", "min_zoom", "max_zoom",
)


def build_tile_predicate(alias: str = "d", z: str = "z", x: str = "x",
                         y: str = "y") -> str:
    """Return the WHERE clause selecting rows of tile ``(z, x, y)``.

    Args:
        alias: Table alias used in the surrounding query.
        z: SQL expression for the zoom level.
        x: SQL expression for the tile column.
        y: SQL expression for the tile row.
    """
    return (
        f"{alias}.geom && ST_Transform(ST_TileEnvelope({z}, {x}, {y}), 4326) "
        f"AND {alias}.min_zoom <= {z} "
        f"AND ({alias}.max_zoom IS NULL OR {alias}.max_zoom <= {z}) "
        f"AND {alias}.geom_3857 IS NOT NULL"
    )


def _layer_select(
    shape: db_models.LayerShape,
    alias: str = "d",
    z: str = "z",
    x: str = "x",
    y: str = "y",
) -> str:
    properties = [*_TILE_PROPERTIES, *(col.name for col in shape.columns)]
    columns = ",\n        ".join(f"{alias}.{name}" for name in properties)
    return f"""
    SELECT
        ST_AsMVTGeom(
            {alias}.geom_3857,
            ST_TileEnvelope({z}, {x}, {y}),
            {MVT_EXTENT},
            {MVT_BUFFER},
            true
        ) AS mvt_geom,
        {columns}
    FROM {shape.table} {alias}
    WHERE {build_tile_predicate(alias, z, x, y)}
    ORDER BY {alias}.compilation_scale DESC""".rstrip()


def _layer_tile(shape: db_models.LayerShape) -> str:
    return (
        f"(SELECT ST_AsMVT(tile.*, '{shape.layer_id}', {MVT_EXTENT}, "
        f"'mvt_geom') FROM ({_layer_select(shape)}\n    ) AS tile)"
    )


def _function_sql(name: str, body: str) -> str:
    return f"""
CREATE OR REPLACE FUNCTION {name}(
    z integer,
    x integer,
    y integer,
    query_params json DEFAULT '{{}}'::json
)
RETURNS bytea AS $$
DECLARE
    mvt bytea;
BEGIN
    SELECT {body}
    INTO mvt;
    RETURN mvt;
END
$$ LANGUAGE plpgsql STABLE PARALLEL SAFE;""".strip()


def build_layer_function_sql(shape: db_models.LayerShape) -> str:
    """Return ``CREATE OR REPLACE FUNCTION {table}_mvt`` for one layer."""
    return _function_sql(f"{shape.table}_mvt", _layer_tile(shape))


def build_chart_function_sql(
    shapes: Sequence[db_models.LayerShape],
) -> str:
    """Return the unified ``enc_mvt`` function over every given layer.

    The tile is the byte concatenation of one MVT layer per table, which is
    a valid multi-layer MVT. Without layers the function returns an empty
    tile.
    """
    ordered = sorted(shapes, key=lambda shape: shape.table)
    if not ordered:
        body = "''::bytea"
    else:
        body = "\n    || ".join(
            f"COALESCE({_layer_tile(shape)}, ''::bytea)" for shape in ordered
        )
    return _function_sql(CHART_FUNCTION, body)


def build_function_statements(
    shapes: Sequence[db_models.LayerShape],
) -> list[str]:
    """All tile functions for the given layers, unified function last."""
    per_layer = [
        build_layer_function_sql(shape)
        for shape in sorted(shapes, key=lambda shape: shape.table)
    ]
    return [*per_layer, build_chart_function_sql(shapes)]


def build_mvt_sql(shape: db_models.LayerShape) -> str:
    """Return an ad-hoc ST_AsMVT query for a single layer.

    The query expects three positional parameters: $1=z (zoom), $2=x (tile
    X), $3=y (tile Y). It applies the same predicate as the generated
    functions and is meant for tile servers configured with raw SQL.

    Args:
        shape: Registered layer shape.

    Returns:
        SQL query string ready for execution with tile parameters.

    Example:
        >>> from openenc.services import layer_registry, tiles_postgis
        >>> shape = layer_registry.BUILTIN_SHAPES["DEPARE"]
        >>> "$1" in tiles_postgis.build_mvt_sql(shape)
        True
    """
    select = _layer_select(shape, "d", "$1", "$2", "$3")
    return (
        f"SELECT ST_AsMVT(tile.*, '{shape.layer_id}', {MVT_EXTENT}, "
        f"'mvt_geom') FROM ({select}\n) AS tile;"
    )


def tile_envelope(z: int, x: int, y: int) -> db_models.BBox:
    """Bounds of an XYZ tile as (minx, miny, maxx, maxy) in EPSG:4326."""
    n = 2**z

    def lon(col: int) -> float:
        return col / n * 360.0 - 180.0

    def lat(row: int) -> float:
        return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * row / n))))

    return (lon(x), lat(y + 1), lon(x + 1), lat(y))


def row_in_tile(row: db_models.FeatureRow, z: int, x: int, y: int) -> bool:
    """Evaluate the tile predicate for one precomputed row.

    Mirrors build_tile_predicate() for stores that cannot run SQL.
    """
    if row.geom_wkb is None or row.projected_wkb is None:
        return False
    if row.min_zoom > z:
        return False
    if row.max_zoom is not None and row.max_zoom > z:
        return False
    minx, miny, maxx, maxy = shapely.from_wkb(row.geom_wkb).bounds
    tminx, tminy, tmaxx, tmaxy = tile_envelope(z, x, y)
    return minx <= tmaxx and maxx >= tminx and miny <= tmaxy and maxy >= tminy
