"""Registry of feature layer shapes.

Every feature layer gets one backing table whose layer-specific columns are
fixed when the layer is first seen. The registry maps a layer identifier to
that ordered attribute shape and is consulted both when the table is
created and when rows are written, so the two can never disagree.

Shapes come from three places, in priority order:

1. shapes already persisted in the store (``preload``),
2. the built-in definitions below for the core chart layers,
3. inference from the first chart that contains a new layer.

Example:
    >>> from openenc.services.layer_registry import LayerRegistry
    >>> registry = LayerRegistry()
    >>> [c.name for c in registry.get("DEPARE").columns]
    ['drval1', 'drval2']
"""

from __future__ import annotations

import logging
import re
import threading
from typing import TYPE_CHECKING, Any

from openenc.core import errors
from openenc.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

ColType = db_models.ColType
ColumnDef = db_models.ColumnDef

# Attributes with dedicated columns on every layer table.
COMMON_ATTRIBUTES = frozenset({"SCAMIN", "OBJL", "SORDAT", "SORIND"})

# Record plumbing emitted by the S-57 driver, kept in the JSONB column only.
RECORD_ATTRIBUTES = frozenset({
    "RCID", "PRIM", "GRUP", "RVER", "AGEN", "FIDN", "FIDS",
    "LNAM", "LNAM_REFS", "FFPT_RIND",
})

# Column names used by the fixed part of every layer table.
RESERVED_COLUMNS = frozenset({
    "id", "enc_name", "feature_fid", "edition", "update_number",
    "compilation_scale", "scamin", "objl", "ac", "lc", "sy", "sordat",
    "sorind", "attributes", "geom", "geom_3857", "min_zoom", "max_zoom",
    "created_at",
})

# Layers that never become feature tables.
NON_FEATURE_LAYERS = frozenset({"DSID"})
NON_FEATURE_PREFIXES = ("M_", "C_")

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,47}$")


def _shape(layer_id: str, *columns: tuple[str, ColType]) -> db_models.LayerShape:
    return db_models.LayerShape(
        layer_id=layer_id,
        table=layer_id.lower(),
        columns=tuple(
            ColumnDef(name=attr.lower(), attribute=attr, col_type=col_type)
            for attr, col_type in columns
        ),
    )


BUILTIN_SHAPES: dict[str, db_models.LayerShape] = {
    shape.layer_id: shape
    for shape in (
        _shape("DEPARE", ("DRVAL1", ColType.FLOAT), ("DRVAL2", ColType.FLOAT)),
        _shape(
            "LNDARE",
            ("OBJNAM", ColType.TEXT),
            ("CONDTN", ColType.INT),
            ("NATSUR", ColType.INT),
            ("NATQUA", ColType.INT),
        ),
        _shape(
            "LIGHTS",
            ("CATLIT", ColType.INT),
            ("COLOUR", ColType.INT),
            ("LITCHR", ColType.INT),
            ("SIGPER", ColType.FLOAT),
            ("VALNMR", ColType.FLOAT),
            ("HEIGHT", ColType.FLOAT),
            ("OBJNAM", ColType.TEXT),
        ),
        _shape(
            "SOUNDG",
            ("DEPTH", ColType.FLOAT),
            ("TECSOU", ColType.INT),
            ("QUASOU", ColType.INT),
            ("STATUS", ColType.INT),
        ),
    )
}


def table_name_for(layer_id: str) -> str:
    """Return the backing table name of a layer.

    Raises:
        SchemaConflictError: If the layer id does not map to a plain SQL
            identifier.
    """
    table = layer_id.strip().lower()
    if not _IDENTIFIER.match(table):
        raise errors.SchemaConflictError(f"Invalid layer identifier: {layer_id!r}")
    return table


def is_feature_layer(layer_id: str) -> bool:
    """True for layers that hold chart features rather than metadata."""
    upper = layer_id.upper()
    return upper not in NON_FEATURE_LAYERS and not upper.startswith(
        NON_FEATURE_PREFIXES,
    )


def _value_type(value: Any) -> ColType | None:
    if value is None or isinstance(value, (list, tuple, dict)):
        return None
    if isinstance(value, bool | int):
        return ColType.INT
    if isinstance(value, float):
        return ColType.FLOAT
    return ColType.TEXT


def _merge_types(current: ColType | None, new: ColType) -> ColType:
    if current is None or current == new:
        return new
    if {current, new} == {ColType.INT, ColType.FLOAT}:
        return ColType.FLOAT
    return ColType.TEXT


def infer_shape(
    layer_id: str,
    features: Iterable[db_models.DecodedFeature],
) -> db_models.LayerShape:
    """Infer a layer shape from the features of its first occurrence.

    Attribute order follows first appearance. An attribute seen only with
    list values or nulls gets no typed column and stays in the JSONB
    column.
    """
    table = table_name_for(layer_id)
    types: dict[str, ColType | None] = {}
    list_valued: set[str] = set()
    for feature in features:
        for attribute, value in feature.attributes.items():
            key = attribute.upper()
            if key in COMMON_ATTRIBUTES or key in RECORD_ATTRIBUTES:
                continue
            if isinstance(value, (list, tuple, dict)):
                list_valued.add(key)
            value_type = _value_type(value)
            if value_type is None:
                types.setdefault(key, None)
            else:
                types[key] = _merge_types(types.get(key), value_type)

    for key in list_valued:
        types[key] = None

    columns = []
    for attribute, col_type in types.items():
        if col_type is None:
            continue
        name = attribute.lower()
        if name in RESERVED_COLUMNS:
            name = f"attr_{name}"
        if not _IDENTIFIER.match(name):
            logger.debug("Layer %s: attribute %s has no column-safe name",
                         layer_id, attribute)
            continue
        columns.append(ColumnDef(name=name, attribute=attribute, col_type=col_type))

    return db_models.LayerShape(
        layer_id=layer_id.upper(),
        table=table,
        columns=tuple(columns),
    )


class LayerRegistry:
    """Thread-safe mapping from layer identifier to its fixed shape."""

    def __init__(self, shapes: Iterable[db_models.LayerShape] = ()) -> None:
        self._lock = threading.Lock()
        self._shapes: dict[str, db_models.LayerShape] = dict(BUILTIN_SHAPES)
        self.preload(shapes)

    def preload(self, shapes: Iterable[db_models.LayerShape]) -> None:
        """Adopt shapes persisted by earlier runs; they win over built-ins."""
        with self._lock:
            for shape in shapes:
                self._shapes[shape.layer_id.upper()] = shape

    def get(self, layer_id: str) -> db_models.LayerShape | None:
        with self._lock:
            return self._shapes.get(layer_id.upper())

    def shape_for(
        self,
        layer_id: str,
        features: Iterable[db_models.DecodedFeature],
    ) -> db_models.LayerShape:
        """Return the registered shape, inferring it on first occurrence."""
        key = layer_id.upper()
        with self._lock:
            shape = self._shapes.get(key)
            if shape is None:
                shape = infer_shape(key, features)
                self._shapes[key] = shape
                logger.info("Registered layer %s with %d attribute columns",
                            key, len(shape.columns))
            return shape

    def adopt(self, shape: db_models.LayerShape) -> None:
        """Replace a shape with the authoritative one from the store."""
        with self._lock:
            self._shapes[shape.layer_id.upper()] = shape

    def shapes(self) -> list[db_models.LayerShape]:
        with self._lock:
            return sorted(self._shapes.values(), key=lambda s: s.table)
