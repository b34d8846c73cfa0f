"""Feature precomputation and upsert.

Turns a decoded feature into a FeatureRow whose derived columns are final:
validated raw geometry, the geometry to project for tile serving, zoom
bounds, symbology tokens and typed attribute values. A feature with an
absent or unrepairable geometry is still written, with no projected
geometry, so one bad object never fails its chart.

Example:
    Precompute a depth area of a 1:50,000 chart:
        >>> from openenc.db import models as db_models
        >>> from openenc.services import layer_registry, precompute
        >>> meta = db_models.ChartMetadata("US5WA22M", 50000, 3, 1)
        >>> feature = db_models.DecodedFeature(
        ...     layer="DEPARE", fid=7, geometry=None,
        ...     attributes={"DRVAL1": 2.0, "SCAMIN": 25000},
        ... )
        >>> shape = layer_registry.BUILTIN_SHAPES["DEPARE"]
        >>> row = precompute.build_feature_row(meta, shape, feature)
        >>> (row.min_zoom, row.max_zoom, row.ac)
        (12, 13, 'DEPVS')
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import shapely
from shapely import errors as shapely_errors
from shapely import geometry as shapely_geometry

from openenc.db import models as db_models
from openenc.services import layer_registry, symbology, zoom

logger = logging.getLogger(__name__)


class FeatureWriter(Protocol):
    """Anything able to persist one precomputed row of a layer."""

    def upsert_feature(
        self,
        shape: db_models.LayerShape,
        row: db_models.FeatureRow,
    ) -> None: ...


def _first(value: Any) -> Any:
    if isinstance(value, str) and "," in value:
        value = value.split(",")
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _to_float(value: Any) -> float | None:
    value = _first(value)
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    value = _first(value)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        number = _to_float(value)
        return int(number) if number is not None and number.is_integer() else None


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


_COERCE = {
    db_models.ColType.FLOAT: _to_float,
    db_models.ColType.INT: _to_int,
    db_models.ColType.TEXT: _to_text,
}


def coerce_value(col_type: db_models.ColType, value: Any) -> Any:
    """Coerce a raw attribute value to a column's semantic type.

    List values keep their first element for numeric columns, which is how
    multi-valued attributes such as COLOUR are stored.
    """
    return _COERCE[col_type](value)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def prepare_geometry(
    geometry: db_models.GeoJSON | None,
) -> tuple[bytes | None, bytes | None]:
    """Validate a GeoJSON geometry.

    Returns:
        ``(raw_wkb, projectable_wkb)``: the 2D raw geometry as decoded, and
        the geometry to project for tile serving. The second element is the
        raw geometry when valid, its repair when ``make_valid`` yields a
        valid non-empty result, and None otherwise.
    """
    if not geometry:
        return None, None
    try:
        shape = shapely.force_2d(shapely_geometry.shape(geometry))
    except (ValueError, TypeError, AttributeError, KeyError,
            shapely_errors.ShapelyError) as exc:
        logger.debug("Unreadable geometry: %s", exc)
        return None, None
    if shape.is_empty:
        return None, None

    raw_wkb = shapely.to_wkb(shape)
    if shape.is_valid:
        return raw_wkb, raw_wkb

    repaired = shapely.make_valid(shape)
    if repaired.is_empty or not repaired.is_valid:
        return raw_wkb, None
    return raw_wkb, shapely.to_wkb(repaired)


def _scamin(attrs: dict[str, Any]) -> float | None:
    value = _to_float(attrs.get("SCAMIN"))
    if value is not None and value <= 0:
        logger.debug("Ignoring non-positive SCAMIN %s", value)
        return None
    return value


def build_feature_row(
    metadata: db_models.ChartMetadata,
    shape: db_models.LayerShape,
    feature: db_models.DecodedFeature,
) -> db_models.FeatureRow:
    """Compute every stored column of one feature.

    Raises:
        InvalidScaleError: If the chart's compilation scale is not positive.
    """
    attrs = {key.upper(): value for key, value in feature.attributes.items()}
    scamin = _scamin(attrs)
    geom_wkb, projected_wkb = prepare_geometry(feature.geometry)

    values = {
        col.name: coerce_value(col.col_type, attrs.get(col.attribute))
        for col in shape.columns
    }
    consumed = shape.attribute_names | layer_registry.COMMON_ATTRIBUTES
    extras = {
        key: _json_safe(value)
        for key, value in attrs.items()
        if key not in consumed and value is not None
    }
    tokens = symbology.style_for(shape.layer_id, attrs)

    return db_models.FeatureRow(
        enc_name=metadata.enc_name,
        feature_fid=feature.fid,
        edition=metadata.edition,
        update_number=metadata.update_number,
        compilation_scale=metadata.compilation_scale,
        scamin=scamin,
        objl=_to_int(attrs.get("OBJL")),
        values=values,
        ac=tokens.ac,
        lc=tokens.lc,
        sy=tokens.sy,
        sordat=_to_text(attrs.get("SORDAT")),
        sorind=_to_text(attrs.get("SORIND")),
        attributes=extras,
        geom_wkb=geom_wkb,
        projected_wkb=projected_wkb,
        min_zoom=zoom.min_zoom(metadata.compilation_scale),
        max_zoom=zoom.max_zoom(scamin),
    )


def upsert_feature(
    writer: FeatureWriter,
    metadata: db_models.ChartMetadata,
    shape: db_models.LayerShape,
    feature: db_models.DecodedFeature,
) -> db_models.FeatureRow:
    """Precompute one feature and write it through ``writer``."""
    row = build_feature_row(metadata, shape, feature)
    if row.projected_wkb is None:
        logger.debug("%s %s/%s stored without projected geometry",
                     metadata.enc_name, shape.layer_id, feature.fid)
    writer.upsert_feature(shape, row)
    return row
