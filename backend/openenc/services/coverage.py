"""Chart coverage polygon resolution.

A chart's coverage is the union of its coverage-layer (M_COVR) polygons.
Features of that layer flagged with CATCOV other than 1 describe areas
without data and are ignored. Cells shipped without usable coverage fall
back to the convex hull of every geometry they contain.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import shapely
from shapely import errors as shapely_errors
from shapely import geometry as shapely_geometry

from openenc.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable

    from openenc.db import models as db_models

logger = logging.getLogger(__name__)

COVERAGE_AVAILABLE = 1


def _to_shape(
    feature: db_models.DecodedFeature,
) -> shapely.Geometry | None:
    if not feature.geometry:
        return None
    try:
        shape = shapely_geometry.shape(feature.geometry)
    except (ValueError, TypeError, AttributeError, KeyError,
            shapely_errors.ShapelyError) as exc:
        logger.debug("Ignoring malformed geometry of %s/%s: %s",
                     feature.layer, feature.fid, exc)
        return None
    if shape.is_empty:
        return None
    return shapely.force_2d(shape)


def _is_coverage_area(feature: db_models.DecodedFeature) -> bool:
    catcov = feature.attributes.get("CATCOV")
    if catcov is None:
        return True
    try:
        return int(catcov) == COVERAGE_AVAILABLE
    except (TypeError, ValueError):
        return False


def resolve_coverage(
    features: Iterable[db_models.DecodedFeature],
    coverage_layer: str = "M_COVR",
) -> shapely.Geometry:
    """Derive one geometry covering a chart's extent.

    Args:
        features: All decoded features of a single chart.
        coverage_layer: Layer whose polygons define coverage.

    Returns:
        Union of the coverage-layer geometries when there are any, else the
        convex hull of all feature geometries. Coordinates are WGS84.

    Raises:
        CoverageUnresolvableError: If the chart holds no geometry at all.
    """
    coverage_parts: list[shapely.Geometry] = []
    all_parts: list[shapely.Geometry] = []

    for feature in features:
        shape = _to_shape(feature)
        if shape is None:
            continue
        all_parts.append(shape)
        if (
            feature.layer.upper() == coverage_layer.upper()
            and _is_coverage_area(feature)
        ):
            coverage_parts.append(shape)

    if coverage_parts:
        valid_parts = [shapely.make_valid(part) for part in coverage_parts]
        return shapely.unary_union(valid_parts)

    if not all_parts:
        raise errors.CoverageUnresolvableError(
            "Chart has no geometry to derive coverage from",
        )

    logger.debug("No %s coverage, using convex hull of %d geometries",
                 coverage_layer, len(all_parts))
    return shapely_geometry.GeometryCollection(all_parts).convex_hull
