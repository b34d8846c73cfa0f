"""Scale denominator to web map zoom level mapping.

A chart compiled at scale 1:S is shown from zoom ``28 - ceil(log2(S))``.
The same formula turns a feature's SCAMIN into its second zoom bound. The
values are stored in the layer tables at import time, so the tile functions
compare plain integers and never evaluate the formula themselves.

Example:
    >>> from openenc.services import zoom
    >>> zoom.min_zoom(50000)
    12
    >>> zoom.max_zoom(None) is None
    True
"""

from __future__ import annotations

import math

from openenc.core import errors

ZOOM_BASE = 28


def zoom_for_scale(scale: float) -> int:
    """Return the zoom level for a scale denominator.

    Args:
        scale: Scale denominator, must be positive and finite.

    Returns:
        ``28 - ceil(log2(scale))``. Larger denominators (coarser charts)
        give smaller zoom levels.

    Raises:
        InvalidScaleError: If ``scale`` is not a positive finite number.
    """
    if isinstance(scale, bool) or not math.isfinite(scale) or scale <= 0:
        raise errors.InvalidScaleError(f"Scale must be positive, got {scale!r}")
    return ZOOM_BASE - math.ceil(math.log2(scale))


def min_zoom(compilation_scale: float) -> int:
    """Zoom from which a chart of the given compilation scale is shown."""
    return zoom_for_scale(compilation_scale)


def max_zoom(scamin: float | None) -> int | None:
    """Zoom bound derived from a feature's SCAMIN, None without one."""
    if scamin is None:
        return None
    return zoom_for_scale(scamin)
