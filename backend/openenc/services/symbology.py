"""Per-feature symbology tokens computed at import time.

Each feature row carries three presentation tokens that a map style reads
directly from the tile: ``ac`` (area colour token), ``lc`` (line colour
token) and ``sy`` (point symbol name). Deriving them here keeps the tile
functions free of per-request attribute logic.

Layers without a rule get no tokens.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from typing import Any, NamedTuple

Attributes = dict[str, Any]


class StyleTokens(NamedTuple):
    ac: str | None = None
    lc: str | None = None
    sy: str | None = None


class Colour(enum.IntEnum):
    """S-57 COLOUR attribute values."""

    WHITE = 1
    BLACK = 2
    RED = 3
    GREEN = 4
    BLUE = 5
    YELLOW = 6
    GREY = 7
    BROWN = 8
    AMBER = 9
    VIOLET = 10
    ORANGE = 11
    MAGENTA = 12
    PINK = 13


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _colour_from(value: Any) -> Colour | None:
    try:
        return Colour(int(value))
    except (TypeError, ValueError):
        return None


def parse_colours(attrs: Attributes) -> list[Colour]:
    """Parse the COLOUR attribute into a list of colours.

    COLOUR arrives as an integer, a numeric string, a list of either, or a
    comma separated string depending on how the decoder renders list
    attributes. Unknown codes are dropped.
    """
    raw = attrs.get("COLOUR")
    if raw is None:
        return []
    if isinstance(raw, str):
        items: list[Any] = [part for part in raw.split(",") if part.strip()]
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        items = [raw]

    colours = []
    for item in items:
        colour = _colour_from(item.strip() if isinstance(item, str) else item)
        if colour is not None:
            colours.append(colour)
    return colours


def depare_style(attrs: Attributes) -> StyleTokens:
    drval1 = _as_float(attrs.get("DRVAL1"))
    drval2 = _as_float(attrs.get("DRVAL2"))
    if drval1 is not None and drval2 is not None and drval1 < 0 and drval2 <= 0:
        ac = "DEPIT"
    elif drval1 is not None and drval1 <= 3.0:
        ac = "DEPVS"
    elif drval1 is not None and drval1 <= 6.0:
        ac = "DEPMS"
    elif drval1 is not None and drval1 <= 9.0:
        ac = "DEPMD"
    else:
        # unknown depth range renders as deep water
        ac = "DEPDW"
    return StyleTokens(ac=ac, lc="CHGRD")


def lndare_style(_attrs: Attributes) -> StyleTokens:
    return StyleTokens(ac="LANDA", lc="CSTLN", sy="LNDARE01")


def lights_style(attrs: Attributes) -> StyleTokens:
    """Pick a light symbol from CATLIT and the first COLOUR value."""
    colours = parse_colours(attrs)
    first = colours[0] if colours else None
    try:
        catlit = int(attrs["CATLIT"])
    except (KeyError, TypeError, ValueError):
        catlit = None

    if catlit == 8:
        symbol = "LIGHTS81" if first is Colour.RED else "LIGHTS82"
    elif first is Colour.RED:
        symbol = "LIGHTS11"
    elif first is Colour.GREEN:
        symbol = "LIGHTS12"
    elif first is Colour.YELLOW:
        symbol = "LIGHTS13"
    else:
        symbol = "LITDEF11"
    return StyleTokens(sy=symbol)


def soundg_style(attrs: Attributes) -> StyleTokens:
    depth = _as_float(attrs.get("DEPTH"))
    if depth is None:
        return StyleTokens()
    return StyleTokens(ac="SNDG2" if depth < 9.0 else "SNDG1")


STYLE_RULES: dict[str, Callable[[Attributes], StyleTokens]] = {
    "DEPARE": depare_style,
    "LNDARE": lndare_style,
    "LIGHTS": lights_style,
    "SOUNDG": soundg_style,
}


def style_for(layer_id: str, attrs: Attributes) -> StyleTokens:
    """Return the symbology tokens of one feature."""
    rule = STYLE_RULES.get(layer_id.upper())
    if rule is None:
        return StyleTokens()
    return rule(attrs)
