"""S-57 chart discovery and decoding.

Charts are laid out one unit per directory below an input root, each
holding one or more base cells (``*.000``) with their update files
(``*.001``, ``*.002``...). Updates are applied by the OGR S-57 driver while
reading, so only base cells are decoded.

The decoder is a boundary: the rest of the pipeline only depends on the
ChartDecoder protocol and the decoded data models, so tests can feed
charts without GDAL installed.

Example:
    >>> import pathlib
    >>> from openenc.services import decoder
    >>> for enc_dir in decoder.find_enc_directories(pathlib.Path("ENC_ROOT")):
    ...     for cell in decoder.find_s57_files(enc_dir):
    ...         chart = decoder.GdalChartDecoder().decode(cell)
"""

from __future__ import annotations

import json
import logging
import pathlib
import re
from typing import TYPE_CHECKING, Any, Protocol

from openenc.core import errors
from openenc.db import models as db_models
from openenc.services import layer_registry
from openenc.utils import gdal_helpers

if TYPE_CHECKING:
    from collections.abc import Collection

logger = logging.getLogger(__name__)

BASE_CELL_SUFFIX = ".000"
METADATA_LAYER = "DSID"

_LAYER_LINE = re.compile(r"^\s*\d+:\s+(\S+)")


class ChartDecoder(Protocol):
    """Turns one chart cell on disk into decoded features."""

    def decode(
        self,
        path: pathlib.Path,
        layers: Collection[str] | None = None,
    ) -> db_models.DecodedChart: ...


def find_enc_directories(input_dir: pathlib.Path) -> list[pathlib.Path]:
    """Chart unit directories directly below ``input_dir``, sorted."""
    if not input_dir.is_dir():
        raise NotADirectoryError(f"Input directory not found: {input_dir}")
    return sorted(path for path in input_dir.iterdir() if path.is_dir())


def find_s57_files(enc_dir: pathlib.Path) -> list[pathlib.Path]:
    """Base cells of one chart unit, sorted; update files are skipped."""
    return sorted(
        path for path in enc_dir.iterdir()
        if path.is_file() and path.suffix == BASE_CELL_SUFFIX
    )


def find_charts(input_dir: pathlib.Path) -> list[pathlib.Path]:
    """Every base cell below ``input_dir``, in unit then file order."""
    cells = []
    for enc_dir in find_enc_directories(input_dir):
        found = find_s57_files(enc_dir)
        if not found:
            logger.warning("No S-57 files found in %s", enc_dir)
        cells.extend(found)
    return cells


def enc_name_from_path(path: pathlib.Path) -> str:
    """Cell name of a chart file (``US5WA22M.000`` gives ``US5WA22M``)."""
    return path.name.split(".", 1)[0]


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _field(properties: dict[str, Any], *names: str) -> Any:
    upper = {key.upper(): value for key, value in properties.items()}
    for name in names:
        if upper.get(name) is not None:
            return upper[name]
    return None


def metadata_from_dsid(
    enc_name: str,
    properties: dict[str, Any],
) -> db_models.ChartMetadata:
    """Build chart metadata from the fields of the DSID record.

    Raises:
        DecodeError: If the record carries no compilation scale.
    """
    scale = _to_int(_field(properties, "DSPM_CSCL", "CSCL"))
    if scale is None:
        raise errors.DecodeError(f"{enc_name}: DSID has no compilation scale")
    return db_models.ChartMetadata(
        enc_name=enc_name,
        compilation_scale=scale,
        edition=_to_int(_field(properties, "DSID_EDTN", "EDTN")),
        update_number=_to_int(_field(properties, "DSID_UPDN", "UPDN")),
    )


def features_from_geojson(
    layer: str,
    collection: dict[str, Any],
) -> list[db_models.DecodedFeature]:
    """Convert an OGR GeoJSON FeatureCollection into decoded features.

    The feature's ``id`` is its identity when OGR provides an integer one,
    otherwise its position in the layer.
    """
    features = []
    for index, item in enumerate(collection.get("features") or ()):
        fid = item.get("id")
        if isinstance(fid, bool) or not isinstance(fid, int):
            fid = index
        features.append(
            db_models.DecodedFeature(
                layer=layer,
                fid=fid,
                geometry=item.get("geometry"),
                attributes={
                    key.upper(): value
                    for key, value in (item.get("properties") or {}).items()
                },
            ),
        )
    return features


class GdalChartDecoder(ChartDecoder):
    """Decoder running the OGR command-line tools.

    Attributes:
        coverage_layer: Layer always exported, whatever the layer filter,
            because chart coverage is derived from it.
    """

    def __init__(self, coverage_layer: str = "M_COVR") -> None:
        self.coverage_layer = coverage_layer.upper()

    def list_layers(self, path: pathlib.Path) -> list[str]:
        """Names of the layers OGR exposes for a cell."""
        output = self._run([
            "ogrinfo", "-ro", "-q", path, *gdal_helpers.s57_config_args(),
        ])
        layers = []
        for line in output.splitlines():
            match = _LAYER_LINE.match(line)
            if match:
                layers.append(match.group(1))
        return layers

    def export_layer(self, path: pathlib.Path, layer: str) -> dict[str, Any]:
        """One layer of a cell as a GeoJSON FeatureCollection."""
        output = self._run([
            "ogr2ogr", "-f", "GeoJSON", "-preserve_fid", "/vsistdout/",
            path, layer, *gdal_helpers.s57_config_args(),
        ])
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise errors.DecodeError(
                f"{path.name}: layer {layer} is not valid GeoJSON: {exc}",
            ) from exc

    def decode(
        self,
        path: pathlib.Path,
        layers: Collection[str] | None = None,
    ) -> db_models.DecodedChart:
        """Decode a base cell and its updates.

        Args:
            path: Base cell (``*.000``).
            layers: Feature layers to export; all when None. The metadata
                and coverage layers are always read.

        Raises:
            DecodeError: If OGR fails or the cell lacks a DSID record.
        """
        enc_name = enc_name_from_path(path)
        available = self.list_layers(path)
        if METADATA_LAYER not in (name.upper() for name in available):
            raise errors.DecodeError(f"{path.name}: no {METADATA_LAYER} record")

        dsid = self.export_layer(path, METADATA_LAYER)
        first = next(iter(dsid.get("features") or ()), None)
        if first is None:
            raise errors.DecodeError(f"{path.name}: empty {METADATA_LAYER} record")
        metadata = metadata_from_dsid(enc_name, first.get("properties") or {})

        wanted = {name.upper() for name in layers} if layers else None
        features: list[db_models.DecodedFeature] = []
        for layer in available:
            key = layer.upper()
            if key == METADATA_LAYER:
                continue
            if key != self.coverage_layer:
                if not layer_registry.is_feature_layer(key):
                    continue
                if wanted is not None and key not in wanted:
                    continue
            features.extend(
                features_from_geojson(key, self.export_layer(path, layer)),
            )

        logger.debug("%s: decoded %d features from %d layers", enc_name,
                     len(features), len(available))
        return db_models.DecodedChart(
            metadata=metadata,
            source_path=str(path),
            features=features,
        )

    @staticmethod
    def _run(command: list[str | pathlib.Path]) -> str:
        try:
            return gdal_helpers.run_command(command)
        except gdal_helpers.CommandError as exc:
            raise errors.DecodeError(str(exc)) from exc
