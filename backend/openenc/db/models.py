"""Data models for charts, layers, features and the import catalog.

This module defines the core data structures used throughout the ingestion
pipeline. Decoded input (ChartMetadata, DecodedFeature, DecodedChart) comes
from the chart decoder; LayerShape describes the fixed column layout of one
feature layer; FeatureRow is a fully precomputed row ready to be written;
CatalogRecord is the durable witness that a chart version was imported.

Example:
    Describe a decoded chart with a single depth area:
        >>> from openenc.db.models import ChartMetadata, DecodedFeature
        >>> meta = ChartMetadata(
        ...     enc_name="US5WA22M",
        ...     compilation_scale=50000,
        ...     edition=3,
        ...     update_number=1,
        ... )
        >>> feature = DecodedFeature(
        ...     layer="DEPARE",
        ...     fid=1,
        ...     geometry={"type": "Point", "coordinates": [-122.3, 47.6]},
        ...     attributes={"DRVAL1": 0.0, "DRVAL2": 5.0},
        ... )
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any, Literal

import shapely

BBox = tuple[float, float, float, float]
GeoJSON = dict[str, Any]
OutcomeStatus = Literal["imported", "skipped", "failed"]


@dataclasses.dataclass(frozen=True)
class ChartMetadata:
    """Identity and version of one chart cell, read from its DSID record.

    Attributes:
        enc_name: Cell name, unique across the catalog (e.g. "US5WA22M").
        compilation_scale: Scale denominator the cell was compiled at.
        edition: Edition number, None when the cell does not carry one.
        update_number: Number of the last applied update, None if unknown.
    """

    enc_name: str
    compilation_scale: int
    edition: int | None = None
    update_number: int | None = None


@dataclasses.dataclass(frozen=True)
class DecodedFeature:
    """One geographic object handed over by the chart decoder.

    Attributes:
        layer: Feature class acronym (e.g. "DEPARE", "LIGHTS").
        fid: Identity of the feature within its chart and layer.
        geometry: GeoJSON geometry in WGS84, None when the object has none.
        attributes: Raw attribute values keyed by upper-case acronym.
    """

    layer: str
    fid: int
    geometry: GeoJSON | None
    attributes: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class DecodedChart:
    """Everything the decoder extracted from one chart cell."""

    metadata: ChartMetadata
    source_path: str
    features: list[DecodedFeature] = dataclasses.field(default_factory=list)

    def layers(self) -> list[str]:
        """Distinct layer identifiers in order of first appearance."""
        seen: dict[str, None] = {}
        for feature in self.features:
            seen.setdefault(feature.layer, None)
        return list(seen)

    def features_for(self, layer: str) -> list[DecodedFeature]:
        return [f for f in self.features if f.layer == layer]


class ColType(enum.StrEnum):
    """Semantic type of a layer-specific attribute column."""

    FLOAT = "float"
    INT = "int"
    TEXT = "text"

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]


_SQL_TYPES = {
    ColType.FLOAT: "NUMERIC",
    ColType.INT: "INTEGER",
    ColType.TEXT: "TEXT",
}


@dataclasses.dataclass(frozen=True)
class ColumnDef:
    """Maps one decoded attribute onto a typed table column.

    Attributes:
        name: SQL column name (lower-case identifier).
        attribute: Attribute acronym as produced by the decoder.
        col_type: Semantic type deciding the SQL type and value coercion.
    """

    name: str
    attribute: str
    col_type: ColType

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "attribute": self.attribute,
            "col_type": self.col_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> ColumnDef:
        return cls(
            name=data["name"],
            attribute=data["attribute"],
            col_type=ColType(data["col_type"]),
        )


@dataclasses.dataclass(frozen=True)
class LayerShape:
    """Ordered attribute shape and backing table of one feature layer.

    The column set is fixed when the layer is first registered; later
    charts contributing the same layer are written against this shape.

    Attributes:
        layer_id: Feature class acronym (upper case).
        table: Backing table name (lower case).
        columns: Layer-specific typed columns in table order.
    """

    layer_id: str
    table: str
    columns: tuple[ColumnDef, ...] = ()

    @property
    def attribute_names(self) -> frozenset[str]:
        return frozenset(col.attribute for col in self.columns)


@dataclasses.dataclass
class FeatureRow:
    """A feature with every derived column already computed.

    Attributes:
        enc_name: Owning chart.
        feature_fid: Feature identity inside the chart.
        edition: Chart edition at import time.
        update_number: Chart update number at import time.
        compilation_scale: Chart compilation scale.
        scamin: Feature SCAMIN attribute, if any.
        objl: S-57 object class code, if any.
        values: Typed values for the layer's columns, keyed by column name.
        ac: Area colour token.
        lc: Line colour token.
        sy: Point symbol name.
        sordat: Source date attribute.
        sorind: Source indication attribute.
        attributes: Remaining attributes without a dedicated column.
        geom_wkb: Raw 2D geometry (WGS84) as WKB, None if absent.
        projected_wkb: Valid, possibly repaired, WGS84 geometry to project
            for tile serving; None when the raw geometry is absent or
            cannot be repaired.
        min_zoom: Zoom from which the chart's data is shown.
        max_zoom: Zoom derived from SCAMIN, None without SCAMIN.
    """

    enc_name: str
    feature_fid: int
    edition: int | None
    update_number: int | None
    compilation_scale: int
    scamin: float | None
    objl: int | None
    values: dict[str, Any]
    ac: str | None
    lc: str | None
    sy: str | None
    sordat: str | None
    sorind: str | None
    attributes: dict[str, Any]
    geom_wkb: bytes | None
    projected_wkb: bytes | None
    min_zoom: int
    max_zoom: int | None


@dataclasses.dataclass
class CatalogRecord:
    """Durable witness that one chart version is fully imported.

    Attributes:
        enc_name: Chart cell name (primary key).
        compilation_scale: Chart compilation scale.
        edition: Edition number.
        update_number: Update number.
        coverage_wkb: Coverage polygon (WGS84) as WKB.
        imported_at: Time the record was written.
    """

    enc_name: str
    compilation_scale: int
    edition: int | None
    update_number: int | None
    coverage_wkb: bytes
    imported_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC),
    )

    @property
    def bbox(self) -> BBox:
        """Coverage bounds as (minx, miny, maxx, maxy) in WGS84."""
        minx, miny, maxx, maxy = shapely.from_wkb(self.coverage_wkb).bounds
        return (minx, miny, maxx, maxy)

    def matches(self, edition: int | None, update_number: int | None) -> bool:
        return self.edition == edition and self.update_number == update_number


class Decision(enum.Enum):
    """What to do with one chart unit of work."""

    SKIP = "skip"
    IMPORT = "import"
    FORCE_REIMPORT = "force_reimport"


@dataclasses.dataclass
class ChartOutcome:
    """Result of one chart unit of work."""

    source: str
    status: OutcomeStatus
    enc_name: str | None = None
    feature_count: int = 0
    error: str | None = None


@dataclasses.dataclass
class BatchReport:
    """Aggregated per-chart outcomes of one orchestrator run."""

    outcomes: list[ChartOutcome] = dataclasses.field(default_factory=list)

    def _with_status(self, status: OutcomeStatus) -> list[ChartOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ChartOutcome]:
        return self._with_status("imported")

    @property
    def skipped(self) -> list[ChartOutcome]:
        return self._with_status("skipped")

    @property
    def failed(self) -> list[ChartOutcome]:
        return self._with_status("failed")

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} imported, {len(self.skipped)} skipped, "
            f"{len(self.failed)} failed"
        )
