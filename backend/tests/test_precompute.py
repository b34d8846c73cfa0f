"""Tests for feature precomputation."""

from __future__ import annotations

import json

import pytest
import shapely

from chart_factories import point, square
from openenc.core import errors
from openenc.db import models as db_models
from openenc.services import layer_registry, precompute

META = db_models.ChartMetadata("US5WA22M", 50000, edition=3, update_number=1)
DEPARE = layer_registry.BUILTIN_SHAPES["DEPARE"]
LIGHTS = layer_registry.BUILTIN_SHAPES["LIGHTS"]

BOWTIE = {
    "type": "Polygon",
    "coordinates": [[[0, 0], [2, 2], [2, 0], [0, 2], [0, 0]]],
}


class RecordingWriter:
    def __init__(self) -> None:
        self.rows: list[tuple[db_models.LayerShape, db_models.FeatureRow]] = []

    def upsert_feature(
        self,
        shape: db_models.LayerShape,
        row: db_models.FeatureRow,
    ) -> None:
        self.rows.append((shape, row))


def test_row_zoom_and_style() -> None:
    feature = db_models.DecodedFeature(
        "DEPARE", 7, square(0, 0),
        {"DRVAL1": 2.0, "DRVAL2": 5.0, "SCAMIN": 25000, "SORDAT": 20200101},
    )
    row = precompute.build_feature_row(META, DEPARE, feature)
    assert row.min_zoom == 12
    assert row.max_zoom == 13
    assert row.scamin == 25000.0
    assert (row.ac, row.lc) == ("DEPVS", "CHGRD")
    assert row.values == {"drval1": 2.0, "drval2": 5.0}
    assert row.sordat == "20200101"
    assert row.attributes == {}
    assert row.enc_name == "US5WA22M"
    assert (row.edition, row.update_number) == (3, 1)


def test_row_without_scamin_has_no_max_zoom() -> None:
    feature = db_models.DecodedFeature("DEPARE", 1, square(0, 0), {"DRVAL1": 12})
    row = precompute.build_feature_row(META, DEPARE, feature)
    assert row.max_zoom is None
    assert row.ac == "DEPDW"


def test_valid_geometry_is_projected() -> None:
    feature = db_models.DecodedFeature("DEPARE", 1, square(0, 0), {})
    row = precompute.build_feature_row(META, DEPARE, feature)
    assert row.geom_wkb is not None
    assert row.projected_wkb == row.geom_wkb


def test_invalid_geometry_is_repaired() -> None:
    raw, projected = precompute.prepare_geometry(BOWTIE)
    assert raw is not None and projected is not None
    assert not shapely.from_wkb(raw).is_valid
    assert shapely.from_wkb(projected).is_valid


def test_absent_geometry_keeps_row_without_projection() -> None:
    feature = db_models.DecodedFeature("DEPARE", 1, None, {"DRVAL1": 1.0})
    row = precompute.build_feature_row(META, DEPARE, feature)
    assert row.geom_wkb is None
    assert row.projected_wkb is None
    assert row.min_zoom == 12


def test_unreadable_geometry_is_dropped() -> None:
    assert precompute.prepare_geometry({"type": "Curve", "coordinates": []}) == (None, None)


def test_geometry_is_forced_to_2d() -> None:
    raw, _ = precompute.prepare_geometry(
        {"type": "Point", "coordinates": [1.0, 2.0, 7.5]},
    )
    assert raw is not None
    assert not shapely.from_wkb(raw).has_z


def test_unknown_attributes_go_to_json() -> None:
    feature = db_models.DecodedFeature(
        "LIGHTS", 3, point(1, 1),
        {"COLOUR": "3,1", "CATLIT": 8, "EXCLIT": 2, "LNAM_REFS": ["a", "b"],
         "INFORM": None},
    )
    row = precompute.build_feature_row(META, LIGHTS, feature)
    assert row.values["colour"] == 3
    assert row.values["catlit"] == 8
    assert row.values["objnam"] is None
    assert row.sy == "LIGHTS81"
    assert row.attributes == {"EXCLIT": 2, "LNAM_REFS": ["a", "b"]}
    json.dumps(row.attributes)


@pytest.mark.parametrize(
    ("col_type", "value", "expected"),
    [
        (db_models.ColType.FLOAT, "4.5", 4.5),
        (db_models.ColType.FLOAT, [2, 3], 2.0),
        (db_models.ColType.FLOAT, "", None),
        (db_models.ColType.INT, "3.0", 3),
        (db_models.ColType.INT, "3.5", None),
        (db_models.ColType.INT, [4, 1], 4),
        (db_models.ColType.TEXT, [1, 2], "1,2"),
        (db_models.ColType.TEXT, 12, "12"),
    ],
)
def test_coerce_value(col_type: db_models.ColType, value: object, expected: object) -> None:
    assert precompute.coerce_value(col_type, value) == expected


def test_non_positive_scamin_is_ignored() -> None:
    feature = db_models.DecodedFeature("DEPARE", 1, None, {"SCAMIN": 0})
    row = precompute.build_feature_row(META, DEPARE, feature)
    assert row.scamin is None
    assert row.max_zoom is None


def test_invalid_compilation_scale_raises() -> None:
    meta = db_models.ChartMetadata("BAD", 0)
    feature = db_models.DecodedFeature("DEPARE", 1, None, {})
    with pytest.raises(errors.InvalidScaleError):
        precompute.build_feature_row(meta, DEPARE, feature)


def test_upsert_feature_writes_one_row() -> None:
    writer = RecordingWriter()
    feature = db_models.DecodedFeature("DEPARE", 9, BOWTIE, {"DRVAL1": 4.0})
    row = precompute.upsert_feature(writer, META, DEPARE, feature)
    assert writer.rows == [(DEPARE, row)]
    assert row.feature_fid == 9
    assert row.ac == "DEPMS"
