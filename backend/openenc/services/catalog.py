"""Chart catalog decisions.

The catalog records which chart versions are fully imported. A record is
written in the same transaction as the chart's features, so its presence
means the version is complete and a later run may skip it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import shapely

from openenc.db import models as db_models

if TYPE_CHECKING:
    from openenc.db import database

logger = logging.getLogger(__name__)


def is_imported(
    store: database.ChartStoreProtocol,
    metadata: db_models.ChartMetadata,
) -> bool:
    """True when this exact edition and update of the chart is recorded."""
    return store.is_imported(
        metadata.enc_name,
        metadata.edition,
        metadata.update_number,
    )


def decide(
    store: database.ChartStoreProtocol,
    metadata: db_models.ChartMetadata,
    force: bool = False,
) -> db_models.Decision:
    """Choose what to do with a decoded chart.

    Args:
        store: Store whose catalog is consulted.
        metadata: Identity and version of the chart.
        force: Reimport even when the version is already recorded.

    Returns:
        FORCE_REIMPORT when forced, SKIP when this version is already
        imported, IMPORT otherwise.
    """
    if force:
        return db_models.Decision.FORCE_REIMPORT
    if is_imported(store, metadata):
        return db_models.Decision.SKIP
    return db_models.Decision.IMPORT


def build_record(
    metadata: db_models.ChartMetadata,
    coverage: shapely.Geometry,
) -> db_models.CatalogRecord:
    """Catalog record for a chart about to be committed."""
    return db_models.CatalogRecord(
        enc_name=metadata.enc_name,
        compilation_scale=metadata.compilation_scale,
        edition=metadata.edition,
        update_number=metadata.update_number,
        coverage_wkb=shapely.to_wkb(coverage),
    )


def register(
    session: database.ChartSessionProtocol,
    metadata: db_models.ChartMetadata,
    coverage: shapely.Geometry,
) -> db_models.CatalogRecord:
    """Insert or replace the chart's catalog record within its session."""
    record = build_record(metadata, coverage)
    session.register(record)
    logger.debug("%s: catalog record edition=%s update=%s", metadata.enc_name,
                 metadata.edition, metadata.update_number)
    return record
