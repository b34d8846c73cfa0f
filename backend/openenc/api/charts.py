"""Chart catalog query API endpoints.

This module provides read-only REST API endpoints over the chart catalog:
listing imported charts, describing one chart and returning its coverage
bounding box. Bounding boxes are returned in EPSG:4326 (WGS84) degrees,
the reference system coverage is stored in.

Example:
    List imported charts:
        >>> response = client.get("/api/charts")
        >>> charts = response.json()
        >>> # Returns: [{"enc_name": "US5WA22M", "compilation_scale": 50000,
        >>> #            "edition": 3, "update_number": 1, ...}, ...]

    Get the coverage bounding box of one chart:
        >>> response = client.get("/api/charts/US5WA22M/bbox")
        >>> # Returns: {"bbox": [-122.5, 47.5, -122.2, 47.7]}
"""

import dataclasses
from typing import Any

import fastapi

from openenc.db import database
from openenc.db import models as db_models
from openenc.services import zoom

router = fastapi.APIRouter(prefix="/api/charts", tags=["charts"])


def _get_store(request: fastapi.Request) -> database.ChartStoreProtocol:
    """Resolve the chart store opened by the application lifespan.

    Args:
        request: Incoming request (injected by FastAPI).

    Returns:
        ChartStoreProtocol implementation
            (PostgresChartStore in production).
    """
    return request.app.state.chart_store


def record_to_dict(record: db_models.CatalogRecord) -> dict[str, Any]:
    """Convert a catalog record to a JSON-ready dictionary."""
    result = dataclasses.asdict(record)
    result.pop("coverage_wkb")
    result["imported_at"] = record.imported_at.isoformat()
    result["min_zoom"] = zoom.min_zoom(record.compilation_scale)
    result["bbox"] = list(record.bbox)
    return result


def _get_record(
    store: database.ChartStoreProtocol,
    enc_name: str,
) -> db_models.CatalogRecord:
    record = store.get(enc_name)
    if record is None:
        raise fastapi.HTTPException(status_code=404, detail="Chart not found")
    return record


@router.get("")
async def list_charts(
    store: database.ChartStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> list[dict[str, Any]]:
    """List all imported charts.

    Charts are ordered by compilation scale, coarsest first, the order in
    which tiles stack them.

    Args:
        store: Chart store (injected via FastAPI Depends).

    Returns:
        List of catalog dictionaries with enc_name, compilation_scale,
        edition, update_number, imported_at, min_zoom and bbox.
    """
    return [record_to_dict(record) for record in store.all()]


@router.get("/{enc_name}")
async def get_chart(
    enc_name: str,
    store: database.ChartStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> dict[str, Any]:
    """Get the catalog entry of one chart.

    Raises:
        HTTPException: If the chart is not in the catalog (404 status code).
    """
    return record_to_dict(_get_record(store, enc_name))


@router.get("/{enc_name}/bbox")
async def get_chart_bbox(
    enc_name: str,
    store: database.ChartStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> dict[str, db_models.BBox]:
    """Get the bounding box of a chart's coverage.

    The bbox can be used to zoom the map viewport to the chart's extent.

    Args:
        enc_name: Chart cell name.
        store: Chart store (injected via FastAPI Depends).

    Returns:
        Dictionary containing the bounding box as [minx, miny, maxx, maxy]
        in WGS84 degrees.

    Raises:
        HTTPException: If the chart is not in the catalog (404 status code).

    Example:
        Use bbox to set map viewport (MapLibre GL JS):
            >>> const bbox = response.bbox;  // [minx, miny, maxx, maxy]
            >>> map.fitBounds([[bbox[0], bbox[1]], [bbox[2], bbox[3]]]);
    """
    return {"bbox": _get_record(store, enc_name).bbox}
