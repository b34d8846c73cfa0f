"""Layer registry query API endpoints.

Lists the feature layers known to the store together with their typed
attribute columns and the name of the tile function serving each of them.

Example:
    >>> response = client.get("/api/layers")
    >>> # Returns: [{"layer_id": "DEPARE", "table": "depare",
    >>> #            "function": "depare_mvt", "columns": [...]}, ...]
"""

from typing import Any

import fastapi

from openenc.api import charts
from openenc.db import database

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


@router.get("")
async def list_layers(
    store: database.ChartStoreProtocol = fastapi.Depends(charts._get_store),  # noqa: B008
) -> list[dict[str, Any]]:
    """List registered layers ordered by table name.

    Args:
        store: Chart store (injected via FastAPI Depends).

    Returns:
        One dictionary per layer with its identifier, table, tile function
        and typed columns.
    """
    return [
        {
            "layer_id": shape.layer_id,
            "table": shape.table,
            "function": f"{shape.table}_mvt",
            "columns": [col.to_dict() for col in shape.columns],
        }
        for shape in store.layer_shapes()
    ]
