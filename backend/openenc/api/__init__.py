"""API router subpackage for the chart catalog service.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - charts: Endpoints listing imported charts and their coverage.
    - layers: Endpoints describing registered feature layers.

The API is read-only; charts are imported with the ``openenc`` command.
"""
