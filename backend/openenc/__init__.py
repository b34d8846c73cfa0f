"""S-57 nautical chart ingestion into PostGIS.

This package imports electronic navigational charts into a PostGIS store
laid out for vector tile serving:

- a catalog recording which chart edition and update is imported,
- one table per feature layer with a fixed set of typed columns,
- geometries precomputed in EPSG:3857 and zoom bounds precomputed from the
  chart's compilation scale and each feature's SCAMIN,
- generated SQL functions rendering Mapbox Vector Tiles.

Charts are imported concurrently, each inside its own transaction, by the
``openenc`` command; a small read-only API exposes the catalog.
"""
