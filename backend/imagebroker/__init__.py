"""Image broker: a spatial index and query service for satellite scenes.

The package keeps a PostGIS index of the scenes published by remote imagery
providers and serves it over HTTP.

- Phase 1 (reconcile) ingests the provider's bulk listing idempotently
- Phase 2 (complete) enriches partial records from per-scene metadata files
- Search and metadata endpoints return GeoJSON with pluggable extensions
- Tile requests redirect to each scene's pre-rendered preview image

The API runs with ``uvicorn imagebroker.main:app``; ingest runs with the
``imagebroker-worker`` command.
"""
