"""API router subpackage for the image broker.

Submodules:
    - scenes: Scene search and metadata-by-id endpoints (GeoJSON).
    - tiles: XYZ tile endpoint redirecting to scene preview images.

Each module exposes its own APIRouter, composed by ``imagebroker.main``.
"""
