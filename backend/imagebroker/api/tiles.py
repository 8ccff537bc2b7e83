"""XYZ tile endpoint for indexed scenes.

Map clients address scenes through a standard XYZ URL template. Scenes have
no tile pyramid, so every tile request is redirected to the scene's large
preview image regardless of the requested coordinates.

Example:
    Request a tile:
        >>> response = client.get(
        ...     "/tiles/landsat/LC08_X/5/3/2.jpg", follow_redirects=False
        ... )
        >>> response.headers["location"]
        'https://host/path/LC08_X_thumb_large.jpg'

    Use in MapLibre GL JS:
        >>> map.addSource('scene', {
        ...     type: 'raster',
        ...     tiles: ['http://api/tiles/landsat/LC08_X/{z}/{x}/{y}.jpg'],
        ... });
"""

import fastapi
from fastapi import responses

from imagebroker.core import errors
from imagebroker.db import database
from imagebroker.services import tiles

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])


def _get_store(request: fastapi.Request) -> database.SceneStoreProtocol:
    """Resolve the scene store created at application start-up."""
    return request.app.state.scene_store


@router.get("/{source}/{scene_id}/{z}/{x}/{y}.jpg")
def scene_tile(
    source: str,
    scene_id: str,
    z: int,
    x: int,
    y: int,
    store: database.SceneStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> responses.RedirectResponse:
    """Redirect a tile request to the scene's preview image.

    Args:
        source: Source type, e.g. "landsat".
        scene_id: Indexed scene identifier.
        z: Zoom level (ignored).
        x: Tile X coordinate (ignored).
        y: Tile Y coordinate (ignored).
        store: Scene store (injected).

    Returns:
        Temporary redirect to ``<scene_url>/<scene_id>_thumb_large.jpg``.

    Raises:
        HTTPException: 404 if the source or scene is unknown.
    """
    try:
        url = tiles.resolve_tile_redirect(store, source, scene_id, z, x, y)
    except errors.NotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=exc.message) from exc
    return responses.RedirectResponse(url)
