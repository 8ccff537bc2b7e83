"""Tile redirect resolution for indexed scenes.

Tile consumers expect an XYZ URL template, but scenes are only available as
one pre-rendered preview image each. Every tile request for a scene is
therefore answered with the same large thumbnail, whatever the requested
zoom level and tile coordinates.

Example:
    >>> resolve_tile_redirect(store, "landsat", "LC08_X", 5, 3, 2)
    'https://host/path/LC08_X_thumb_large.jpg'
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from imagebroker.core import errors
from imagebroker.db import models as db_models

if TYPE_CHECKING:
    from imagebroker.db import database

THUMBNAIL_SUFFIX = "_thumb_large.jpg"


def resolve_tile_redirect(
    store: database.SceneStoreProtocol,
    source: str,
    scene_id: str,
    z: int | None = None,
    x: int | None = None,
    y: int | None = None,
) -> str:
    """Return the preview image URL a tile request should redirect to.

    Args:
        store: Scene store to look the scene up in.
        source: Source type, e.g. "landsat".
        scene_id: Indexed scene identifier.
        z: Zoom level (ignored).
        x: Tile X coordinate (ignored).
        y: Tile Y coordinate (ignored).

    Returns:
        ``<scene_url>/<scene_id>_thumb_large.jpg``.

    Raises:
        NotFoundError: If the source is unknown or the scene is not indexed.
    """
    if source not in db_models.SOURCES:
        raise errors.NotFoundError(source)
    record = store.find_by_scene_id(source, scene_id)
    if record is None:
        raise errors.NotFoundError(source, scene_id)
    return record.component_url(THUMBNAIL_SUFFIX)
