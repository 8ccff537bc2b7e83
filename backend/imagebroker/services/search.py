"""Scene search and metadata lookup rendered through the result layer."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from imagebroker.core import errors
from imagebroker.db import models as db_models
from imagebroker.results import base as results_base
from imagebroker.results import landsat

if TYPE_CHECKING:
    from imagebroker.db import database

logger = logging.getLogger(__name__)


def _require_source(source: str) -> None:
    if source not in db_models.SOURCES:
        raise errors.NotFoundError(source)


def search_scenes(
    store: database.SceneStoreProtocol,
    source: str,
    search_filter: db_models.SearchFilter,
) -> results_base.BrokerMultiResult:
    """Find indexed scenes matching a filter.

    Args:
        store: Scene store to query.
        source: Source type, e.g. "landsat".
        search_filter: Spatial, temporal and cloud cover constraints.

    Returns:
        Results in store order (newest capture first).

    Raises:
        NotFoundError: If the source is unknown.
    """
    _require_source(source)
    records = store.search(source, search_filter)
    logger.debug("Search on %s matched %d scenes", source, len(records))
    return results_base.BrokerMultiResult(
        landsat.result_from_scene(record) for record in records
    )


def get_scene_metadata(
    store: database.SceneStoreProtocol,
    source: str,
    scene_id: str,
) -> results_base.BrokerResult:
    """Look up one indexed scene.

    Raises:
        NotFoundError: If the source is unknown or the scene is not indexed.
    """
    _require_source(source)
    record = store.find_by_scene_id(source, scene_id)
    if record is None:
        raise errors.NotFoundError(source, scene_id)
    return landsat.result_from_scene(record)
