"""Scene search and metadata API endpoints.

Results are GeoJSON: a FeatureCollection for searches and a single Feature
for metadata lookups. Passing ``tides=true`` decorates every result with
tide data from the configured tide service.

Example:
    Search Landsat scenes over an area in spring 2020:
        >>> response = client.get(
        ...     "/api/landsat/search",
        ...     params={
        ...         "bbox": "10.0,45.0,11.0,46.0",
        ...         "acquiredDate": "2020-03-01",
        ...         "maxAcquiredDate": "2020-06-01",
        ...         "cloudCover": 0.2,
        ...     },
        ... )
        >>> response.json()["type"]
        'FeatureCollection'
"""

import datetime
import logging
from typing import Any

import fastapi

from imagebroker.core import config, errors
from imagebroker.db import database
from imagebroker.db import models as db_models
from imagebroker.results import base as results_base
from imagebroker.services import search, tides

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api", tags=["scenes"])


def _get_store(request: fastapi.Request) -> database.SceneStoreProtocol:
    """Resolve the scene store created at application start-up."""
    return request.app.state.scene_store


def _get_tide_client(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> tides.TideClient:
    return tides.TideClient(settings)


def _parse_bbox(value: str | None) -> db_models.BBox | None:
    """Parse ``minx,miny,maxx,maxy`` into a bbox tuple.

    Raises:
        HTTPException: 400 if the value is not four ordered numbers.
    """
    if value is None:
        return None
    try:
        minx, miny, maxx, maxy = (float(part) for part in value.split(","))
    except ValueError as exc:
        raise fastapi.HTTPException(
            status_code=400, detail="bbox must be minx,miny,maxx,maxy"
        ) from exc
    if minx >= maxx or miny >= maxy:
        raise fastapi.HTTPException(status_code=400, detail="bbox is empty")
    return (minx, miny, maxx, maxy)


def _parse_date(name: str, value: str | None) -> datetime.datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except ValueError as exc:
        raise fastapi.HTTPException(
            status_code=400, detail=f"{name} must be an ISO 8601 date"
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def _attach_tides(
    client: tides.TideClient, results: list[results_base.BrokerResult]
) -> None:
    if not client.enabled:
        raise fastapi.HTTPException(
            status_code=400, detail="Tide data is not available on this server"
        )
    try:
        client.attach_tides(results)
    except (errors.FetchError, errors.ParseError) as exc:
        logger.warning("Tide lookup failed: %s", exc)
        raise fastapi.HTTPException(
            status_code=502, detail="Tide service failed"
        ) from exc


@router.get("/{source}/search")
def search_scenes(
    source: str,
    bbox: str | None = None,
    acquired_date: str | None = fastapi.Query(None, alias="acquiredDate"),
    max_acquired_date: str | None = fastapi.Query(None, alias="maxAcquiredDate"),
    cloud_cover: float | None = fastapi.Query(
        None, alias="cloudCover", ge=0.0, le=1.0
    ),
    limit: int = fastapi.Query(100, ge=1, le=1000),
    with_tides: bool = fastapi.Query(False, alias="tides"),
    store: database.SceneStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
    tide_client: tides.TideClient = fastapi.Depends(_get_tide_client),  # noqa: B008
) -> dict[str, Any]:
    """Search indexed scenes of a source.

    Args:
        source: Source type, e.g. "landsat".
        bbox: ``minx,miny,maxx,maxy`` in EPSG:4326.
        acquired_date: Earliest capture date (inclusive).
        max_acquired_date: Latest capture date (inclusive).
        cloud_cover: Maximum cloud cover fraction.
        limit: Maximum number of results.
        with_tides: Attach tide data to every result.
        store: Scene store (injected).
        tide_client: Tide service client (injected).

    Returns:
        GeoJSON FeatureCollection, newest capture first.

    Raises:
        HTTPException: 400 for malformed parameters or unavailable tides,
            404 for an unknown source, 502 if the tide service fails.
    """
    search_filter = db_models.SearchFilter(
        bbox=_parse_bbox(bbox),
        acquired_after=_parse_date("acquiredDate", acquired_date),
        acquired_before=_parse_date("maxAcquiredDate", max_acquired_date),
        max_cloud_cover=cloud_cover,
        limit=limit,
    )
    try:
        results = search.search_scenes(store, source, search_filter)
    except errors.NotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=exc.message) from exc
    if with_tides:
        _attach_tides(tide_client, list(results))
    return dict(results.to_feature_collection())


@router.get("/{source}/{scene_id}")
def scene_metadata(
    source: str,
    scene_id: str,
    with_tides: bool = fastapi.Query(False, alias="tides"),
    store: database.SceneStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
    tide_client: tides.TideClient = fastapi.Depends(_get_tide_client),  # noqa: B008
) -> dict[str, Any]:
    """Return one indexed scene as a GeoJSON Feature.

    Raises:
        HTTPException: 404 if the source or scene is unknown.
    """
    try:
        result = search.get_scene_metadata(store, source, scene_id)
    except errors.NotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=exc.message) from exc
    if with_tides:
        _attach_tides(tide_client, [result])
    return dict(result.to_feature())
