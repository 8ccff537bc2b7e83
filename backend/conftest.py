"""Pytest configuration to expose the imagebroker package for imports.

Also provides the fixtures shared across the test modules.
"""

import collections
import datetime
import gzip
import io
import pathlib
import sys
import threading
from collections.abc import Callable, Sequence
from typing import Any

import pytest
from shapely import geometry

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from imagebroker.core import config, errors  # noqa: E402
from imagebroker.db import models as db_models  # noqa: E402
from imagebroker.services import catalog  # noqa: E402

SceneFactory = Callable[..., db_models.SceneRecord]


@pytest.fixture
def settings() -> config.Settings:
    """Settings with single-attempt fetches and small batches."""
    return config.Settings(
        fetch_retry_attempts=1,
        fetch_timeout_seconds=1.0,
        reconcile_batch_size=2,
        completion_batch_size=2,
        completion_workers=2,
        tides_url=None,
    )


@pytest.fixture
def make_scene() -> SceneFactory:
    """Factory building partial Landsat scene records."""

    def factory(scene_id: str = "LC08_X", **overrides: Any) -> db_models.SceneRecord:
        values: dict[str, Any] = {
            "scene_id": scene_id,
            "capture_date": datetime.datetime(2020, 3, 4, tzinfo=datetime.UTC),
            "cloud_cover": 0.1,
            "footprint": geometry.box(10.0, 45.0, 11.0, 46.0),
            "scene_url": f"https://host/path/{scene_id}",
        }
        values.update(overrides)
        return db_models.SceneRecord(**values)

    return factory


LISTING_HEADER = (
    "productId,entityId,acquisitionDate,cloudCover,processingLevel,path,row,"
    "min_lat,min_lon,max_lat,max_lon,download_url"
)


def _listing_line(
    scene_id: str,
    acquired: str = "2020-03-04 10:15:30.123",
    cloud: str = "12.5",
    bounds: tuple[str, str, str, str] = ("45.0", "10.0", "46.0", "11.0"),
    url: str | None = None,
) -> str:
    """One bulk listing CSV row; bounds are (min_lat, min_lon, max_lat, max_lon)."""
    if url is None:
        url = f"https://host/c1/L8/139/045/{scene_id}/index.html"
    return ",".join(
        [scene_id, "LC81390452017063LGN00", acquired, cloud, "L1TP", "139", "45"]
        + list(bounds)
        + [url]
    )


def _gzip_listing(lines: Sequence[str | bytes]) -> bytes:
    """Gzip a listing; bytes rows are written as-is, e.g. to inject bad UTF-8."""
    encoded = [
        line.encode("utf-8") if isinstance(line, str) else line
        for line in [LISTING_HEADER, *lines, ""]
    ]
    return gzip.compress(b"\n".join(encoded))


def _mtl_text(
    roll: float = -0.001, azimuth: float = 128.5, elevation: float = 52.1
) -> str:
    return "\n".join(
        [
            'GROUP = L1_METADATA_FILE',
            '  GROUP = IMAGE_ATTRIBUTES',
            '    CLOUD_COVER = 12.50',
            f'    ROLL_ANGLE = {roll}',
            f'    SUN_AZIMUTH = {azimuth}',
            f'    SUN_ELEVATION = {elevation}',
            '    SENSOR_ID = "OLI_TIRS"',
            '  END_GROUP = IMAGE_ATTRIBUTES',
            'END_GROUP = L1_METADATA_FILE',
            'END',
        ]
    )


class FakeCatalogClient:
    """In-memory catalog: a listing document plus MTL text per scene id.

    A metadata entry that is an exception is raised instead of parsed;
    a missing entry raises FetchError. Every metadata fetch is counted.
    """

    def __init__(self) -> None:
        self.listing = _gzip_listing([])
        self.listing_error: Exception | None = None
        self.metadata: dict[str, str | Exception] = {}
        self.calls: collections.Counter[str] = collections.Counter()
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def fetch_scene_listing(self) -> catalog.SceneListing:
        if self.listing_error is not None:
            raise self.listing_error
        return catalog.SceneListing(io.BytesIO(self.listing))

    def fetch_scene_metadata(
        self, scene_url: str, scene_id: str
    ) -> catalog.ParsedMetadata:
        with self._lock:
            self.calls[scene_id] += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        value = self.metadata.get(scene_id)
        if value is None:
            raise errors.FetchError("No metadata", scene_id=scene_id)
        if isinstance(value, Exception):
            raise value
        return catalog.ParsedMetadata.parse(value, scene_id)


@pytest.fixture
def fake_catalog() -> FakeCatalogClient:
    """Empty fake catalog client; tests fill in listing and metadata."""
    return FakeCatalogClient()


@pytest.fixture
def listing_line() -> Callable[..., str]:
    """Builder for one bulk listing CSV row."""
    return _listing_line


@pytest.fixture
def gzip_listing() -> Callable[[list[str]], bytes]:
    """Builder for a gzip-compressed listing document from CSV rows."""
    return _gzip_listing


@pytest.fixture
def mtl_text() -> Callable[..., str]:
    """Builder for a scene MTL metadata document."""
    return _mtl_text
