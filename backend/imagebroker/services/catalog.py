"""Remote Landsat catalog client.

This module retrieves the two kinds of remote documents the ingest pipeline
consumes:

- the bulk scene listing (``scene_list.gz``), a gzip-compressed CSV with one
  row per available scene, and
- the per-scene supplementary metadata file (``<scene_id>_MTL.txt``), a
  ``KEY = VALUE`` text document stored next to the scene's band files.

The listing is downloaded completely into a spooled temporary file before
any row is handed out, so a network failure surfaces as FetchError before
the reconciliation pass has written anything. Rows are then decoded and
parsed one at a time, so a row that is not valid UTF-8 or CSV is rejected
on its own; only a broken compressed stream fails the whole document. Rows
are read lazily and the listing can be iterated again from the start.

Example:
    >>> from imagebroker.core.config import get_settings
    >>> from imagebroker.services.catalog import LandsatCatalogClient
    >>> client = LandsatCatalogClient(get_settings())
    >>> with client.fetch_scene_listing() as listing:
    ...     for entry in listing:
    ...         record = entry.to_record()
"""

from __future__ import annotations

import csv
import dataclasses
import datetime
import gzip
import logging
import math
import re
import tempfile
from typing import IO, TYPE_CHECKING, Protocol

import requests
import tenacity
from shapely import geometry

from imagebroker.core import errors
from imagebroker.db import models as db_models

if TYPE_CHECKING:
    import types
    from collections.abc import Iterator, Mapping

    from imagebroker.core import config

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_SPOOL_MAX_BYTES = 64 * 1024 * 1024
_GZIP_MAGIC = b"\x1f\x8b"
_SCENE_ID_RE = re.compile(r"[A-Za-z0-9_]+")


class CatalogClientProtocol(Protocol):
    """What the ingest passes need from a remote catalog."""

    def fetch_scene_listing(self) -> SceneListing: ...

    def fetch_scene_metadata(
        self, scene_url: str, scene_id: str
    ) -> ParsedMetadata: ...


@dataclasses.dataclass(frozen=True)
class RemoteSceneListing:
    """One row of the bulk scene listing, as raw strings.

    Attributes:
        line: Line number of the row in the listing document.
        product_id: Landsat product identifier (becomes the scene id).
        acquisition_date: Acquisition timestamp, ``YYYY-MM-DD HH:MM:SS[.f]``.
        cloud_cover: Cloud cover in percent.
        min_lat: Southern bound of the scene.
        min_lon: Western bound of the scene.
        max_lat: Northern bound of the scene.
        max_lon: Eastern bound of the scene.
        download_url: URL of the scene's index page.
        defect: Why the row could not be decoded, if it could not.
    """

    line: int
    product_id: str | None
    acquisition_date: str | None
    cloud_cover: str | None
    min_lat: str | None
    min_lon: str | None
    max_lat: str | None
    max_lon: str | None
    download_url: str | None
    defect: str | None = None

    @classmethod
    def from_row(
        cls, line: int, row: Mapping[str, object]
    ) -> RemoteSceneListing:
        def field(name: str) -> str | None:
            value = row.get(name)
            return value.strip() if isinstance(value, str) else None

        return cls(
            line=line,
            product_id=field("productId"),
            acquisition_date=field("acquisitionDate"),
            cloud_cover=field("cloudCover"),
            min_lat=field("min_lat"),
            min_lon=field("min_lon"),
            max_lat=field("max_lat"),
            max_lon=field("max_lon"),
            download_url=field("download_url"),
        )

    @classmethod
    def unreadable(cls, line: int, reason: str) -> RemoteSceneListing:
        """A row that could not be decoded; to_record() always rejects it."""
        return cls(
            line, None, None, None, None, None, None, None, None, defect=reason
        )

    @property
    def label(self) -> str:
        """Scene id if present, otherwise the line number, for logging."""
        return self.product_id or f"line {self.line}"

    def to_record(self) -> db_models.SceneRecord:
        """Build a partial SceneRecord from this row.

        Raises:
            ParseError: If a field is missing or malformed.
            GeometryError: If the bounds do not describe a valid footprint.
        """
        if self.defect is not None:
            raise errors.ParseError(
                f"Unreadable row: {self.defect}", scene_id=self.label, line=self.line
            )
        scene_id = self._require("productId", self.product_id)
        if not _SCENE_ID_RE.fullmatch(scene_id):
            raise errors.ParseError(
                "Invalid product id", scene_id=scene_id, line=self.line
            )
        capture_date = self._parse_date()
        cloud_pct = self._parse_float("cloudCover", self.cloud_cover)
        if not 0.0 <= cloud_pct <= 100.0:
            raise errors.ParseError(
                f"Cloud cover {cloud_pct} outside [0, 100]",
                scene_id=scene_id,
                line=self.line,
            )
        return db_models.SceneRecord(
            scene_id=scene_id,
            capture_date=capture_date,
            cloud_cover=cloud_pct / 100.0,
            footprint=self._footprint(scene_id),
            scene_url=self._base_url(),
        )

    def _require(self, name: str, value: str | None) -> str:
        if not value:
            raise errors.ParseError(
                f"Missing {name}", scene_id=self.label, line=self.line
            )
        return value

    def _parse_float(self, name: str, value: str | None) -> float:
        text = self._require(name, value)
        try:
            number = float(text)
        except ValueError as exc:
            raise errors.ParseError(
                f"{name} is not a number: {text!r}",
                scene_id=self.label,
                line=self.line,
            ) from exc
        if not math.isfinite(number):
            raise errors.ParseError(
                f"{name} is not finite", scene_id=self.label, line=self.line
            )
        return number

    def _parse_date(self) -> datetime.datetime:
        text = self._require("acquisitionDate", self.acquisition_date)
        try:
            value = datetime.datetime.fromisoformat(text)
        except ValueError as exc:
            raise errors.ParseError(
                f"Bad acquisitionDate {text!r}",
                scene_id=self.label,
                line=self.line,
            ) from exc
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)

    def _base_url(self) -> str:
        url = self._require("download_url", self.download_url)
        if not url.startswith(("http://", "https://")):
            raise errors.ParseError(
                f"Bad download_url {url!r}", scene_id=self.label, line=self.line
            )
        if url.endswith("index.html"):
            url = url[: -len("index.html")]
        return url.rstrip("/")

    def _footprint(self, scene_id: str) -> geometry.Polygon:
        min_lat = self._parse_float("min_lat", self.min_lat)
        min_lon = self._parse_float("min_lon", self.min_lon)
        max_lat = self._parse_float("max_lat", self.max_lat)
        max_lon = self._parse_float("max_lon", self.max_lon)
        if min_lon >= max_lon or min_lat >= max_lat:
            raise errors.GeometryError(
                "Degenerate or antimeridian-crossing bounds",
                scene_id=scene_id,
                line=self.line,
            )
        return geometry.box(min_lon, min_lat, max_lon, max_lat)


def _split_header(raw_line: bytes) -> list[str]:
    try:
        return next(csv.reader([raw_line.decode("utf-8-sig")]), [])
    except (UnicodeDecodeError, csv.Error) as exc:
        raise errors.ParseError(
            "Scene listing header is unreadable", line=1
        ) from exc


def _parse_line(
    header: list[str], line: int, raw_line: bytes
) -> RemoteSceneListing:
    """Decode one listing row; an undecodable row is kept and marked defective."""
    try:
        values = next(csv.reader([raw_line.decode("utf-8")]))
    except (UnicodeDecodeError, csv.Error) as exc:
        return RemoteSceneListing.unreadable(line, str(exc))
    return RemoteSceneListing.from_row(
        line, dict(zip(header, values, strict=False))
    )


class SceneListing:
    """Restartable lazy sequence of RemoteSceneListing rows.

    Wraps a fully downloaded listing document. Every iteration starts
    from the first row again. Use it as a context manager, or call
    close(), to release the underlying temporary file.
    """

    def __init__(self, document: IO[bytes]) -> None:
        self._document = document

    def __iter__(self) -> Iterator[RemoteSceneListing]:
        self._document.seek(0)
        magic = self._document.read(len(_GZIP_MAGIC))
        self._document.seek(0)
        raw: IO[bytes] = self._document
        if magic == _GZIP_MAGIC:
            raw = gzip.GzipFile(fileobj=self._document, mode="rb")
        try:
            lines = iter(raw)
            header = _split_header(next(lines, b""))
            for line, raw_line in enumerate(lines, start=2):
                if raw_line.strip():
                    yield _parse_line(header, line, raw_line)
        except (OSError, EOFError) as exc:
            raise errors.ParseError("Scene listing document is corrupt") from exc

    def close(self) -> None:
        self._document.close()

    def __enter__(self) -> SceneListing:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        self.close()


@dataclasses.dataclass(frozen=True)
class ParsedMetadata:
    """A scene's supplementary metadata file as a flat key/value map.

    Attributes:
        scene_id: Scene the file belongs to.
        fields: Every ``KEY = VALUE`` pair, group nesting removed and
            surrounding quotes stripped.
    """

    scene_id: str
    fields: Mapping[str, str]

    @classmethod
    def parse(cls, text: str, scene_id: str) -> ParsedMetadata:
        """Parse an MTL document.

        Raises:
            ParseError: If a line is not ``KEY = VALUE`` or the file is empty.
        """
        fields: dict[str, str] = {}
        for number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line == "END":
                continue
            key, sep, value = line.partition("=")
            if not sep:
                raise errors.ParseError(
                    f"Malformed metadata line {number}", scene_id=scene_id
                )
            key = key.strip()
            if key in ("GROUP", "END_GROUP"):
                continue
            fields[key] = value.strip().strip('"')
        if not fields:
            raise errors.ParseError("Empty metadata file", scene_id=scene_id)
        return cls(scene_id=scene_id, fields=fields)

    def number(self, key: str) -> float:
        """Read a finite numeric field.

        Raises:
            ParseError: If the key is missing or not a finite number.
        """
        text = self.fields.get(key)
        if text is None:
            raise errors.ParseError(f"Missing {key}", scene_id=self.scene_id)
        try:
            value = float(text)
        except ValueError as exc:
            raise errors.ParseError(
                f"{key} is not a number: {text!r}", scene_id=self.scene_id
            ) from exc
        if not math.isfinite(value):
            raise errors.ParseError(f"{key} is not finite", scene_id=self.scene_id)
        return value

    def derived_fields(self) -> db_models.DerivedFields:
        """Compute the fields a complete record carries.

        The off-nadir angle is the magnitude of the spacecraft roll angle.
        """
        return db_models.DerivedFields(
            off_nadir_angle=abs(self.number("ROLL_ANGLE")),
            sun_azimuth=self.number("SUN_AZIMUTH"),
            sun_elevation=self.number("SUN_ELEVATION"),
        )


class LandsatCatalogClient(CatalogClientProtocol):
    """Client for the public Landsat bucket's listing and metadata files."""

    def __init__(
        self,
        settings: config.Settings,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    def _retrying(self) -> tenacity.Retrying:
        return tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.settings.fetch_retry_attempts),
            wait=tenacity.wait_exponential(multiplier=1, min=2, max=30),
            retry=tenacity.retry_if_exception_type(requests.RequestException),
            reraise=True,
        )

    def _get(self, url: str, *, stream: bool = False) -> requests.Response:
        """Make a GET request with the configured timeout."""
        response = self.session.get(
            url, timeout=self.settings.fetch_timeout_seconds, stream=stream
        )
        response.raise_for_status()
        return response

    def fetch_scene_listing(self) -> SceneListing:
        """Download the bulk listing and return a lazy view over its rows.

        Returns:
            SceneListing over the downloaded document.

        Raises:
            FetchError: If the listing cannot be downloaded, including
                timeouts, after the configured number of attempts.
        """
        url = str(self.settings.landsat_listing_url)
        document = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES)
        try:
            for attempt in self._retrying():
                with attempt:
                    document.seek(0)
                    document.truncate()
                    with self._get(url, stream=True) as response:
                        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                            document.write(chunk)
        except requests.RequestException as exc:
            document.close()
            raise errors.FetchError("Could not fetch scene listing", url=url) from exc
        logger.info("Fetched scene listing from %s (%d bytes)", url, document.tell())
        return SceneListing(document)  # type: ignore[arg-type]

    def fetch_scene_metadata(self, scene_url: str, scene_id: str) -> ParsedMetadata:
        """Download and parse one scene's MTL file.

        Args:
            scene_url: Base URL of the scene's files.
            scene_id: Scene identifier, used to name the file.

        Returns:
            ParsedMetadata for the scene.

        Raises:
            FetchError: If the file cannot be downloaded.
            ParseError: If the file is malformed.
        """
        url = f"{scene_url.rstrip('/')}/{scene_id}_MTL.txt"
        try:
            for attempt in self._retrying():
                with attempt:
                    text = self._get(url).text
        except requests.RequestException as exc:
            raise errors.FetchError(
                "Could not fetch scene metadata", url=url, scene_id=scene_id
            ) from exc
        return ParsedMetadata.parse(text, scene_id=scene_id)
