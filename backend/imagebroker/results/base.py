"""Composable search/metadata results and their GeoJSON rendering.

A BrokerResult holds the facts every source can provide. Source-specific
fact sets are attached as extensions; each extension writes its own fixed
property keys, and extensions from different sources never share a key.
Rendering folds every extension over the base properties and sorts the
keys, so the output does not depend on the order extensions were applied.
"""

from __future__ import annotations

import dataclasses
import datetime
import json
from typing import TYPE_CHECKING, Any, Protocol, TypedDict

from shapely import geometry as shapely_geometry

from imagebroker.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from shapely.geometry.base import BaseGeometry


class Feature(TypedDict):
    type: str
    id: str
    geometry: dict[str, Any]
    bbox: list[float]
    properties: dict[str, Any]


class FeatureCollection(TypedDict):
    type: str
    features: list[Feature]


class ResultExtension(Protocol):
    """An optional fact set that writes its own keys into a property map."""

    def apply(self, properties: dict[str, Any]) -> None: ...


def format_timestamp(value: datetime.datetime) -> str:
    """Render an aware datetime as an ISO 8601 UTC string ending in Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC).isoformat().replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclasses.dataclass
class BrokerResult:
    """One searchable unit: base facts plus attached extensions.

    Attributes:
        id: Stable identifier of the scene.
        geometry: Footprint in EPSG:4326.
        cloud_cover: Cloud cover fraction between 0.0 and 1.0.
        resolution: Ground sample distance in metres.
        acquired_date: Acquisition time.
        sensor_name: Sensor or platform name.
        file_format: Format of the downloadable image files.
        extensions: Extensions in the order they were applied.

    Raises:
        GeometryError: If the geometry is empty.
    """

    id: str
    geometry: BaseGeometry
    cloud_cover: float
    resolution: float
    acquired_date: datetime.datetime
    sensor_name: str
    file_format: str
    extensions: list[ResultExtension] = dataclasses.field(default_factory=list)

    def __post_init__(self) -> None:
        if self.geometry.is_empty:
            raise errors.GeometryError("Result geometry is empty", scene_id=self.id)

    def apply_extension(self, extension: ResultExtension | None) -> BrokerResult:
        """Attach an extension; None is ignored.

        Returns:
            This result, so calls can be chained.
        """
        if extension is not None:
            self.extensions.append(extension)
        return self

    def properties(self) -> dict[str, Any]:
        """Base properties merged with every extension's, sorted by key."""
        properties: dict[str, Any] = {
            "acquiredDate": format_timestamp(self.acquired_date),
            "cloudCover": self.cloud_cover,
            "fileFormat": self.file_format,
            "resolution": self.resolution,
            "sensorName": self.sensor_name,
        }
        for extension in self.extensions:
            extension.apply(properties)
        return dict(sorted(properties.items()))

    def to_feature(self) -> Feature:
        """Render as a GeoJSON Feature.

        The bounding box is always computed from the geometry.
        """
        return {
            "type": "Feature",
            "id": self.id,
            "geometry": _plain(shapely_geometry.mapping(self.geometry)),
            "bbox": [float(v) for v in self.geometry.bounds],
            "properties": self.properties(),
        }

    def to_json(self) -> str:
        return canonical_json(self.to_feature())


class BrokerMultiResult:
    """An ordered collection of results.

    Insertion order is the only order; nothing is sorted.
    """

    def __init__(self, results: Iterable[BrokerResult] = ()) -> None:
        self._results = list(results)

    def append(self, result: BrokerResult) -> None:
        self._results.append(result)

    def __iter__(self) -> Iterator[BrokerResult]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def to_feature_collection(self) -> FeatureCollection:
        return {
            "type": "FeatureCollection",
            "features": [result.to_feature() for result in self._results],
        }

    def to_json(self) -> str:
        return canonical_json(self.to_feature_collection())


def _plain(value: Any) -> Any:
    """Turn shapely's nested coordinate tuples into lists."""
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, tuple | list):
        return [_plain(item) for item in value]
    return value
