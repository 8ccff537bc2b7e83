"""Data models for indexed satellite scenes.

This module defines the core data structures used throughout the
application to represent indexed scenes. A SceneRecord is created partial
by the reconciliation pass with only the cheap listing fields populated,
and later completed by the metadata completion pass, which fills the
derived angle fields from the scene's supplementary metadata file.

Footprints are shapely polygons in EPSG:4326 and are validated when the
record is constructed, so a record with unusable geometry never exists.

Example:
    Creating a partial record and completing it:
        >>> import datetime
        >>> from shapely import geometry
        >>> from imagebroker.db.models import DerivedFields, SceneRecord
        >>> record = SceneRecord(
        ...     scene_id="LC08_L1TP_139045_20170304_20170316_01_T1",
        ...     capture_date=datetime.datetime(2017, 3, 4, tzinfo=datetime.UTC),
        ...     cloud_cover=0.12,
        ...     footprint=geometry.box(88.1, 21.1, 90.3, 23.2),
        ...     scene_url="https://landsat-pds.s3.amazonaws.com/c1/L8/139/045/LC08_X",
        ... )
        >>> record.is_complete
        False
        >>> done = record.completed(DerivedFields(0.001, 128.5, 52.1))
        >>> done.is_complete
        True
"""

from __future__ import annotations

import dataclasses
import datetime
import enum

from shapely import geometry

from imagebroker.core import errors

BBox = tuple[float, float, float, float]

LANDSAT = "landsat"
SOURCES = frozenset({LANDSAT})


def utcnow() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC)


class CompletenessState(enum.StrEnum):
    """Whether a record's derived (expensive to fetch) fields are populated."""

    PARTIAL = "partial"
    COMPLETE = "complete"


@dataclasses.dataclass(frozen=True)
class DerivedFields:
    """Fields computed from a scene's supplementary metadata file.

    Attributes:
        off_nadir_angle: Absolute sensor roll angle in degrees.
        sun_azimuth: Sun azimuth at scene centre in degrees.
        sun_elevation: Sun elevation at scene centre in degrees.
    """

    off_nadir_angle: float
    sun_azimuth: float
    sun_elevation: float


@dataclasses.dataclass
class SceneRecord:
    """One indexed satellite scene.

    Attributes:
        scene_id: Globally unique product identifier from the source.
        capture_date: Acquisition time (aware, UTC).
        cloud_cover: Cloud cover as a fraction between 0.0 and 1.0.
        footprint: Scene ground coverage polygon in EPSG:4326.
        scene_url: Base URL of the scene's component files, without a
            trailing slash.
        source: Source type the scene was indexed from.
        off_nadir_angle: Derived; None until the record is complete.
        sun_azimuth: Derived; None until the record is complete.
        sun_elevation: Derived; None until the record is complete.
        state: Completeness state.
        failed_attempts: Completion failures seen so far (informational).
        created_at: When the record was first indexed.
        updated_at: When the record was last written.

    Raises:
        GeometryError: If the footprint is not a valid, non-empty polygon.
        ValueError: If cloud cover is out of range or a complete record is
            missing derived fields.
    """

    scene_id: str
    capture_date: datetime.datetime
    cloud_cover: float
    footprint: geometry.Polygon
    scene_url: str
    source: str = LANDSAT
    off_nadir_angle: float | None = None
    sun_azimuth: float | None = None
    sun_elevation: float | None = None
    state: CompletenessState = CompletenessState.PARTIAL
    failed_attempts: int = 0
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=utcnow)

    def __post_init__(self) -> None:
        _validate_footprint(self.scene_id, self.footprint)
        if not 0.0 <= self.cloud_cover <= 1.0:
            raise ValueError(
                f"cloud_cover {self.cloud_cover} outside [0, 1] "
                f"for {self.scene_id}"
            )
        if self.capture_date.tzinfo is None:
            self.capture_date = self.capture_date.replace(tzinfo=datetime.UTC)
        self.scene_url = self.scene_url.rstrip("/")
        self.state = CompletenessState(self.state)
        if self.state is CompletenessState.COMPLETE and self.derived is None:
            raise ValueError(
                f"complete record {self.scene_id} is missing derived fields"
            )

    @property
    def is_complete(self) -> bool:
        return self.state is CompletenessState.COMPLETE

    @property
    def derived(self) -> DerivedFields | None:
        """Derived fields, or None while any of them is still missing."""
        if (
            self.off_nadir_angle is None
            or self.sun_azimuth is None
            or self.sun_elevation is None
        ):
            return None
        return DerivedFields(
            off_nadir_angle=self.off_nadir_angle,
            sun_azimuth=self.sun_azimuth,
            sun_elevation=self.sun_elevation,
        )

    def completed(self, derived: DerivedFields) -> SceneRecord:
        """Return a complete copy of this record carrying derived fields."""
        return dataclasses.replace(
            self,
            off_nadir_angle=derived.off_nadir_angle,
            sun_azimuth=derived.sun_azimuth,
            sun_elevation=derived.sun_elevation,
            state=CompletenessState.COMPLETE,
            updated_at=utcnow(),
        )

    def component_url(self, suffix: str) -> str:
        """URL of a component file named ``<scene_id><suffix>``."""
        return f"{self.scene_url}/{self.scene_id}{suffix}"


@dataclasses.dataclass(frozen=True)
class SearchFilter:
    """Spatial, temporal and cloud cover constraints for a scene search.

    Attributes:
        bbox: (minx, miny, maxx, maxy) in EPSG:4326, or None for anywhere.
        acquired_after: Inclusive lower bound on capture date.
        acquired_before: Inclusive upper bound on capture date.
        max_cloud_cover: Inclusive upper bound on the cloud cover fraction.
        limit: Maximum number of records to return.
    """

    bbox: BBox | None = None
    acquired_after: datetime.datetime | None = None
    acquired_before: datetime.datetime | None = None
    max_cloud_cover: float | None = None
    limit: int = 100

    def matches(self, record: SceneRecord) -> bool:
        """Evaluate the filter against a record in Python."""
        if self.bbox is not None and not record.footprint.intersects(
            geometry.box(*self.bbox)
        ):
            return False
        if self.acquired_after and record.capture_date < self.acquired_after:
            return False
        if self.acquired_before and record.capture_date > self.acquired_before:
            return False
        if (
            self.max_cloud_cover is not None
            and record.cloud_cover > self.max_cloud_cover
        ):
            return False
        return True


def _validate_footprint(scene_id: str, footprint: object) -> None:
    if not isinstance(footprint, geometry.Polygon):
        raise errors.GeometryError(
            "Footprint is not a polygon", scene_id=scene_id
        )
    if footprint.is_empty or footprint.area <= 0:
        raise errors.GeometryError("Footprint is empty", scene_id=scene_id)
    if not footprint.is_valid:
        raise errors.GeometryError(
            "Footprint is not a valid polygon", scene_id=scene_id
        )
    minx, miny, maxx, maxy = footprint.bounds
    if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
        raise errors.GeometryError(
            "Footprint falls outside EPSG:4326 bounds", scene_id=scene_id
        )
