"""Conversion of stored Landsat scene records into broker results."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from imagebroker.results import base, extensions

if TYPE_CHECKING:
    from imagebroker.db import models as db_models

RESOLUTION_METERS = 30.0
FILE_FORMAT = "geotiff"

# Band name to file suffix for Landsat 8/9 OLI-TIRS collection products.
BANDS = {
    "coastal": "B1",
    "blue": "B2",
    "green": "B3",
    "red": "B4",
    "nir": "B5",
    "swir1": "B6",
    "swir2": "B7",
    "panchromatic": "B8",
    "cirrus": "B9",
    "tirs1": "B10",
    "tirs2": "B11",
}

_MISSION_RE = re.compile(r"L[COTEM]0?(\d)")


def sensor_name(scene_id: str) -> str:
    """Platform name from a Landsat product id, e.g. LC08_... -> Landsat8."""
    match = _MISSION_RE.match(scene_id)
    if match is None:
        return "Landsat"
    return f"Landsat{match.group(1)}"


def result_from_scene(record: db_models.SceneRecord) -> base.BrokerResult:
    """Build the broker result for one stored scene.

    Landsat scenes live in a public bucket, so they are always active and
    every band file can be linked directly. Angle fields are only attached
    once the record is complete.
    """
    result = base.BrokerResult(
        id=record.scene_id,
        geometry=record.footprint,
        cloud_cover=record.cloud_cover,
        resolution=RESOLUTION_METERS,
        acquired_date=record.capture_date,
        sensor_name=sensor_name(record.scene_id),
        file_format=FILE_FORMAT,
    )
    result.apply_extension(
        extensions.ActivationExtension(status="active", location=record.scene_url)
    )
    result.apply_extension(
        extensions.BandsExtension(
            {name: record.component_url(f"_{band}.TIF") for name, band in BANDS.items()}
        )
    )
    derived = record.derived
    if record.is_complete and derived is not None:
        result.apply_extension(
            extensions.SceneAnglesExtension(
                off_nadir_angle=derived.off_nadir_angle,
                sun_azimuth=derived.sun_azimuth,
                sun_elevation=derived.sun_elevation,
            )
        )
    return result
