"""Tests for broker results, extensions and GeoJSON rendering.

These tests enforce that:
    - Rendering is deterministic and independent of extension order,
    - Extension keys appear exactly as documented, and None is a no-op,
    - The bounding box is always computed from the geometry,
    - Multi-results keep insertion order,
    - Landsat records map to results with bands, activation and, once
      complete, scene angles.
"""

from __future__ import annotations

import datetime
import json
from typing import TYPE_CHECKING

import pytest
from shapely import geometry

from imagebroker.core import errors
from imagebroker.db import models as db_models
from imagebroker.results import base, extensions, landsat

if TYPE_CHECKING:
    from conftest import SceneFactory


def _result(result_id: str = "LC08_X") -> base.BrokerResult:
    return base.BrokerResult(
        id=result_id,
        geometry=geometry.box(10.0, 45.0, 11.0, 46.0),
        cloud_cover=0.1,
        resolution=30.0,
        acquired_date=datetime.datetime(2020, 3, 4, 10, 15, tzinfo=datetime.UTC),
        sensor_name="Landsat8",
        file_format="geotiff",
    )


def test_base_feature() -> None:
    """Test the Feature layout, timestamp format and computed bbox."""
    feature = _result().to_feature()
    assert feature["type"] == "Feature"
    assert feature["id"] == "LC08_X"
    assert feature["geometry"]["type"] == "Polygon"
    assert feature["bbox"] == [10.0, 45.0, 11.0, 46.0]
    assert feature["properties"] == {
        "acquiredDate": "2020-03-04T10:15:00Z",
        "cloudCover": 0.1,
        "fileFormat": "geotiff",
        "resolution": 30.0,
        "sensorName": "Landsat8",
    }


def test_rendering_is_deterministic() -> None:
    """Test the same result renders to the same JSON every time."""
    result = _result().apply_extension(extensions.ActivationExtension("active"))
    assert result.to_json() == result.to_json()
    assert json.loads(result.to_json()) == result.to_feature()


def test_extension_order_does_not_matter() -> None:
    """Test applying extensions in either order yields identical output."""
    tides = extensions.TidesExtension(current=1.2, maximum_24h=2.5, minimum_24h=-0.3)
    activation = extensions.ActivationExtension(
        "active", location="https://host/path/LC08_X"
    )
    first = _result().apply_extension(tides).apply_extension(activation)
    second = _result().apply_extension(activation).apply_extension(tides)
    assert first.to_json() == second.to_json()


def test_tides_extension_keys() -> None:
    """Test the tide extension writes exactly its three keys."""
    result = _result().apply_extension(
        extensions.TidesExtension(current=1.2, maximum_24h=2.5, minimum_24h=-0.3)
    )
    properties = result.properties()
    assert properties["currentTide"] == 1.2
    assert properties["maximumTide24Hours"] == 2.5
    assert properties["minimumTide24Hours"] == -0.3
    assert len(properties) == 8


def test_none_extension_is_noop() -> None:
    """Test applying None leaves the output unchanged."""
    result = _result()
    before = result.to_json()
    assert result.apply_extension(None) is result
    assert result.to_json() == before


def test_activation_expiry_is_formatted() -> None:
    """Test expiry timestamps use the same format as acquisition dates."""
    expires = datetime.datetime(2020, 3, 5, tzinfo=datetime.UTC)
    properties = (
        _result()
        .apply_extension(extensions.ActivationExtension("pending", expires_at=expires))
        .properties()
    )
    assert properties["status"] == "pending"
    assert properties["expiresAt"] == "2020-03-05T00:00:00Z"
    assert properties["location"] is None


def test_empty_geometry_is_rejected() -> None:
    """Test a result cannot be built without a geometry."""
    with pytest.raises(errors.GeometryError):
        base.BrokerResult(
            id="X",
            geometry=geometry.Polygon(),
            cloud_cover=0.0,
            resolution=30.0,
            acquired_date=datetime.datetime(2020, 1, 1, tzinfo=datetime.UTC),
            sensor_name="Landsat8",
            file_format="geotiff",
        )


def test_multi_result_keeps_order() -> None:
    """Test the collection renders results in insertion order."""
    collection = base.BrokerMultiResult([_result("B"), _result("A")])
    collection.append(_result("C"))
    rendered = collection.to_feature_collection()
    assert rendered["type"] == "FeatureCollection"
    assert [feature["id"] for feature in rendered["features"]] == ["B", "A", "C"]
    assert len(collection) == 3


@pytest.mark.parametrize(
    ("scene_id", "expected"),
    [
        ("LC08_L1TP_139045_20170304_20170316_01_T1", "Landsat8"),
        ("LC09_L1TP_139045_20220304_20220316_02_T1", "Landsat9"),
        ("LE07_L1TP_139045_20010304_20010316_01_T1", "Landsat7"),
        ("UNKNOWN", "Landsat"),
    ],
)
def test_sensor_name(scene_id: str, expected: str) -> None:
    """Test the platform name is read from the product id."""
    assert landsat.sensor_name(scene_id) == expected


def test_result_from_partial_scene(make_scene: SceneFactory) -> None:
    """Test a partial record gets bands and activation but no angles."""
    properties = landsat.result_from_scene(make_scene("LC08_X")).properties()
    assert properties["status"] == "active"
    assert properties["location"] == "https://host/path/LC08_X"
    assert properties["bands"]["red"] == "https://host/path/LC08_X/LC08_X_B4.TIF"
    assert len(properties["bands"]) == len(landsat.BANDS)
    assert "sunAzimuth" not in properties


def test_result_from_complete_scene(make_scene: SceneFactory) -> None:
    """Test a complete record also carries its scene angles."""
    record = make_scene("LC08_X").completed(
        db_models.DerivedFields(
            off_nadir_angle=0.2, sun_azimuth=130.0, sun_elevation=40.0
        )
    )
    properties = landsat.result_from_scene(record).properties()
    assert properties["offNadirAngle"] == 0.2
    assert properties["sunAzimuth"] == 130.0
    assert properties["sunElevation"] == 40.0
