"""Result model layer: base results, extensions and GeoJSON rendering."""

from imagebroker.results.base import (
    BrokerMultiResult,
    BrokerResult,
    Feature,
    FeatureCollection,
    ResultExtension,
)
from imagebroker.results.extensions import (
    ActivationExtension,
    BandsExtension,
    SceneAnglesExtension,
    TidesExtension,
)

__all__ = [
    "ActivationExtension",
    "BandsExtension",
    "BrokerMultiResult",
    "BrokerResult",
    "Feature",
    "FeatureCollection",
    "ResultExtension",
    "SceneAnglesExtension",
    "TidesExtension",
]
