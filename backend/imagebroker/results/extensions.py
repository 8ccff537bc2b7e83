"""Source-specific fact sets attachable to a BrokerResult.

Each extension owns a fixed set of property keys:

- ActivationExtension: ``status``, ``expiresAt``, ``location``
- TidesExtension: ``currentTide``, ``maximumTide24Hours``,
  ``minimumTide24Hours``
- BandsExtension: ``bands``
- SceneAnglesExtension: ``offNadirAngle``, ``sunAzimuth``, ``sunElevation``

New extensions must pick keys no other extension (or the base result)
writes.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

from imagebroker.results import base

if TYPE_CHECKING:
    import datetime
    from collections.abc import Mapping


@dataclasses.dataclass(frozen=True)
class ActivationExtension:
    """Whether the scene's assets can be downloaded right now, and where."""

    status: str
    expires_at: datetime.datetime | None = None
    location: str | None = None

    def apply(self, properties: dict[str, Any]) -> None:
        properties["status"] = self.status
        properties["expiresAt"] = (
            base.format_timestamp(self.expires_at) if self.expires_at else None
        )
        properties["location"] = self.location


@dataclasses.dataclass(frozen=True)
class TidesExtension:
    """Tide levels at the scene's centroid around acquisition time."""

    current: float
    maximum_24h: float
    minimum_24h: float

    def apply(self, properties: dict[str, Any]) -> None:
        properties["currentTide"] = self.current
        properties["maximumTide24Hours"] = self.maximum_24h
        properties["minimumTide24Hours"] = self.minimum_24h


@dataclasses.dataclass(frozen=True)
class BandsExtension:
    """Mapping of band name to the URL of that band's image file."""

    bands: Mapping[str, str]

    def apply(self, properties: dict[str, Any]) -> None:
        properties["bands"] = dict(sorted(self.bands.items()))


@dataclasses.dataclass(frozen=True)
class SceneAnglesExtension:
    """Viewing and illumination angles, known once a scene is complete."""

    off_nadir_angle: float
    sun_azimuth: float
    sun_elevation: float

    def apply(self, properties: dict[str, Any]) -> None:
        properties["offNadirAngle"] = self.off_nadir_angle
        properties["sunAzimuth"] = self.sun_azimuth
        properties["sunElevation"] = self.sun_elevation
