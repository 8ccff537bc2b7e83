"""Tide prediction client used to decorate results with tidal data.

The tide service takes a batch of locations with timestamps and answers,
in the same order, with the current tide and the 24 hour extremes for each.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import requests
import tenacity

from imagebroker.core import errors
from imagebroker.results import extensions

if TYPE_CHECKING:
    from collections.abc import Iterable

    from imagebroker.core import config
    from imagebroker.results import base as results_base

logger = logging.getLogger(__name__)

DTG_FORMAT = "%Y-%m-%d-%H-%M"


class TideClient:
    """Client for the tide prediction service configured by ``tides_url``."""

    def __init__(
        self,
        settings: config.Settings,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.tides_url)

    def _post(self, payload: dict[str, Any]) -> Any:
        for attempt in tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.settings.fetch_retry_attempts),
            wait=tenacity.wait_exponential(multiplier=1, min=2, max=30),
            retry=tenacity.retry_if_exception_type(requests.RequestException),
            reraise=True,
        ):
            with attempt:
                response = self.session.post(
                    str(self.settings.tides_url),
                    json=payload,
                    timeout=self.settings.fetch_timeout_seconds,
                )
                response.raise_for_status()
                return response.json()
        return None

    def fetch_tides(
        self, results: Iterable[results_base.BrokerResult]
    ) -> dict[str, extensions.TidesExtension]:
        """Fetch tide data for each result's centroid and acquisition time.

        Args:
            results: Results to look tides up for.

        Returns:
            TidesExtension per result id.

        Raises:
            FetchError: If the service is not configured or cannot be reached.
            ParseError: If the response does not match the request.
        """
        results = list(results)
        if not results:
            return {}
        if not self.enabled:
            raise errors.FetchError("No tide service configured")
        locations = []
        for result in results:
            centroid = result.geometry.centroid
            locations.append(
                {
                    "lat": centroid.y,
                    "lon": centroid.x,
                    "dtg": result.acquired_date.strftime(DTG_FORMAT),
                }
            )
        try:
            data = self._post({"locations": locations})
        except requests.RequestException as exc:
            raise errors.FetchError(
                "Tide service request failed", url=str(self.settings.tides_url)
            ) from exc

        answered = data.get("locations") if isinstance(data, dict) else None
        if not isinstance(answered, list) or len(answered) != len(results):
            raise errors.ParseError("Tide service answered a different batch")
        tides: dict[str, extensions.TidesExtension] = {}
        for result, location in zip(results, answered, strict=True):
            try:
                values = location["results"]
                tides[result.id] = extensions.TidesExtension(
                    current=float(values["currentTide"]),
                    maximum_24h=float(values["maximumTide24Hours"]),
                    minimum_24h=float(values["minimumTide24Hours"]),
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise errors.ParseError(
                    "Malformed tide entry", scene_id=result.id
                ) from exc
        logger.debug("Fetched tides for %d scenes", len(tides))
        return tides

    def attach_tides(self, results: Iterable[results_base.BrokerResult]) -> None:
        """Fetch tides and apply them to the results that got an answer."""
        results = list(results)
        tides = self.fetch_tides(results)
        for result in results:
            result.apply_extension(tides.get(result.id))
