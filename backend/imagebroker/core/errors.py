"""Error taxonomy shared by the ingest pipeline, store and API.

All errors follow the format BRKR-{category}{number}:
- BRKR-FET*: Remote fetch failures (network, HTTP status, timeouts)
- BRKR-PRS*: Malformed listing rows or supplementary metadata files
- BRKR-GEO*: Unusable spatial data
- BRKR-STO*: Transaction or connectivity failures in the scene store
- BRKR-NTF*: Expected negative lookups

Per-record errors (parse, geometry, single-scene fetch or store failures)
are caught at the smallest scope and logged with the offending identifier.
Pass-level errors (bulk listing fetch, store unreachable before work starts)
propagate to the scheduler.
"""

from __future__ import annotations

from typing import Any


class BrokerError(Exception):
    """Base class for all image broker errors.

    All errors have:
    - code: Structured error code (e.g., BRKR-FET001)
    - message: Human-readable error message
    - context: Identifiers that locate the failure (scene id, url, line)
    """

    code: str = "BRKR-000"

    _RESERVED_ATTRS = frozenset({"code", "message", "context", "args"})

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize a broker error.

        Args:
            message: Human-readable error message.
            **context: Additional context stored as error attributes.
                Reserved keys (code, message, context, args) are ignored.
        """
        self.message = message
        self.context = context
        for key, value in context.items():
            if key not in self._RESERVED_ATTRS:
                setattr(self, key, value)
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert error to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": {key: str(value) for key, value in self.context.items()},
        }


class FetchError(BrokerError):
    """Raised when a remote listing or metadata file cannot be retrieved.

    Retryable. Fatal to a pass only when the bulk listing fetch fails.
    """

    code = "BRKR-FET001"


class ParseError(BrokerError):
    """Raised when a listing row or metadata file is malformed."""

    code = "BRKR-PRS001"


class GeometryError(BrokerError):
    """Raised when a footprint cannot be built or is not a valid polygon."""

    code = "BRKR-GEO001"


class StoreError(BrokerError):
    """Raised when a store transaction or connection fails."""

    code = "BRKR-STO001"


class NotFoundError(BrokerError):
    """Raised for expected negative lookups (unknown scene or source).

    Not a failure; the API layer turns it into a 404.
    """

    code = "BRKR-NTF001"

    def __init__(self, source: str, scene_id: str | None = None) -> None:
        if scene_id is None:
            super().__init__(f"Unknown source '{source}'", source=source)
        else:
            super().__init__(
                f"Scene '{scene_id}' not found in '{source}'",
                source=source,
                scene_id=scene_id,
            )
