"""Process-wide logging setup for the API and the ingest worker."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imagebroker.core import config


def configure_logging(settings: config.Settings) -> None:
    """Apply the configured level and format to the root logger.

    Safe to call more than once; later calls replace earlier handlers.

    Args:
        settings: Application settings providing log_level and log_format.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=settings.log_format,
        force=True,
    )
