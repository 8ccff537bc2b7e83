"""One full ingest cycle: reconciliation followed by metadata completion."""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from imagebroker.core import errors
from imagebroker.services import complete, reconcile

if TYPE_CHECKING:
    from imagebroker.core import config
    from imagebroker.db import database
    from imagebroker.services import catalog

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class IngestReport:
    """Outcome of one cycle. A phase that aborted leaves its report None."""

    reconcile: reconcile.ReconcileReport | None = None
    completion: complete.CompletionReport | None = None


def run_ingest_cycle(
    store: database.SceneStoreProtocol,
    client: catalog.CatalogClientProtocol,
    settings: config.Settings,
) -> IngestReport:
    """Run Phase 1 then Phase 2 once.

    A listing that cannot be fetched or read does not stop Phase 2: records
    left partial by earlier passes are still worth completing.

    Raises:
        StoreError: If the store is unreachable.
    """
    report = IngestReport()
    try:
        report.reconcile = reconcile.run_reconciliation(store, client, settings)
    except (errors.FetchError, errors.ParseError):
        logger.exception("Reconciliation aborted; listing unavailable or corrupt")
    report.completion = complete.complete_partial_scenes(store, client, settings)
    return report
