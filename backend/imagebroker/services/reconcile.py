"""Reconciliation pass (ingest Phase 1).

Inserts a partial SceneRecord for every listing row whose scene id is not
yet in the store. Existing records are never touched, so replaying the same
listing is a no-op. Rows are processed in sub-batches; each sub-batch runs
in one transaction that first pre-loads which of its ids already exist and
then inserts the rest. A failing sub-batch is rolled back on its own and the
pass moves on; sub-batches committed earlier stay committed.

Malformed rows and rows whose footprint cannot be built are logged and
skipped, including rows that are not valid UTF-8 or CSV. A failure to
fetch the listing aborts the pass before anything is written.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
from typing import TYPE_CHECKING

from imagebroker.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable

    from imagebroker.core import config
    from imagebroker.db import database
    from imagebroker.db import models as db_models
    from imagebroker.services import catalog

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ReconcileReport:
    """Counters describing one reconciliation pass."""

    rows_seen: int = 0
    inserted: int = 0
    already_present: int = 0
    parse_errors: int = 0
    geometry_errors: int = 0
    failed_batches: int = 0

    @property
    def skipped(self) -> int:
        return self.parse_errors + self.geometry_errors


def _parse_batch(
    rows: Iterable[catalog.RemoteSceneListing], report: ReconcileReport
) -> list[db_models.SceneRecord]:
    records: dict[str, db_models.SceneRecord] = {}
    for row in rows:
        report.rows_seen += 1
        try:
            record = row.to_record()
        except errors.ParseError as exc:
            report.parse_errors += 1
            logger.warning("Skipping listing row %s: %s", row.label, exc)
            continue
        except errors.GeometryError as exc:
            report.geometry_errors += 1
            logger.warning("Skipping listing row %s: %s", row.label, exc)
            continue
        if record.scene_id in records:
            report.already_present += 1
            continue
        records[record.scene_id] = record
    return list(records.values())


def _commit_batch(
    store: database.SceneStoreProtocol,
    records: list[db_models.SceneRecord],
    report: ReconcileReport,
) -> None:
    inserted = 0
    with store.transaction() as txn:
        existing = txn.existing_ids([record.scene_id for record in records])
        for record in records:
            if record.scene_id in existing:
                continue
            if txn.insert_if_absent(record):
                inserted += 1
    report.inserted += inserted
    report.already_present += len(records) - inserted


def reconcile_listing(
    store: database.SceneStoreProtocol,
    listing: Iterable[catalog.RemoteSceneListing],
    batch_size: int,
) -> ReconcileReport:
    """Insert every listing entry that is not already stored.

    Args:
        store: Scene store to reconcile against.
        listing: Rows of the bulk listing, consumed lazily.
        batch_size: Rows per transaction.

    Returns:
        ReconcileReport for the pass.
    """
    report = ReconcileReport()
    rows = iter(listing)
    batch_number = 0
    while batch := list(itertools.islice(rows, batch_size)):
        batch_number += 1
        records = _parse_batch(batch, report)
        if not records:
            continue
        try:
            _commit_batch(store, records, report)
        except errors.StoreError:
            report.failed_batches += 1
            logger.exception(
                "Reconciliation sub-batch %d rolled back (%d records, "
                "first %s)",
                batch_number,
                len(records),
                records[0].scene_id,
            )
    return report


def run_reconciliation(
    store: database.SceneStoreProtocol,
    client: catalog.CatalogClientProtocol,
    settings: config.Settings,
) -> ReconcileReport:
    """Run one full Phase 1 pass against the remote listing.

    Args:
        store: Scene store to reconcile against.
        client: Remote catalog client providing the listing.
        settings: Application settings (batch size).

    Returns:
        ReconcileReport for the pass.

    Raises:
        StoreError: If the store is unreachable before the pass starts.
        FetchError: If the listing cannot be fetched; nothing is written.
        ParseError: If the compressed listing stream is corrupt.
    """
    store.ping()
    with client.fetch_scene_listing() as listing:
        report = reconcile_listing(store, listing, settings.reconcile_batch_size)
    logger.info(
        "Reconciliation finished: %d rows, %d inserted, %d already present, "
        "%d skipped, %d failed batches",
        report.rows_seen,
        report.inserted,
        report.already_present,
        report.skipped,
        report.failed_batches,
    )
    return report
