"""Metadata completion pass (ingest Phase 2).

Claims partial records, fetches each scene's supplementary metadata file,
derives the angle fields and marks the record complete. Claiming is atomic
in the store: a claimed record carries this pass's token and a lease expiry,
and no other pass can claim it until the lease runs out. The completing
write only lands if the record is still partial and still carries the token,
so a scene is completed at most once even when passes overlap. A pass
never re-claims a record carrying its own token, so it handles each scene
once even if it outlives its lease.

Per-scene work runs on a bounded thread pool. A failure for one scene is
logged with its id and leaves it partial (its claim is released at the end
of the pass, so the next pass retries it); it never affects other scenes.
The pass stops claiming once its wall-clock budget is spent; work still in
flight is abandoned and its claims expire with their lease.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import time
import uuid
from typing import TYPE_CHECKING

from imagebroker.core import errors

if TYPE_CHECKING:
    from collections.abc import Callable

    from imagebroker.core import config
    from imagebroker.db import database
    from imagebroker.db import models as db_models
    from imagebroker.services import catalog

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CompletionReport:
    """Counters describing one completion pass."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    lost_claims: int = 0
    abandoned: int = 0
    budget_exhausted: bool = False


def complete_scene(
    store: database.SceneStoreProtocol,
    client: catalog.CatalogClientProtocol,
    record: db_models.SceneRecord,
    token: str,
) -> bool:
    """Fetch, parse and persist the derived fields of one claimed scene.

    Args:
        store: Scene store holding the claim.
        client: Remote catalog client.
        record: The claimed partial record.
        token: Claim token of the running pass.

    Returns:
        True if the record was completed, False if the claim was lost.

    Raises:
        FetchError: If the metadata file cannot be downloaded.
        ParseError: If the metadata file is malformed.
        StoreError: If the update transaction fails.
    """
    metadata = client.fetch_scene_metadata(record.scene_url, record.scene_id)
    completed = record.completed(metadata.derived_fields())
    with store.transaction() as txn:
        return txn.complete(completed, token)


def _release(
    store: database.SceneStoreProtocol,
    token: str,
    scene_ids: list[str],
    *,
    count_failure: bool,
) -> None:
    if not scene_ids:
        return
    try:
        with store.transaction() as txn:
            txn.release_claims(token, scene_ids, count_failure=count_failure)
    except errors.StoreError:
        logger.exception(
            "Could not release %d claims; they expire with their lease",
            len(scene_ids),
        )


def _record_outcome(
    report: CompletionReport,
    failed_ids: list[str],
    record: db_models.SceneRecord,
    future: concurrent.futures.Future[bool],
) -> None:
    try:
        if future.result():
            report.completed += 1
        else:
            report.lost_claims += 1
            logger.warning(
                "Claim on %s was lost before completion", record.scene_id
            )
    except errors.BrokerError as exc:
        report.failed += 1
        failed_ids.append(record.scene_id)
        logger.warning("Completion failed for %s: %s", record.scene_id, exc)
    except Exception:
        report.failed += 1
        failed_ids.append(record.scene_id)
        logger.exception("Unexpected error completing %s", record.scene_id)


def complete_partial_scenes(
    store: database.SceneStoreProtocol,
    client: catalog.CatalogClientProtocol,
    settings: config.Settings,
    clock: Callable[[], float] = time.monotonic,
) -> CompletionReport:
    """Run one full Phase 2 pass.

    Args:
        store: Scene store to complete records in.
        client: Remote catalog client providing metadata files.
        settings: Application settings (batch size, workers, lease, budget).
        clock: Monotonic clock used for the pass budget.

    Returns:
        CompletionReport for the pass.

    Raises:
        StoreError: If the store is unreachable or a claim transaction fails.
    """
    store.ping()
    token = uuid.uuid4().hex
    report = CompletionReport()
    failed_ids: list[str] = []
    deadline = clock() + settings.completion_pass_budget_seconds
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=settings.completion_workers,
        thread_name_prefix="complete",
    )
    try:
        while True:
            remaining = deadline - clock()
            if remaining <= 0:
                report.budget_exhausted = True
                break
            with store.transaction() as txn:
                claimed = txn.claim_partial(
                    settings.completion_batch_size,
                    token,
                    settings.claim_lease_seconds,
                )
            if not claimed:
                break
            report.claimed += len(claimed)

            futures = {
                executor.submit(complete_scene, store, client, record, token): record
                for record in claimed
            }
            handled: set[concurrent.futures.Future[bool]] = set()
            try:
                for future in concurrent.futures.as_completed(
                    futures, timeout=remaining
                ):
                    handled.add(future)
                    _record_outcome(report, failed_ids, futures[future], future)
            except concurrent.futures.TimeoutError:
                report.budget_exhausted = True
                never_started = [
                    record.scene_id
                    for future, record in futures.items()
                    if future.cancel()
                ]
                for future, record in futures.items():
                    if future in handled or future.cancelled():
                        continue
                    if future.done():
                        handled.add(future)
                        _record_outcome(report, failed_ids, record, future)
                    else:
                        report.abandoned += 1
                report.abandoned += len(never_started)
                _release(store, token, never_started, count_failure=False)
                break
    finally:
        executor.shutdown(wait=not report.budget_exhausted, cancel_futures=True)
        _release(store, token, failed_ids, count_failure=True)

    if report.budget_exhausted:
        logger.warning(
            "Completion pass budget of %.0fs exhausted; %d scenes abandoned",
            settings.completion_pass_budget_seconds,
            report.abandoned,
        )
    logger.info(
        "Completion finished: %d claimed, %d completed, %d failed, "
        "%d lost claims",
        report.claimed,
        report.completed,
        report.failed,
        report.lost_claims,
    )
    return report
