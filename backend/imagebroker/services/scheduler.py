"""Recurring, single-flight scheduling of the ingest passes.

Each job fires on its own fixed interval in a background thread. A trigger
that fires while the job's previous run is still going is skipped, so a
job never runs concurrently with itself. Errors escaping a run are logged
and the job is simply tried again at its next trigger.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import TYPE_CHECKING

from imagebroker.services import complete, reconcile

if TYPE_CHECKING:
    from collections.abc import Callable

    from imagebroker.core import config
    from imagebroker.db import database
    from imagebroker.services import catalog

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Job:
    """A named callable run every ``interval`` seconds, single-flight."""

    name: str
    interval: float
    func: Callable[[], object]
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    _running: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, repr=False
    )

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def trigger(self) -> bool:
        """Run the job unless a previous run is still in progress.

        Returns:
            True if the job ran, False if the trigger was skipped.
        """
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.warning("Skipping %s: previous run still in progress", self.name)
            return False
        try:
            self.runs += 1
            self.func()
        except Exception:
            self.failures += 1
            logger.exception("%s failed; retrying at next trigger", self.name)
        finally:
            self._running.release()
        return True


class IngestScheduler:
    """Fires each job on its interval until stopped."""

    def __init__(self, jobs: list[Job]) -> None:
        self.jobs = jobs
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _loop(self, job: Job) -> None:
        while not self._stop.is_set():
            threading.Thread(
                target=job.trigger, name=f"{job.name}-run", daemon=True
            ).start()
            if self._stop.wait(job.interval):
                break

    def start(self) -> None:
        for job in self.jobs:
            thread = threading.Thread(
                target=self._loop, args=(job,), name=f"{job.name}-timer", daemon=True
            )
            thread.start()
            self._threads.append(thread)
            logger.info("Scheduled %s every %.0fs", job.name, job.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop firing triggers. Runs already in progress are not interrupted."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()

    def wait(self) -> None:
        """Block until stop() is called."""
        self._stop.wait()


def build_jobs(
    store: database.SceneStoreProtocol,
    client: catalog.CatalogClientProtocol,
    settings: config.Settings,
    pool: database.DatabasePool | None = None,
) -> list[Job]:
    """Create the reconciliation, completion and pool health check jobs."""
    jobs = [
        Job(
            name="reconcile",
            interval=settings.reconcile_interval_seconds,
            func=lambda: reconcile.run_reconciliation(store, client, settings),
        ),
        Job(
            name="complete",
            interval=settings.completion_interval_seconds,
            func=lambda: complete.complete_partial_scenes(store, client, settings),
        ),
    ]
    if pool is not None:
        jobs.append(
            Job(
                name="db-health",
                interval=settings.db_health_interval_seconds,
                func=pool.health_check,
            )
        )
    return jobs
