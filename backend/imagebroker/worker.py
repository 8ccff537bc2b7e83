"""Command line entry point for the ingest worker.

``imagebroker-worker once`` runs a single reconcile + complete cycle and
exits; ``imagebroker-worker run`` keeps both passes and the database pool
health check going on their configured intervals until interrupted.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

import click

from imagebroker.core import config, errors, logconfig
from imagebroker.db import database
from imagebroker.services import catalog, complete, ingest, reconcile, scheduler

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _runtime(
    settings: config.Settings,
) -> Iterator[
    tuple[
        database.DatabasePool | None,
        database.SceneStoreProtocol,
        catalog.CatalogClientProtocol,
    ]
]:
    """Open the pool and build the store and catalog client on it."""
    pool = database.DatabasePool(settings)
    pool.open()
    try:
        yield pool, database.get_scene_store(pool), catalog.LandsatCatalogClient(
            settings
        )
    finally:
        pool.close()


def _summarize(report: ingest.IngestReport, phase: str) -> str:
    lines = []
    if report.reconcile is not None:
        r = report.reconcile
        lines.append(
            f"reconcile: {r.rows_seen} rows, {r.inserted} inserted, "
            f"{r.already_present} already present, {r.skipped} skipped"
        )
    elif phase == "all":
        lines.append("reconcile: aborted")
    if report.completion is not None:
        c = report.completion
        lines.append(
            f"complete: {c.claimed} claimed, {c.completed} completed, "
            f"{c.failed} failed"
        )
    return "\n".join(lines)


@click.group()
@click.option(
    "--log-level",
    default=None,
    help="Override the LOG_LEVEL setting (e.g. DEBUG).",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Image broker ingest worker."""
    settings = config.get_settings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    logconfig.configure_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option(
    "--phase",
    type=click.Choice(["all", "reconcile", "complete"]),
    default="all",
    help="Run only one of the two ingest phases.",
)
@click.pass_context
def once(ctx: click.Context, phase: str) -> None:
    """Run one ingest cycle and exit.

    Exits with status 1 if a phase could not run, even when the other one
    did, so schedulers such as cron can alert on it.
    """
    settings: config.Settings = ctx.obj["settings"]
    try:
        with _runtime(settings) as (_, store, client):
            report = ingest.IngestReport()
            if phase == "all":
                report = ingest.run_ingest_cycle(store, client, settings)
            elif phase == "reconcile":
                report.reconcile = reconcile.run_reconciliation(
                    store, client, settings
                )
            else:
                report.completion = complete.complete_partial_scenes(
                    store, client, settings
                )
    except errors.BrokerError as err:
        click.echo(f"Ingest failed: {err}", err=True)
        raise SystemExit(1) from err
    click.echo(_summarize(report, phase))
    if report.reconcile is None and phase == "all":
        # Phase 2 ran, but the listing pass did not.
        raise SystemExit(1)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run both ingest phases and the pool health check until interrupted."""
    settings: config.Settings = ctx.obj["settings"]
    try:
        with _runtime(settings) as (pool, store, client):
            runner = scheduler.IngestScheduler(
                scheduler.build_jobs(store, client, settings, pool)
            )
            runner.start()
            try:
                runner.wait()
            except KeyboardInterrupt:
                logger.info("Interrupted; stopping scheduler")
            finally:
                runner.stop(timeout=5)
    except errors.StoreError as err:
        click.echo(f"Worker could not start: {err}", err=True)
        raise SystemExit(1) from err


if __name__ == "__main__":
    cli()
