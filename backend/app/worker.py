"""Standalone scrape worker.

    python -m backend.app.worker              # immediate run, then every 30 minutes
    python -m backend.app.worker --once       # single run, exit code reflects the outcome
"""
from __future__ import annotations

import argparse
import signal
import threading
from typing import Optional, Sequence

from backend.app.core.config import Settings, settings
from backend.app.core.logging import configure_logging, init_sentry, logger
from backend.app.core.units import load_unit_catalog
from backend.app.scraper.aggregator import RunAggregator
from backend.app.scraper.pipeline import ScrapePipeline
from backend.app.scraper.retry import RetryingFetcher, RetryPolicy
from backend.app.scraper.scheduler import Scheduler
from backend.app.scraper.source import PlaywrightSourceFetcher
from backend.app.scraper.store import DatabaseArtifactStore, build_store
from backend.app.scraper.writer import ArtifactWriter


def build_pipeline(config: Settings = settings, *, store_kind: Optional[str] = None, fetcher=None) -> ScrapePipeline:
    catalog = load_unit_catalog(config.units_config or None)
    store = build_store(
        store_kind or config.artifact_store,
        data_root=config.data_root,
        snapshot_keep=config.snapshot_keep,
    )
    if isinstance(store, DatabaseArtifactStore):
        from backend.app.db.init_db import init_db

        init_db()

    if fetcher is None:
        policy = RetryPolicy.linear(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            jitter=config.retry_jitter,
        )
        fetcher = RetryingFetcher(PlaywrightSourceFetcher(catalog), policy)

    aggregator = RunAggregator(catalog, fetcher, unit_delay=config.unit_delay)
    writer = ArtifactWriter(store, error_log_keep=config.error_log_keep)
    return ScrapePipeline(aggregator, writer, recent_games_limit=config.recent_games_limit)


def build_scheduler(config: Settings = settings, *, store_kind: Optional[str] = None, interval_minutes: Optional[float] = None) -> Scheduler:
    pipeline = build_pipeline(config, store_kind=store_kind)
    minutes = interval_minutes if interval_minutes is not None else config.run_interval_minutes
    return Scheduler(
        pipeline,
        interval_seconds=minutes * 60,
        units_configured=len(pipeline.aggregator.catalog),
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh YSBA standings and schedules into published artifacts.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    parser.add_argument(
        "--interval-minutes",
        type=float,
        default=settings.run_interval_minutes,
        help="Minutes between scheduled runs.",
    )
    parser.add_argument(
        "--store",
        choices=["filesystem", "database"],
        default=None,
        help="Artifact store backend (defaults to ARTIFACT_STORE).",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    init_sentry()

    scheduler = build_scheduler(settings, store_kind=args.store, interval_minutes=args.interval_minutes)

    if args.once:
        report = scheduler.trigger(reason="cli")
        if report is None:
            return 1
        logger.info("Run finished: %s", report.to_dict())
        return 0 if report.committed else 1

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    stop.wait()
    finished = scheduler.shutdown(timeout=settings.shutdown_timeout)
    logger.info("Worker stopped (%s)", "clean" if finished else "run cancelled")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
