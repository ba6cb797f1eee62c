"""APScheduler setup for the periodic ingestion sweep, and the agent entry point."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from inbox_router.agent.config import IngestConfig
from inbox_router.agent.ingest import run_ingest

logger = logging.getLogger(__name__)

INGEST_JOB_ID = "ingest"


def create_ingest_scheduler(
    job: Callable[[], Awaitable[object]],
    interval_minutes: int,
    *,
    run_now: bool = True,
) -> AsyncIOScheduler:
    """Return an AsyncIOScheduler that fires ``job`` every ``interval_minutes``.

    Runs never overlap (``max_instances=1``) and missed firings collapse into
    one (``coalesce=True``): the engine relies on the scheduler for mutual
    exclusion.  The caller is responsible for start() and shutdown().
    """
    scheduler = AsyncIOScheduler()
    # next_run_time=None would add the job paused, so only pass it when firing now.
    extra = {"next_run_time": datetime.now()} if run_now else {}
    scheduler.add_job(
        job,
        "interval",
        minutes=interval_minutes,
        id=INGEST_JOB_ID,
        max_instances=1,
        coalesce=True,
        **extra,
    )
    logger.info("Ingestion scheduled every %d minute(s)", interval_minutes)
    return scheduler


def main() -> None:
    """Start the periodic ingestion agent.  Called by the `inbox-router-agent` entry point."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        asyncio.run(_amain(IngestConfig.from_env()))
    except KeyboardInterrupt:
        # Ctrl+C on Windows (no add_signal_handler) arrives here
        logger.info("Interrupted — goodbye")


async def _amain(config: IngestConfig) -> None:
    """Async entry point: wire up signal handlers and run the scheduler until stopped."""
    scheduler = create_ingest_scheduler(
        functools.partial(run_ingest, config), config.interval_minutes
    )
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
    except (NotImplementedError, AttributeError):
        pass

    scheduler.start()
    try:
        await stop.wait()
        logger.info("Shutdown requested — stopping scheduler")
    finally:
        scheduler.shutdown(wait=False)
