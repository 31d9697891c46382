"""
Main entrypoint: runs the background workers (queue processor, sync
scheduler, nightly jobs) in one process.

FastAPI runs separately under uvicorn (for the webhook endpoint).

Usage:
    python -m ghmirror              # starts the workers
    python -m ghmirror purge        # one retention purge, then exit
    uvicorn ghmirror.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_purge() -> None:
    from ghmirror.db.engine import get_engine
    from ghmirror.services import build_services

    services = build_services(get_engine())
    summary = services.retention.purge(services.queue, services.ledger)
    logger.info("Purged %d queue items and %d ledger records", summary.items, summary.deliveries)


async def _run_workers() -> None:
    from ghmirror.config import get_settings
    from ghmirror.db.engine import get_engine
    from ghmirror.scheduler.jobs import build_scheduler

    settings = get_settings()
    if not settings.github_token:
        logger.warning("GHMIRROR_GITHUB_TOKEN not set; pull sync calls will be unauthenticated.")

    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Workers started (queue every %ds, sync every %ds, overview at %02d:00 UTC)",
        settings.processor_interval_seconds,
        settings.scheduler_interval_seconds,
        settings.overview_sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m ghmirror purge` or just `python -m ghmirror`
    if len(sys.argv) > 1 and sys.argv[1] == "purge":
        _run_purge()
    else:
        asyncio.run(_run_workers())
