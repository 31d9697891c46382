"""
APScheduler jobs for the background workers.

  process_webhooks       every processor_interval_seconds; drains due queue items
  run_sync_jobs          every scheduler_interval_seconds; runs due sync jobs
  nightly_overview_sync  cron at overview_sync_hour; requests an overview sync
  retention_purge        cron at purge_hour; purges settled webhook records

The webhook route and the sync routes also kick the processor / scheduler
right away, so the intervals only bound how long retries and deferred jobs
wait. Job bodies log failures and never raise, so one bad run does not stop
the scheduler.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ghmirror.config import get_settings
from ghmirror.models.sync import OVERVIEW_SYNC
from ghmirror.services import Services, build_services
from ghmirror.sync.steps import RESOURCE_TYPES, plan_for

logger = logging.getLogger(__name__)

NIGHTLY_PRIORITY = 20


def build_scheduler(engine, services: Services = None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine the workers run against.
        services: Pre-built Services (tests); built from engine if omitted.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    services = services or build_services(engine, settings)
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _process_webhooks,
        trigger="interval",
        seconds=settings.processor_interval_seconds,
        id="process_webhooks",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"services": services},
    )
    scheduler.add_job(
        _run_sync_jobs,
        trigger="interval",
        seconds=settings.scheduler_interval_seconds,
        id="run_sync_jobs",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"services": services},
    )
    scheduler.add_job(
        _nightly_overview_sync,
        trigger="cron",
        hour=settings.overview_sync_hour,
        minute=0,
        id="nightly_overview_sync",
        replace_existing=True,
        kwargs={"services": services},
    )
    scheduler.add_job(
        _retention_purge,
        trigger="cron",
        hour=settings.purge_hour,
        minute=30,
        id="retention_purge",
        replace_existing=True,
        kwargs={"services": services},
    )

    return scheduler


async def _process_webhooks(services: Services) -> None:
    try:
        await services.processor.run_once(limit=services.settings.processor_batch_size)
    except Exception as exc:
        logger.error("Webhook processor run failed: %s", exc)


async def _run_sync_jobs(services: Services) -> None:
    try:
        await services.scheduler.run_once()
    except Exception as exc:
        logger.error("Sync scheduler run failed: %s", exc)


async def _nightly_overview_sync(services: Services) -> None:
    """
    Nightly job: request an overview sync for the configured user.

    Coalesces with a pending or running overview sync, so it is safe to run
    while one is already queued.
    """
    try:
        job, created = services.jobs.request_job(
            OVERVIEW_SYNC,
            RESOURCE_TYPES[OVERVIEW_SYNC],
            None,
            services.settings.user_id,
            priority=NIGHTLY_PRIORITY,
            total_steps=len(plan_for(OVERVIEW_SYNC)),
        )
        logger.info("Nightly overview sync %s (job %s)", "requested" if created else "already queued", job.id)
    except Exception as exc:
        logger.error("Nightly overview sync request failed: %s", exc)


async def _retention_purge(services: Services) -> None:
    try:
        services.retention.purge(services.queue, services.ledger)
    except Exception as exc:
        logger.error("Retention purge failed: %s", exc)
