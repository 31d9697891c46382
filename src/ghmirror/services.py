"""Object graph shared by the API, the background jobs and the CLI."""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ghmirror.config import Settings, get_settings
from ghmirror.github.client import GitHubClient
from ghmirror.github.rate_limit import RateLimitTracker
from ghmirror.github.sync_state import SyncStateStore
from ghmirror.mirror.store import MirrorStore
from ghmirror.retry import RetryPolicy
from ghmirror.sync.jobs import SyncJobStore
from ghmirror.sync.scheduler import SyncScheduler
from ghmirror.webhooks.handlers import EventDispatcher
from ghmirror.webhooks.ledger import DeliveryLedger
from ghmirror.webhooks.processor import QueueProcessor
from ghmirror.webhooks.queue import WebhookQueue
from ghmirror.webhooks.retention import RetentionPolicy


@dataclass
class Services:
    settings: Settings
    ledger: DeliveryLedger
    queue: WebhookQueue
    retention: RetentionPolicy
    store: MirrorStore
    processor: QueueProcessor
    tracker: RateLimitTracker
    sync_state: SyncStateStore
    jobs: SyncJobStore
    scheduler: SyncScheduler


def build_services(engine, settings: Optional[Settings] = None, client_factory=None) -> Services:
    """Wire every component against one engine.

    client_factory(user_id, on_response) defaults to a GitHubClient using the
    configured token; tests pass a factory returning a fake.
    """
    settings = settings or get_settings()
    stale_after = timedelta(seconds=settings.stale_claim_seconds)

    ledger = DeliveryLedger(engine)
    queue = WebhookQueue(engine, ledger, max_attempts=settings.webhook_max_attempts)
    retention = RetentionPolicy(engine, default_days=settings.retention_days)
    store = MirrorStore(engine)
    jobs = SyncJobStore(engine, max_attempts=settings.sync_max_attempts)
    processor = QueueProcessor(
        queue,
        ledger,
        EventDispatcher(store, jobs=jobs),
        retention,
        retry_policy=RetryPolicy(
            max_attempts=settings.webhook_max_attempts,
            base_delay_seconds=settings.webhook_base_delay_seconds,
            max_delay_seconds=settings.webhook_max_delay_seconds,
        ),
        stale_after=stale_after,
    )

    tracker = RateLimitTracker(engine, safety_margin=settings.rate_limit_safety_margin)
    sync_state = SyncStateStore(engine)

    if client_factory is None:
        def client_factory(user_id, on_response):
            return GitHubClient(
                settings.github_token,
                base_url=settings.github_api_url,
                on_response=on_response,
            )

    scheduler = SyncScheduler(
        jobs,
        tracker,
        sync_state,
        store,
        client_factory,
        retry_policy=RetryPolicy(
            max_attempts=settings.sync_max_attempts,
            base_delay_seconds=settings.sync_base_delay_seconds,
            max_delay_seconds=settings.sync_max_delay_seconds,
        ),
        freshness=timedelta(seconds=settings.sync_freshness_seconds),
        stale_after=stale_after,
    )

    return Services(
        settings=settings,
        ledger=ledger,
        queue=queue,
        retention=retention,
        store=store,
        processor=processor,
        tracker=tracker,
        sync_state=sync_state,
        jobs=jobs,
        scheduler=scheduler,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """FastAPI dependency returning the process-wide Services."""
    global _services
    if _services is None:
        from ghmirror.db.engine import get_engine

        _services = build_services(get_engine())
    return _services
