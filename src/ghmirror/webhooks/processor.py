"""
QueueProcessor: drains due webhook queue items through the event handlers.

One run:
  1. failed items whose backoff elapsed go back to pending
  2. processing items with a stale claim go back to pending (dead worker)
  3. due pending items are claimed one at a time, oldest first, and handled

Per item the outcome decides the transition:
  success    → processed (+ ledger "processed"; deleted if retention is off)
  transient  → failed with next_retry_at, or dead_letter once out of attempts
  permanent  → dead_letter immediately (+ ledger "failed" with payload)

Safe to run from several workers at once: the claim is a conditional UPDATE,
so each item is handled by exactly one of them.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ghmirror.errors import PERMANENT, classify_error
from ghmirror.models.webhook import (
    DELIVERY_FAILED,
    DELIVERY_PROCESSED,
    WebhookQueueItem,
)
from ghmirror.retry import RetryPolicy
from ghmirror.timeutil import utcnow
from ghmirror.webhooks.handlers import EventDispatcher
from ghmirror.webhooks.ledger import DeliveryLedger
from ghmirror.webhooks.queue import WebhookQueue
from ghmirror.webhooks.retention import RetentionPolicy

logger = logging.getLogger(__name__)

# process_item outcomes
OUTCOME_PROCESSED = "processed"
OUTCOME_RETRY = "retry"
OUTCOME_DEAD_LETTER = "dead_letter"
OUTCOME_ALREADY_CLAIMED = "already_claimed"


@dataclass
class RunSummary:
    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    total: int = 0


class QueueProcessor:
    """Claims and handles webhook queue items."""

    def __init__(
        self,
        queue: WebhookQueue,
        ledger: DeliveryLedger,
        dispatcher: EventDispatcher,
        retention: RetentionPolicy,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        stale_after: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.retention = retention
        self.retry_policy = retry_policy or RetryPolicy()
        self.stale_after = stale_after
        self.clock = clock

    async def run_once(self, limit: int = 10) -> RunSummary:
        """Process up to `limit` due items. One item failing never stops the rest."""
        now = self.clock()
        self.queue.rearm_due_retries(now)
        self.queue.recover_stale_claims(self.stale_after, now)

        summary = RunSummary()
        for item in self.queue.due_items(limit, now):
            summary.total += 1
            outcome = await self.process_item(item)
            if outcome == OUTCOME_PROCESSED:
                summary.processed += 1
            elif outcome == OUTCOME_RETRY:
                summary.failed += 1
            elif outcome == OUTCOME_DEAD_LETTER:
                summary.dead_lettered += 1
            else:
                summary.skipped += 1
        if summary.total:
            logger.info(
                "Queue run: %d processed, %d failed, %d dead-lettered, %d skipped",
                summary.processed,
                summary.failed,
                summary.dead_lettered,
                summary.skipped,
            )
        return summary

    async def process_item(self, item: WebhookQueueItem) -> str:
        """Claim and handle one item. Returns one of the OUTCOME_* values."""
        if not self.queue.claim(item.id, self.clock()):
            logger.debug("Item %s already claimed by another worker", item.id)
            return OUTCOME_ALREADY_CLAIMED

        claimed = self.queue.get(item.id)
        if claimed is None:
            return OUTCOME_ALREADY_CLAIMED

        try:
            payload = json.loads(claimed.payload)
            await self.dispatcher.dispatch(
                claimed.event,
                claimed.action,
                payload,
                delivery_id=claimed.delivery_id,
                user_id=claimed.owner_user_id,
            )
        except Exception as exc:
            return self._handle_failure(claimed, exc)

        return self._handle_success(claimed)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _handle_success(self, item: WebhookQueueItem) -> str:
        now = self.clock()
        self.queue.mark_processed(item.id, now)
        self.ledger.record_terminal(
            item.delivery_id, item.event, item.action, DELIVERY_PROCESSED, now=now
        )
        if not self.retention.keeps_processed(item.owner_user_id):
            self.queue.delete(item.id)
        logger.info(
            "Webhook processed delivery=%s event=%s attempt=%d",
            item.delivery_id,
            item.event,
            item.attempts,
        )
        return OUTCOME_PROCESSED

    def _handle_failure(self, item: WebhookQueueItem, exc: Exception) -> str:
        now = self.clock()
        error = f"{type(exc).__name__}: {exc}"
        kind = classify_error(exc)

        if kind == PERMANENT or self.retry_policy.exhausted(item.attempts, item.max_attempts):
            self.queue.mark_dead_letter(item.id, error, now)
            self.ledger.record_terminal(
                item.delivery_id,
                item.event,
                item.action,
                DELIVERY_FAILED,
                error=error,
                payload=item.payload,
                now=now,
            )
            logger.error(
                "Webhook dead-lettered delivery=%s event=%s attempts=%d (%s): %s",
                item.delivery_id,
                item.event,
                item.attempts,
                kind,
                error,
            )
            return OUTCOME_DEAD_LETTER

        next_retry_at = self.retry_policy.next_retry_at(item.attempts, now, exc)
        self.queue.mark_failed(item.id, error, next_retry_at, now)
        logger.warning(
            "Webhook processing failed, will retry delivery=%s event=%s attempt=%d/%d at %s: %s",
            item.delivery_id,
            item.event,
            item.attempts,
            item.max_attempts,
            next_retry_at.isoformat(),
            error,
        )
        return OUTCOME_RETRY
