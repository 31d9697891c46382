"""
WebhookQueue: durable per-delivery work items.

State machine (only the processor and operator actions move items):

    pending ──claim──▶ processing ──▶ processed
                           │
                           ├──▶ failed ──(retry due)──▶ pending
                           └──▶ dead_letter

    processed / dead_letter / failed ──operator retry──▶ pending
    processing (stale claim) ──crash recovery──▶ pending

Every transition is a conditional UPDATE on the current status, so two
workers racing on the same row cannot both win.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ghmirror.models.webhook import (
    DEAD_LETTER,
    DELIVERY_FAILED,
    FAILED,
    PENDING,
    PROCESSED,
    PROCESSING,
    TERMINAL_STATUSES,
    WebhookQueueItem,
)
from ghmirror.timeutil import utcnow
from ghmirror.webhooks.ledger import DeliveryLedger

logger = logging.getLogger(__name__)

DISCARDED_ERROR = "discarded by operator"


@dataclass
class EnqueueResult:
    queued: bool
    duplicate: bool
    queue_item_id: Optional[int] = None


class WebhookQueue:
    """Storage and state transitions for WebhookQueueItem rows."""

    def __init__(self, engine, ledger: DeliveryLedger, max_attempts: int = 5):
        self.engine = engine
        self.ledger = ledger
        self.max_attempts = max_attempts

    # ─── Enqueue ──────────────────────────────────────────────────────────────

    def enqueue(
        self,
        delivery_id: str,
        event: str,
        action: Optional[str],
        payload: str,
        *,
        owner_user_id: int = 1,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Create a pending item unless this delivery is already known.

        Duplicate (not an error) when the ledger already settled the delivery,
        or when an item for it is still in the queue.
        """
        if self.ledger.has_processed(delivery_id):
            logger.info("Delivery %s already settled; dropping redelivery", delivery_id)
            return EnqueueResult(queued=False, duplicate=True)

        now = now or utcnow()
        item = WebhookQueueItem(
            delivery_id=delivery_id,
            event=event,
            action=action or None,
            payload=payload,
            status=PENDING,
            attempts=0,
            max_attempts=self.max_attempts,
            owner_user_id=owner_user_id,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as s:
            s.add(item)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.info("Delivery %s already queued; ignoring redelivery", delivery_id)
                return EnqueueResult(queued=False, duplicate=True)
            s.refresh(item)

        logger.info(
            "Webhook enqueued delivery=%s event=%s action=%s item=%s",
            delivery_id,
            event,
            action,
            item.id,
        )
        return EnqueueResult(queued=True, duplicate=False, queue_item_id=item.id)

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, item_id: int) -> Optional[WebhookQueueItem]:
        with Session(self.engine) as s:
            return s.get(WebhookQueueItem, item_id)

    def get_by_delivery(self, delivery_id: str) -> Optional[WebhookQueueItem]:
        with Session(self.engine) as s:
            return s.exec(
                select(WebhookQueueItem).where(WebhookQueueItem.delivery_id == delivery_id)
            ).first()

    def due_items(self, limit: int, now: Optional[datetime] = None) -> List[WebhookQueueItem]:
        """Pending items ready to run, oldest first."""
        now = now or utcnow()
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(WebhookQueueItem)
                    .where(WebhookQueueItem.status == PENDING)
                    .where(
                        or_(
                            WebhookQueueItem.next_retry_at.is_(None),
                            WebhookQueueItem.next_retry_at <= now,
                        )
                    )
                    .order_by(WebhookQueueItem.created_at, WebhookQueueItem.id)
                    .limit(limit)
                ).all()
            )

    def list_problem_items(self) -> List[WebhookQueueItem]:
        """Failed and dead-letter items, newest first, for the operator view."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(WebhookQueueItem)
                    .where(WebhookQueueItem.status.in_([FAILED, DEAD_LETTER]))
                    .order_by(WebhookQueueItem.created_at.desc())
                ).all()
            )

    def list_all(self) -> List[WebhookQueueItem]:
        with Session(self.engine) as s:
            return list(s.exec(select(WebhookQueueItem)).all())

    def counts_by_status(self) -> Dict[str, int]:
        with Session(self.engine) as s:
            rows = s.exec(
                select(WebhookQueueItem.status, func.count(WebhookQueueItem.id)).group_by(
                    WebhookQueueItem.status
                )
            ).all()
        return {status: count for status, count in rows}

    # ─── Processor transitions ────────────────────────────────────────────────

    def claim(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """Atomically move pending → processing and count the attempt.

        Returns False when another worker got there first.
        """
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(WebhookQueueItem)
                .where(WebhookQueueItem.id == item_id)
                .where(WebhookQueueItem.status == PENDING)
                .values(
                    status=PROCESSING,
                    attempts=WebhookQueueItem.attempts + 1,
                    claimed_at=now,
                    updated_at=now,
                )
            )
            s.commit()
            return result.rowcount == 1

    def mark_processed(self, item_id: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self._finish(
            item_id,
            status=PROCESSED,
            processed_at=now,
            next_retry_at=None,
            last_error=None,
            updated_at=now,
        )

    def mark_failed(
        self,
        item_id: int,
        error: str,
        next_retry_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        return self._finish(
            item_id,
            status=FAILED,
            last_error=error,
            failed_at=now,
            next_retry_at=next_retry_at,
            updated_at=now,
        )

    def mark_dead_letter(self, item_id: int, error: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self._finish(
            item_id,
            status=DEAD_LETTER,
            last_error=error,
            failed_at=now,
            next_retry_at=None,
            updated_at=now,
        )

    def delete(self, item_id: int) -> int:
        with Session(self.engine) as s:
            result = s.exec(delete(WebhookQueueItem).where(WebhookQueueItem.id == item_id))
            s.commit()
            return result.rowcount

    def rearm_due_retries(self, now: Optional[datetime] = None) -> int:
        """failed → pending for items whose backoff has elapsed."""
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(WebhookQueueItem)
                .where(WebhookQueueItem.status == FAILED)
                .where(WebhookQueueItem.next_retry_at.is_not(None))
                .where(WebhookQueueItem.next_retry_at <= now)
                .values(status=PENDING, next_retry_at=None, updated_at=now)
            )
            s.commit()
            return result.rowcount

    def recover_stale_claims(self, stale_after: timedelta, now: Optional[datetime] = None) -> int:
        """processing → pending for claims whose worker is presumed dead.

        The attempt already counted stays counted.
        """
        now = now or utcnow()
        cutoff = now - stale_after
        with Session(self.engine) as s:
            result = s.exec(
                update(WebhookQueueItem)
                .where(WebhookQueueItem.status == PROCESSING)
                .where(WebhookQueueItem.claimed_at < cutoff)
                .values(status=PENDING, claimed_at=None, updated_at=now)
            )
            s.commit()
        if result.rowcount:
            logger.warning("Recovered %d stale webhook claims", result.rowcount)
        return result.rowcount

    def _finish(self, item_id: int, **values) -> bool:
        """Leave processing. No-op if the item is no longer ours (e.g. discarded)."""
        with Session(self.engine) as s:
            result = s.exec(
                update(WebhookQueueItem)
                .where(WebhookQueueItem.id == item_id)
                .where(WebhookQueueItem.status == PROCESSING)
                .values(**values)
            )
            s.commit()
            return result.rowcount == 1

    # ─── Operator actions (idempotent) ────────────────────────────────────────

    def retry(self, item_id: int, now: Optional[datetime] = None) -> int:
        """Re-arm one failed/dead-letter/processed item. Attempts are kept."""
        return self._rearm([item_id], (FAILED, DEAD_LETTER, PROCESSED), now)

    def retry_all(self, now: Optional[datetime] = None) -> int:
        """Re-arm every dead-letter item."""
        return self._rearm(None, (DEAD_LETTER,), now)

    def discard(self, item_id: int, now: Optional[datetime] = None) -> int:
        """Delete one item that is not currently being processed.

        An unsettled delivery gets a failed ledger record in the same commit
        as the delete, so the provider redelivering it later does not bring
        it back. Nothing is written when a worker claimed the item first.
        """
        item = self.get(item_id)
        if item is None or item.status == PROCESSING:
            return 0
        stmt = (
            delete(WebhookQueueItem)
            .where(WebhookQueueItem.id == item_id)
            .where(WebhookQueueItem.status == item.status)
        )
        with Session(self.engine) as s:
            result = s.exec(stmt)
            if result.rowcount and item.status not in TERMINAL_STATUSES:
                s.add(
                    self.ledger.new_record(
                        item.delivery_id,
                        item.event,
                        item.action,
                        DELIVERY_FAILED,
                        error=item.last_error or DISCARDED_ERROR,
                        payload=item.payload,
                        now=now,
                    )
                )
            try:
                s.commit()
            except IntegrityError:
                # Already settled in the ledger; the delete alone is enough.
                s.rollback()
                result = s.exec(stmt)
                s.commit()
        if result.rowcount:
            logger.info("Discarded webhook item %s (delivery %s)", item_id, item.delivery_id)
        return result.rowcount

    def discard_all(self) -> int:
        """Delete every dead-letter item; their ledger records remain."""
        with Session(self.engine) as s:
            result = s.exec(delete(WebhookQueueItem).where(WebhookQueueItem.status == DEAD_LETTER))
            s.commit()
        logger.info("Discarded %d dead-letter webhook items", result.rowcount)
        return result.rowcount

    def purge_terminal(
        self,
        cutoff: datetime,
        owner_user_ids: Optional[Iterable[int]] = None,
        exclude_owner_user_ids: Optional[Iterable[int]] = None,
    ) -> int:
        """Delete processed/dead-letter items last touched before cutoff."""
        with Session(self.engine) as s:
            stmt = (
                delete(WebhookQueueItem)
                .where(WebhookQueueItem.status.in_(TERMINAL_STATUSES))
                .where(WebhookQueueItem.updated_at < cutoff)
            )
            if owner_user_ids is not None:
                stmt = stmt.where(WebhookQueueItem.owner_user_id.in_(list(owner_user_ids)))
            if exclude_owner_user_ids:
                stmt = stmt.where(
                    WebhookQueueItem.owner_user_id.not_in(list(exclude_owner_user_ids))
                )
            result = s.exec(stmt)
            s.commit()
            return result.rowcount

    def _rearm(self, item_ids, from_statuses, now: Optional[datetime]) -> int:
        now = now or utcnow()
        with Session(self.engine) as s:
            query = select(WebhookQueueItem).where(WebhookQueueItem.status.in_(from_statuses))
            if item_ids is not None:
                query = query.where(WebhookQueueItem.id.in_(item_ids))
            items = s.exec(query).all()
            rearmed = 0
            for item in items:
                result = s.exec(
                    update(WebhookQueueItem)
                    .where(WebhookQueueItem.id == item.id)
                    .where(WebhookQueueItem.status.in_(from_statuses))
                    .values(
                        status=PENDING,
                        next_retry_at=None,
                        last_error=None,
                        failed_at=None,
                        claimed_at=None,
                        updated_at=now,
                    )
                )
                if result.rowcount:
                    # The pending row blocks redeliveries now. Its old tombstone
                    # goes in the same commit so the next outcome is recorded.
                    self.ledger.forget(item.delivery_id, session=s)
                rearmed += result.rowcount
            s.commit()
        if rearmed:
            logger.info("Re-armed %d webhook items for retry", rearmed)
        return rearmed
