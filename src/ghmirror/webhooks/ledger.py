"""
DeliveryLedger: permanent record of deliveries that reached a terminal outcome.

The ledger outlives the queue item: once a processed item is purged, its
ledger row is what stops a late provider redelivery from being applied twice.
Rows are written once and never updated.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ghmirror.models.webhook import DELIVERY_FAILED, WebhookDelivery
from ghmirror.timeutil import utcnow

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Dedup store keyed by provider delivery ID."""

    def __init__(self, engine):
        self.engine = engine

    def has_processed(self, delivery_id: str) -> bool:
        """True if the delivery already reached a terminal outcome."""
        with Session(self.engine) as s:
            row = s.exec(
                select(WebhookDelivery.id).where(WebhookDelivery.delivery_id == delivery_id)
            ).first()
        return row is not None

    def record_terminal(
        self,
        delivery_id: str,
        event: str,
        action: Optional[str],
        outcome: str,
        error: Optional[str] = None,
        payload: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Write the terminal record. Returns False if one already existed.

        The raw payload is only kept for failed deliveries so they can be
        replayed; processed deliveries never need it again.
        """
        record = self.new_record(delivery_id, event, action, outcome, error, payload, now=now)
        with Session(self.engine) as s:
            s.add(record)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.warning(
                    "Delivery %s already has a terminal record; ignoring %s outcome",
                    delivery_id,
                    outcome,
                )
                return False
        return True

    @staticmethod
    def new_record(
        delivery_id: str,
        event: str,
        action: Optional[str],
        outcome: str,
        error: Optional[str] = None,
        payload: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> WebhookDelivery:
        """Unsaved terminal record, for callers writing it in their own session."""
        return WebhookDelivery(
            delivery_id=delivery_id,
            event=event,
            action=action,
            status=outcome,
            error=error,
            payload=payload if outcome == DELIVERY_FAILED else None,
            processed_at=now or utcnow(),
        )

    def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        with Session(self.engine) as s:
            return s.exec(
                select(WebhookDelivery).where(WebhookDelivery.delivery_id == delivery_id)
            ).first()

    def list_failed(self, limit: int = 100) -> List[WebhookDelivery]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(WebhookDelivery)
                    .where(WebhookDelivery.status == DELIVERY_FAILED)
                    .order_by(WebhookDelivery.processed_at.desc())
                    .limit(limit)
                ).all()
            )

    def forget(self, delivery_id: str, session: Optional[Session] = None) -> int:
        """Drop the record for one delivery so an operator retry can settle it again.

        With a session, the delete joins the caller's transaction and is
        committed with it.
        """
        stmt = delete(WebhookDelivery).where(WebhookDelivery.delivery_id == delivery_id)
        if session is not None:
            return session.exec(stmt).rowcount
        with Session(self.engine) as s:
            result = s.exec(stmt)
            s.commit()
            return result.rowcount

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete records settled before cutoff. Returns the number removed."""
        with Session(self.engine) as s:
            result = s.exec(delete(WebhookDelivery).where(WebhookDelivery.processed_at < cutoff))
            s.commit()
            return result.rowcount
