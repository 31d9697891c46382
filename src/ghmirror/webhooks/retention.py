"""
Retention of settled webhook records.

Per-user choice (UserSettings.webhook_debug_retention):
  True  → processed and dead-letter items stay in the queue for retention_days
  False → processed items are deleted as soon as they succeed

Retention never affects dedup: the ledger keeps its tombstone for at least
the longest configured window, and a queue item that still exists blocks
redeliveries on its own.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlmodel import Session, select

from ghmirror.models.webhook import UserSettings
from ghmirror.timeutil import utcnow
from ghmirror.webhooks.ledger import DeliveryLedger
from ghmirror.webhooks.queue import WebhookQueue

logger = logging.getLogger(__name__)


@dataclass
class PurgeSummary:
    items: int = 0
    deliveries: int = 0


class RetentionPolicy:
    def __init__(self, engine, default_days: int = 7):
        self.engine = engine
        self.default_days = default_days

    def get_preferences(self, user_id: int) -> Optional[UserSettings]:
        with Session(self.engine) as s:
            return s.exec(select(UserSettings).where(UserSettings.user_id == user_id)).first()

    def set_preferences(
        self,
        user_id: int,
        *,
        webhook_debug_retention: bool,
        retention_days: Optional[int] = None,
    ) -> UserSettings:
        with Session(self.engine) as s:
            prefs = s.exec(select(UserSettings).where(UserSettings.user_id == user_id)).first()
            if prefs is None:
                prefs = UserSettings(user_id=user_id)
            prefs.webhook_debug_retention = webhook_debug_retention
            prefs.retention_days = retention_days
            s.add(prefs)
            s.commit()
            s.refresh(prefs)
            return prefs

    def keeps_processed(self, user_id: int) -> bool:
        """False means delete the queue item immediately after success."""
        prefs = self.get_preferences(user_id)
        return True if prefs is None else prefs.webhook_debug_retention

    def purge(
        self,
        queue: WebhookQueue,
        ledger: DeliveryLedger,
        now: Optional[datetime] = None,
    ) -> PurgeSummary:
        """Delete terminal queue items and ledger records past their window."""
        now = now or utcnow()
        with Session(self.engine) as s:
            custom = s.exec(
                select(UserSettings).where(UserSettings.retention_days.is_not(None))
            ).all()

        by_days: Dict[int, list] = {}
        for prefs in custom:
            by_days.setdefault(prefs.retention_days, []).append(prefs.user_id)

        summary = PurgeSummary()
        for days, user_ids in by_days.items():
            summary.items += queue.purge_terminal(now - timedelta(days=days), owner_user_ids=user_ids)

        configured = [uid for ids in by_days.values() for uid in ids]
        summary.items += queue.purge_terminal(
            now - timedelta(days=self.default_days),
            exclude_owner_user_ids=configured,
        )

        longest = max([self.default_days, *by_days.keys()])
        summary.deliveries = ledger.purge_older_than(now - timedelta(days=longest))

        logger.info(
            "Retention purge removed %d queue items and %d ledger records",
            summary.items,
            summary.deliveries,
        )
        return summary
