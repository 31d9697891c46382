"""Webhook ingestion models: the work queue, the delivery ledger, retention settings."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from ghmirror.timeutil import utcnow

# WebhookQueueItem.status
PENDING = "pending"
PROCESSING = "processing"
PROCESSED = "processed"
FAILED = "failed"
DEAD_LETTER = "dead_letter"

TERMINAL_STATUSES = (PROCESSED, DEAD_LETTER)

# WebhookDelivery.status
DELIVERY_PROCESSED = "processed"
DELIVERY_FAILED = "failed"


class WebhookQueueItem(SQLModel, table=True):
    """One row per webhook delivery waiting for, or done with, processing.

    The delivery ID is unique, so a redelivery of an in-flight event cannot
    create a second row.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: str = Field(unique=True, index=True)
    event: str = Field(index=True)
    action: Optional[str] = None
    payload: str  # raw JSON body as received

    status: str = Field(default=PENDING, index=True)
    attempts: int = 0
    max_attempts: int = 5
    next_retry_at: Optional[datetime] = Field(default=None, index=True)
    last_error: Optional[str] = None

    owner_user_id: int = Field(default=1, index=True)

    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class WebhookDelivery(SQLModel, table=True):
    """Tombstone for a delivery that reached a terminal outcome. Never updated."""

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: str = Field(unique=True, index=True)
    event: str
    action: Optional[str] = None
    status: str  # "processed" or "failed"
    error: Optional[str] = None
    payload: Optional[str] = None  # kept for failed deliveries only, for replay
    processed_at: datetime = Field(default_factory=utcnow, index=True)


class UserSettings(SQLModel, table=True):
    """Per-user retention preferences for webhook queue records."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(unique=True, index=True)
    # True: keep processed/dead-letter items for retention_days.
    # False: delete processed items as soon as they succeed.
    webhook_debug_retention: bool = True
    retention_days: Optional[int] = None  # None → Settings.retention_days
