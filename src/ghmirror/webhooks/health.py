"""Queue health snapshot for the operator view: backlog, age, dead-letter growth."""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ghmirror.models.webhook import (
    DEAD_LETTER,
    FAILED,
    PENDING,
    PROCESSED,
    PROCESSING,
    WebhookQueueItem,
)

OK = "ok"
WARNING = "warning"
CRITICAL = "critical"

# (warning, critical) thresholds
PENDING_BACKLOG = (1_000, 10_000)
OLDEST_PENDING_AGE = (timedelta(minutes=5), timedelta(minutes=30))
DEAD_LETTER_SIZE = (25, 100)
DEAD_LETTER_GROWTH = (25, 100)
DEAD_LETTER_GROWTH_WINDOW = timedelta(minutes=10)
PROCESSOR_STALE = (timedelta(minutes=5), timedelta(minutes=15))


@dataclass
class HealthAlert:
    code: str
    level: str
    message: str
    value: float
    threshold: float


@dataclass
class QueueHealth:
    health: str
    pending: int
    processing: int
    failed: int
    dead_letter: int
    oldest_pending_age_seconds: float
    last_processed_at: Optional[datetime]
    alerts: List[HealthAlert] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def _check(alerts: List[HealthAlert], code: str, message: str, value: float, thresholds) -> None:
    warning, critical = thresholds
    if value > critical:
        alerts.append(HealthAlert(f"{code}_critical", CRITICAL, message, value, critical))
    elif value > warning:
        alerts.append(HealthAlert(f"{code}_warning", WARNING, message, value, warning))


def derive_queue_health(items: Iterable[WebhookQueueItem], now: datetime) -> QueueHealth:
    """Summarize queue rows into counts, alerts and an overall level.

    Processor staleness is only reported while there is pending work.
    """
    items = list(items)
    pending = [i for i in items if i.status == PENDING]
    dead = [i for i in items if i.status == DEAD_LETTER]
    processed_times = [i.processed_at for i in items if i.status == PROCESSED and i.processed_at]

    oldest_age = max(((now - i.created_at).total_seconds() for i in pending), default=0.0)
    last_processed_at = max(processed_times, default=None)
    recent_dead = sum(
        1 for i in dead if i.failed_at and now - i.failed_at <= DEAD_LETTER_GROWTH_WINDOW
    )

    alerts: List[HealthAlert] = []
    _check(alerts, "pending_backlog", "Pending webhook backlog is high", len(pending), PENDING_BACKLOG)
    _check(
        alerts,
        "oldest_pending",
        "Oldest pending webhook is old",
        oldest_age,
        tuple(t.total_seconds() for t in OLDEST_PENDING_AGE),
    )
    _check(alerts, "dead_letter", "Dead-letter queue is large", len(dead), DEAD_LETTER_SIZE)
    _check(
        alerts,
        "dead_letter_growth",
        "Dead-letter queue is growing",
        recent_dead,
        DEAD_LETTER_GROWTH,
    )
    if pending:
        idle_for = (
            (now - last_processed_at).total_seconds()
            if last_processed_at
            else PROCESSOR_STALE[1].total_seconds() + 1
        )
        _check(
            alerts,
            "processor_stale",
            "Webhook processor has not processed items recently",
            idle_for,
            tuple(t.total_seconds() for t in PROCESSOR_STALE),
        )

    if any(a.level == CRITICAL for a in alerts):
        level = CRITICAL
    elif alerts:
        level = WARNING
    else:
        level = OK

    return QueueHealth(
        health=level,
        pending=len(pending),
        processing=sum(1 for i in items if i.status == PROCESSING),
        failed=sum(1 for i in items if i.status == FAILED),
        dead_letter=len(dead),
        oldest_pending_age_seconds=oldest_age,
        last_processed_at=last_processed_at,
        alerts=alerts,
    )
