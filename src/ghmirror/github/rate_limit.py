"""
RateLimitTracker: last known GitHub rate-limit budget per user.

Every pull-API response (success or error) is fed through
record_from_response(); the scheduler calls admit() before starting a job
and again before each of its steps.
Admission is advisory: the API may still answer 403/429, which the scheduler
treats as a transient failure retried at the reported reset time.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ghmirror.models.sync import RateLimitSnapshot
from ghmirror.timeutil import from_epoch, utcnow

logger = logging.getLogger(__name__)

HEADER_REMAINING = "x-ratelimit-remaining"
HEADER_LIMIT = "x-ratelimit-limit"
HEADER_RESET = "x-ratelimit-reset"
HEADER_USED = "x-ratelimit-used"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reset_at: Optional[datetime] = None
    remaining: Optional[int] = None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts (tests, cached responses) may not be case-insensitive.
        value = headers.get(name.title())
    return value


class RateLimitTracker:
    """Keyed store of RateLimitSnapshot rows. Last write wins."""

    def __init__(
        self,
        engine,
        safety_margin: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.safety_margin = safety_margin
        self.clock = clock

    def record_from_response(
        self, user_id: int, headers: Mapping[str, str]
    ) -> Optional[RateLimitSnapshot]:
        """Overwrite the user's snapshot from response headers.

        Returns None (and keeps the previous snapshot) if the response carried
        no rate-limit headers, as with some 5xx responses.
        """
        remaining = _header(headers, HEADER_REMAINING)
        limit = _header(headers, HEADER_LIMIT)
        reset = _header(headers, HEADER_RESET)
        if remaining is None or limit is None or reset is None:
            return None
        try:
            values = dict(
                remaining=int(remaining),
                limit=int(limit),
                reset_at=from_epoch(reset),
                used=int(_header(headers, HEADER_USED) or 0),
                recorded_at=self.clock(),
            )
        except ValueError:
            logger.warning("Ignoring malformed rate-limit headers for user %s", user_id)
            return None

        with Session(self.engine) as s:
            snapshot = s.get(RateLimitSnapshot, user_id)
            if snapshot is None:
                s.add(RateLimitSnapshot(user_id=user_id, **values))
                try:
                    s.commit()
                except IntegrityError:
                    # Another worker wrote the first snapshot; overwrite it.
                    s.rollback()
                    snapshot = s.get(RateLimitSnapshot, user_id)
            if snapshot is not None:
                for k, v in values.items():
                    setattr(snapshot, k, v)
                s.add(snapshot)
                s.commit()
            return s.get(RateLimitSnapshot, user_id)

    def get_last(self, user_id: int) -> Optional[RateLimitSnapshot]:
        with Session(self.engine) as s:
            return s.get(RateLimitSnapshot, user_id)

    def admit(self, user_id: int) -> Admission:
        """Allow a pull call unless the known budget is at or below the margin.

        With no snapshot yet, or once the reset time has passed, the call is
        allowed; the response will refresh the snapshot.
        """
        snapshot = self.get_last(user_id)
        if snapshot is None:
            return Admission(allowed=True)
        if snapshot.remaining > self.safety_margin:
            return Admission(allowed=True, reset_at=snapshot.reset_at, remaining=snapshot.remaining)
        if snapshot.reset_at <= self.clock():
            return Admission(allowed=True, reset_at=snapshot.reset_at, remaining=snapshot.remaining)
        logger.warning(
            "Rate budget low for user %s (%d remaining); deferring until %s",
            user_id,
            snapshot.remaining,
            snapshot.reset_at.isoformat(),
        )
        return Admission(allowed=False, reset_at=snapshot.reset_at, remaining=snapshot.remaining)
