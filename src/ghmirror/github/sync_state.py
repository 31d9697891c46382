"""Per-resource sync bookkeeping: status, last sync time, ETag, last budget seen."""
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmodel import Session, select

from ghmirror.models.sync import (
    SYNC_ERROR,
    SYNC_IDLE,
    SYNC_SYNCING,
    RateLimitSnapshot,
    SyncState,
)
from ghmirror.timeutil import utcnow


class SyncStateStore:
    """Find-or-create rows keyed by (user, resource_type, resource_id). Last write wins."""

    def __init__(self, engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def get(self, user_id: int, resource_type: str, resource_id: Optional[str] = None) -> Optional[SyncState]:
        with Session(self.engine) as s:
            return self._find(s, user_id, resource_type, resource_id)

    def mark_syncing(self, user_id: int, resource_type: str, resource_id: Optional[str] = None) -> SyncState:
        return self._write(
            user_id, resource_type, resource_id, sync_status=SYNC_SYNCING, sync_error=None
        )

    def mark_synced(
        self,
        user_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        *,
        etag: Optional[str] = None,
        rate_limit: Optional[RateLimitSnapshot] = None,
    ) -> SyncState:
        values = dict(sync_status=SYNC_IDLE, sync_error=None, last_synced_at=self.clock())
        if etag is not None:
            values["last_etag"] = etag
        if rate_limit is not None:
            values["rate_limit_remaining"] = rate_limit.remaining
            values["rate_limit_reset_at"] = rate_limit.reset_at
        return self._write(user_id, resource_type, resource_id, **values)

    def mark_idle(self, user_id: int, resource_type: str, resource_id: Optional[str] = None) -> SyncState:
        """Leave syncing without counting as a successful sync (e.g. cancelled)."""
        return self._write(user_id, resource_type, resource_id, sync_status=SYNC_IDLE)

    def mark_error(
        self, user_id: int, resource_type: str, resource_id: Optional[str], error: str
    ) -> SyncState:
        return self._write(user_id, resource_type, resource_id, sync_status=SYNC_ERROR, sync_error=error)

    def is_fresh(
        self,
        user_id: int,
        resource_type: str,
        resource_id: Optional[str],
        max_age: timedelta,
    ) -> bool:
        """True if the resource synced successfully within max_age."""
        state = self.get(user_id, resource_type, resource_id)
        if state is None or state.last_synced_at is None or state.sync_status == SYNC_ERROR:
            return False
        return self.clock() - state.last_synced_at < max_age

    def last_synced_at(self, user_id: int, resource_type: str, resource_id: Optional[str]) -> Optional[datetime]:
        state = self.get(user_id, resource_type, resource_id)
        return state.last_synced_at if state else None

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _find(s: Session, user_id: int, resource_type: str, resource_id: Optional[str]) -> Optional[SyncState]:
        query = (
            select(SyncState)
            .where(SyncState.user_id == user_id)
            .where(SyncState.resource_type == resource_type)
        )
        if resource_id is None:
            query = query.where(SyncState.resource_id.is_(None))
        else:
            query = query.where(SyncState.resource_id == resource_id)
        return s.exec(query).first()

    def _write(self, user_id: int, resource_type: str, resource_id: Optional[str], **values) -> SyncState:
        now = self.clock()
        with Session(self.engine) as s:
            state = self._find(s, user_id, resource_type, resource_id)
            if state is None:
                state = SyncState(
                    user_id=user_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    created_at=now,
                )
            for k, v in values.items():
                setattr(state, k, v)
            state.updated_at = now
            s.add(state)
            s.commit()
            s.refresh(state)
            return state
