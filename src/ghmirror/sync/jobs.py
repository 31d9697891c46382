"""
SyncJobStore: persistence and state transitions for SyncJob rows.

    pending ──claim──▶ running ──▶ completed
       ▲                  │
       │                  ├──▶ failed ──(retry due, attempts left)──▶ pending
       │                  └──▶ cancelled
       └──defer (rate budget low) / stale heartbeat──┘

Claims and transitions are conditional UPDATEs on the current state. Only one
pending/running job may exist per job_key; the partial unique index on
SyncJob enforces it and request_job() folds a concurrent insert into the
existing job.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ghmirror.errors import PERMANENT
from ghmirror.models.sync import (
    ACTIVE_JOB_STATES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    SyncJob,
    job_key,
)
from ghmirror.retry import RetryPolicy
from ghmirror.timeutil import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 10


class SyncJobStore:
    """Storage for sync jobs. Every method opens its own session."""

    def __init__(self, engine, max_attempts: int = 3):
        self.engine = engine
        self.max_attempts = max_attempts

    # ─── Requests ─────────────────────────────────────────────────────────────

    def request_job(
        self,
        job_type: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        user_id: int = 1,
        *,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: Optional[int] = None,
        total_steps: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[SyncJob, bool]:
        """Create a pending job, or return the active one with the same key.

        Returns (job, created). A more urgent request raises the priority of
        a coalesced pending job; it never lowers it.
        """
        now = now or utcnow()
        key = job_key(job_type, resource_type, resource_id, user_id)

        existing = self.get_active(key)
        if existing is not None:
            return self._coalesce(existing, priority, now), False

        job = SyncJob(
            job_type=job_type,
            resource_type=resource_type,
            resource_id=resource_id,
            job_key=key,
            user_id=user_id,
            state=JOB_PENDING,
            priority=priority,
            next_run_at=now,
            total_steps=total_steps,
            max_attempts=max_attempts or self.max_attempts,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as s:
            s.add(job)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                job = None
            else:
                s.refresh(job)

        if job is None:
            # Lost the insert race to another requester.
            existing = self.get_active(key)
            if existing is None:
                raise RuntimeError(f"Sync job {key} conflicted but no active job was found")
            return self._coalesce(existing, priority, now), False

        logger.info(
            "Sync job %s requested: %s %s/%s (priority %d)",
            job.id,
            job_type,
            resource_type,
            resource_id or "*",
            priority,
        )
        return job, True

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, job_id: int) -> Optional[SyncJob]:
        with Session(self.engine) as s:
            return s.get(SyncJob, job_id)

    def get_active(self, key: str) -> Optional[SyncJob]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncJob)
                .where(SyncJob.job_key == key)
                .where(SyncJob.state.in_(ACTIVE_JOB_STATES))
            ).first()

    def list_jobs(
        self,
        *,
        state: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[SyncJob]:
        """Most recently created first."""
        with Session(self.engine) as s:
            query = select(SyncJob)
            if state is not None:
                query = query.where(SyncJob.state == state)
            if user_id is not None:
                query = query.where(SyncJob.user_id == user_id)
            return list(
                s.exec(query.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit)).all()
            )

    def next_due(self, now: Optional[datetime] = None, limit: int = 1) -> List[SyncJob]:
        """Due pending jobs: lowest priority value first, then earliest next_run_at."""
        now = now or utcnow()
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncJob)
                    .where(SyncJob.state == JOB_PENDING)
                    .where(or_(SyncJob.next_run_at.is_(None), SyncJob.next_run_at <= now))
                    .order_by(SyncJob.priority, SyncJob.next_run_at, SyncJob.id)
                    .limit(limit)
                ).all()
            )

    def is_cancelled(self, job_id: int) -> bool:
        job = self.get(job_id)
        return job is None or job.state == JOB_CANCELLED

    # ─── Scheduler transitions ────────────────────────────────────────────────

    def claim(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """Atomically move pending → running. False if another worker won."""
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncJob)
                .where(SyncJob.id == job_id)
                .where(SyncJob.state == JOB_PENDING)
                .values(
                    state=JOB_RUNNING,
                    started_at=now,
                    heartbeat_at=now,
                    error=None,
                    updated_at=now,
                )
            )
            s.commit()
            return result.rowcount == 1

    def defer(self, job_id: int, run_at: datetime, now: Optional[datetime] = None) -> bool:
        """Give a claimed job back without consuming an attempt."""
        now = now or utcnow()
        return self._transition(
            job_id,
            JOB_RUNNING,
            state=JOB_PENDING,
            next_run_at=run_at,
            started_at=None,
            heartbeat_at=None,
            updated_at=now,
        )

    def update_progress(
        self,
        job_id: int,
        *,
        current_step: Optional[str],
        completed_steps: int,
        step_cursor: Optional[str] = None,
        items_fetched: Optional[int] = None,
        total_steps: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Checkpoint a running job. Doubles as its heartbeat."""
        now = now or utcnow()
        values = dict(
            current_step=current_step,
            completed_steps=completed_steps,
            step_cursor=step_cursor,
            heartbeat_at=now,
            updated_at=now,
        )
        if items_fetched is not None:
            values["items_fetched"] = items_fetched
        if total_steps is not None:
            values["total_steps"] = total_steps
        return self._transition(job_id, JOB_RUNNING, **values)

    def complete(self, job_id: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            total = job.total_steps if job else None
        values = dict(
            state=JOB_COMPLETED,
            current_step=None,
            step_cursor=None,
            error=None,
            completed_at=now,
            updated_at=now,
        )
        if total is not None:
            values["completed_steps"] = total
        return self._transition(job_id, JOB_RUNNING, **values)

    def fail(
        self,
        job: SyncJob,
        error: str,
        kind: str,
        retry_policy: RetryPolicy,
        *,
        exc: Optional[BaseException] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record a failed run. Step progress is kept for the next attempt.

        Transient failures consume one attempt and get a backoff (or the
        provider's reset time for rate-limit errors). Permanent failures use
        up the whole budget so the job is never retried.
        """
        now = now or utcnow()
        if kind == PERMANENT:
            attempts = job.max_attempts
            next_run_at = None
        else:
            attempts = job.attempts + 1
            next_run_at = retry_policy.next_retry_at(attempts, now, exc)
        return self._transition(
            job.id,
            JOB_RUNNING,
            state=JOB_FAILED,
            attempts=attempts,
            error=error,
            next_run_at=next_run_at,
            updated_at=now,
        )

    def cancel(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """Cancel a pending, running or failed job.

        A running job notices at its next step boundary.
        """
        now = now or utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncJob)
                .where(SyncJob.id == job_id)
                .where(SyncJob.state.in_([JOB_PENDING, JOB_RUNNING, JOB_FAILED]))
                .values(state=JOB_CANCELLED, completed_at=now, updated_at=now)
            )
            s.commit()
        if result.rowcount:
            logger.info("Sync job %s cancelled", job_id)
        return result.rowcount == 1

    def rearm_due_retries(self, now: Optional[datetime] = None) -> int:
        """failed → pending for jobs with attempts left whose retry time passed."""
        now = now or utcnow()
        with Session(self.engine) as s:
            candidates = s.exec(
                select(SyncJob)
                .where(SyncJob.state == JOB_FAILED)
                .where(SyncJob.attempts < SyncJob.max_attempts)
                .where(SyncJob.next_run_at.is_not(None))
                .where(SyncJob.next_run_at <= now)
            ).all()
            keys = [(job.id, job.job_key) for job in candidates]

        rearmed = 0
        for job_id, key in keys:
            with Session(self.engine) as s:
                try:
                    result = s.exec(
                        update(SyncJob)
                        .where(SyncJob.id == job_id)
                        .where(SyncJob.state == JOB_FAILED)
                        .values(state=JOB_PENDING, updated_at=now)
                    )
                    s.commit()
                except IntegrityError:
                    # A fresh request for the same resource is already active;
                    # that job covers this one.
                    s.rollback()
                    logger.info("Sync job %s superseded by an active %s job", job_id, key)
                    continue
                rearmed += result.rowcount
        return rearmed

    def recover_stale(self, stale_after: timedelta, now: Optional[datetime] = None) -> int:
        """running → pending for jobs whose heartbeat stopped. Progress is kept."""
        now = now or utcnow()
        cutoff = now - stale_after
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncJob)
                .where(SyncJob.state == JOB_RUNNING)
                .where(SyncJob.heartbeat_at < cutoff)
                .values(state=JOB_PENDING, next_run_at=now, heartbeat_at=None, updated_at=now)
            )
            s.commit()
        if result.rowcount:
            logger.warning("Recovered %d stale sync jobs", result.rowcount)
        return result.rowcount

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _transition(self, job_id: int, from_state: str, **values) -> bool:
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncJob)
                .where(SyncJob.id == job_id)
                .where(SyncJob.state == from_state)
                .values(**values)
            )
            s.commit()
            return result.rowcount == 1

    def _coalesce(self, job: SyncJob, priority: int, now: datetime) -> SyncJob:
        if job.state == JOB_PENDING and priority < job.priority:
            with Session(self.engine) as s:
                s.exec(
                    update(SyncJob)
                    .where(SyncJob.id == job.id)
                    .where(SyncJob.state == JOB_PENDING)
                    .where(SyncJob.priority > priority)
                    .values(priority=priority, updated_at=now)
                )
                s.commit()
            return self.get(job.id) or job
        logger.debug("Sync request coalesced into job %s", job.id)
        return job
