"""Pull-side models: sync jobs, per-resource sync state, rate-limit snapshots."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from ghmirror.timeutil import utcnow

# SyncJob.state
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

ACTIVE_JOB_STATES = (JOB_PENDING, JOB_RUNNING)

# SyncJob.job_type
OVERVIEW_SYNC = "overview_sync"
REPO_SYNC = "repo_sync"
PR_DETAIL_SYNC = "pr_detail_sync"
ISSUE_SYNC = "issue_sync"

# SyncState.sync_status
SYNC_IDLE = "idle"
SYNC_SYNCING = "syncing"
SYNC_ERROR = "error"


def job_key(job_type: str, resource_type: str, resource_id: Optional[str], user_id: int) -> str:
    """Coalescing key: one active job per (type, resource, user)."""
    return f"{user_id}:{job_type}:{resource_type}:{resource_id or '*'}"


class SyncJob(SQLModel, table=True):
    """A resumable pull-based reconciliation job.

    Steps run in order; completed_steps is the checkpoint and step_cursor the
    position inside the current step, so a retried or recovered job resumes
    where it stopped.
    """

    __table_args__ = (
        # Only one pending/running job per key. Enforced by the DB so two
        # workers requesting the same sync cannot both insert.
        Index(
            "uq_syncjob_active_key",
            "job_key",
            unique=True,
            sqlite_where=text("state IN ('pending', 'running')"),
            postgresql_where=text("state IN ('pending', 'running')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    job_type: str = Field(index=True)
    resource_type: str
    resource_id: Optional[str] = None
    job_key: str = Field(index=True)
    user_id: int = Field(default=1, index=True)

    state: str = Field(default=JOB_PENDING, index=True)
    priority: int = 10  # lower runs sooner
    next_run_at: Optional[datetime] = Field(default_factory=utcnow, index=True)

    current_step: Optional[str] = None
    completed_steps: int = 0
    total_steps: Optional[int] = None
    step_cursor: Optional[str] = None
    items_fetched: int = 0

    attempts: int = 0
    max_attempts: int = 3
    error: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncState(SQLModel, table=True):
    """Freshness bookkeeping per (user, resource_type, resource_id)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(default=1, index=True)
    resource_type: str = Field(index=True)  # "orgs", "repos", "repo", "pulls", ...
    resource_id: Optional[str] = Field(default=None, index=True)

    last_synced_at: Optional[datetime] = None
    last_etag: Optional[str] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset_at: Optional[datetime] = None
    sync_status: str = SYNC_IDLE
    sync_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RateLimitSnapshot(SQLModel, table=True):
    """Last rate-limit headers seen for a user. Overwritten on every response."""

    user_id: int = Field(primary_key=True)
    remaining: int
    limit: int
    reset_at: datetime
    used: int = 0
    recorded_at: datetime = Field(default_factory=utcnow)
