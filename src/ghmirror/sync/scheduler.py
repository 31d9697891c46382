"""
SyncScheduler: runs due sync jobs against the GitHub pull API.

One run:
  1. failed jobs whose retry is due (and that have attempts left) → pending
  2. running jobs whose heartbeat stopped → pending, progress kept
  3. due pending jobs are claimed, lowest priority value first

Per claimed job:
  - the rate-limit tracker is consulted first and again before every later
    step; a denial hands the job back until the reset time without using
    an attempt, and its progress is kept
  - a repo_sync whose SyncState is still fresh completes immediately
  - steps run from completed_steps; progress is checkpointed after every
    step and sub-unit; cancellation is checked before each step
  - every API response updates the tracker through the client's hook

Outcomes:
  success    → completed, SyncState idle with last_synced_at / last_etag
  transient  → failed with backoff (rate-limit errors wait for the reset)
  permanent  → failed with attempts = max_attempts, never retried
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from ghmirror.errors import classify_error
from ghmirror.github.client import GitHubClient
from ghmirror.github.rate_limit import RateLimitTracker
from ghmirror.github.sync_state import SyncStateStore
from ghmirror.mirror.store import MirrorStore
from ghmirror.models.sync import SyncJob
from ghmirror.retry import RetryPolicy
from ghmirror.sync.jobs import SyncJobStore
from ghmirror.sync.steps import StepContext, plan_for
from ghmirror.timeutil import utcnow

logger = logging.getLogger(__name__)

# run_job outcomes
JOB_OUTCOME_COMPLETED = "completed"
JOB_OUTCOME_FRESH = "fresh"
JOB_OUTCOME_DEFERRED = "deferred"
JOB_OUTCOME_FAILED = "failed"
JOB_OUTCOME_CANCELLED = "cancelled"
JOB_OUTCOME_ALREADY_CLAIMED = "already_claimed"

# client_factory(user_id, on_response) -> GitHubClient
ClientFactory = Callable[[int, Callable[[Mapping[str, str]], object]], GitHubClient]


@dataclass
class SchedulerRunSummary:
    completed: int = 0
    deferred: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    total: int = 0


class SyncScheduler:
    """Claims and executes sync jobs."""

    def __init__(
        self,
        jobs: SyncJobStore,
        tracker: RateLimitTracker,
        sync_state: SyncStateStore,
        store: MirrorStore,
        client_factory: ClientFactory,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        freshness: timedelta = timedelta(minutes=5),
        stale_after: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.tracker = tracker
        self.sync_state = sync_state
        self.store = store
        self.client_factory = client_factory
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=jobs.max_attempts)
        self.freshness = freshness
        self.stale_after = stale_after
        self.clock = clock

    async def run_once(self, limit: int = 5) -> SchedulerRunSummary:
        """Run up to `limit` due jobs one after another."""
        now = self.clock()
        self.jobs.rearm_due_retries(now)
        self.jobs.recover_stale(self.stale_after, now)

        summary = SchedulerRunSummary()
        for job in self.jobs.next_due(now, limit=limit):
            summary.total += 1
            outcome = await self.run_job(job)
            if outcome in (JOB_OUTCOME_COMPLETED, JOB_OUTCOME_FRESH):
                summary.completed += 1
            elif outcome == JOB_OUTCOME_DEFERRED:
                summary.deferred += 1
            elif outcome == JOB_OUTCOME_FAILED:
                summary.failed += 1
            elif outcome == JOB_OUTCOME_CANCELLED:
                summary.cancelled += 1
            else:
                summary.skipped += 1
        if summary.total:
            logger.info(
                "Sync run: %d completed, %d deferred, %d failed, %d cancelled",
                summary.completed,
                summary.deferred,
                summary.failed,
                summary.cancelled,
            )
        return summary

    async def run_job(self, job: SyncJob) -> str:
        """Claim and execute one job. Returns one of the JOB_OUTCOME_* values."""
        if not self.jobs.claim(job.id, self.clock()):
            return JOB_OUTCOME_ALREADY_CLAIMED
        job = self.jobs.get(job.id)

        admission = self.tracker.admit(job.user_id)
        if not admission.allowed:
            self._defer(job, admission)
            return JOB_OUTCOME_DEFERRED

        try:
            plan = plan_for(job.job_type)
        except Exception as exc:
            return self._handle_failure(job, exc)

        def on_response(headers: Mapping[str, str]) -> None:
            self.tracker.record_from_response(job.user_id, headers)

        client = self.client_factory(job.user_id, on_response)
        ctx = StepContext(
            job=job,
            client=client,
            store=self.store,
            sync_state=self.sync_state,
            checkpoint=lambda cursor: None,
            items_fetched=job.items_fetched,
        )

        try:
            if job.completed_steps == 0 and plan.is_fresh and plan.is_fresh(ctx, self.freshness):
                self.jobs.complete(job.id, self.clock())
                logger.info("Sync job %s skipped; %s is fresh", job.id, job.resource_id)
                return JOB_OUTCOME_FRESH

            self.sync_state.mark_syncing(job.user_id, job.resource_type, job.resource_id)
            self.jobs.update_progress(
                job.id,
                current_step=job.current_step,
                completed_steps=job.completed_steps,
                step_cursor=job.step_cursor,
                total_steps=len(plan),
                now=self.clock(),
            )
            outcome = await self._run_steps(job, plan, ctx)
        except Exception as exc:
            return self._handle_failure(job, exc)
        finally:
            await client.aclose()

        if outcome == JOB_OUTCOME_DEFERRED:
            self.sync_state.mark_idle(job.user_id, job.resource_type, job.resource_id)
            return JOB_OUTCOME_DEFERRED
        if outcome == JOB_OUTCOME_COMPLETED and not self.jobs.complete(job.id, self.clock()):
            # Cancelled while the last step was running.
            outcome = JOB_OUTCOME_CANCELLED
        if outcome == JOB_OUTCOME_CANCELLED:
            self.sync_state.mark_idle(job.user_id, job.resource_type, job.resource_id)
            logger.info("Sync job %s stopped after cancellation", job.id)
            return JOB_OUTCOME_CANCELLED

        self.sync_state.mark_synced(
            job.user_id,
            job.resource_type,
            job.resource_id,
            etag=ctx.etag,
            rate_limit=self.tracker.get_last(job.user_id),
        )
        logger.info(
            "Sync job %s completed: %s %s (%d items)",
            job.id,
            job.job_type,
            job.resource_id or "*",
            ctx.items_fetched,
        )
        return JOB_OUTCOME_COMPLETED

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _run_steps(self, job: SyncJob, plan, ctx: StepContext) -> str:
        for index in range(job.completed_steps, len(plan)):
            if self.jobs.is_cancelled(job.id):
                return JOB_OUTCOME_CANCELLED
            if index > job.completed_steps:
                # The budget may have run out during the previous step.
                admission = self.tracker.admit(job.user_id)
                if not admission.allowed:
                    return JOB_OUTCOME_DEFERRED if self._defer(job, admission) else JOB_OUTCOME_CANCELLED

            name, step = plan.steps[index]
            # A cursor only belongs to the step it was written by.
            ctx.cursor = job.step_cursor if job.current_step == name else None

            def checkpoint(cursor, name=name, index=index):
                ctx.cursor = cursor
                self.jobs.update_progress(
                    job.id,
                    current_step=name,
                    completed_steps=index,
                    step_cursor=cursor,
                    items_fetched=ctx.items_fetched,
                    now=self.clock(),
                )

            ctx.checkpoint = checkpoint
            checkpoint(ctx.cursor)
            await step(ctx)
            self.jobs.update_progress(
                job.id,
                current_step=name,
                completed_steps=index + 1,
                step_cursor=None,
                items_fetched=ctx.items_fetched,
                now=self.clock(),
            )
            logger.debug("Sync job %s finished step %s", job.id, name)
        return JOB_OUTCOME_COMPLETED

    def _defer(self, job: SyncJob, admission) -> bool:
        """Hand a running job back until the budget resets. Progress is kept."""
        deferred = self.jobs.defer(job.id, admission.reset_at, self.clock())
        if deferred:
            logger.warning(
                "Sync job %s deferred until %s (rate budget %s)",
                job.id,
                admission.reset_at.isoformat(),
                admission.remaining,
            )
        return deferred

    def _handle_failure(self, job: SyncJob, exc: Exception) -> str:
        error = f"{type(exc).__name__}: {exc}"
        kind = classify_error(exc)
        # Progress written by the steps lives in the row, not in `job`.
        current = self.jobs.get(job.id) or job
        self.jobs.fail(current, error, kind, self.retry_policy, exc=exc, now=self.clock())
        self.sync_state.mark_error(job.user_id, job.resource_type, job.resource_id, error)

        failed = self.jobs.get(job.id) or current
        if failed.attempts >= failed.max_attempts:
            logger.error(
                "Sync job %s failed permanently at step %s (%s): %s",
                job.id,
                failed.current_step,
                kind,
                error,
            )
        else:
            logger.warning(
                "Sync job %s failed at step %s, retry %d/%d at %s: %s",
                job.id,
                failed.current_step,
                failed.attempts,
                failed.max_attempts,
                failed.next_run_at.isoformat() if failed.next_run_at else "-",
                error,
            )
        return JOB_OUTCOME_FAILED
