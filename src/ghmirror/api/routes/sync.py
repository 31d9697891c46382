"""Sync job request, status and cancellation routes."""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from ghmirror.models.sync import ISSUE_SYNC, OVERVIEW_SYNC, PR_DETAIL_SYNC, REPO_SYNC, SyncJob
from ghmirror.services import Services, get_services
from ghmirror.sync.steps import (
    RESOURCE_TYPES,
    numbered_resource_id,
    plan_for,
    repo_resource_id,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Explicit user requests jump ahead of the nightly overview sync.
USER_REQUEST_PRIORITY = 5


class SyncRequest(BaseModel):
    priority: Optional[int] = None
    user_id: Optional[int] = None


class SyncJobResponse(BaseModel):
    id: int
    job_type: str
    resource_type: str
    resource_id: Optional[str]
    user_id: int
    state: str
    priority: int
    next_run_at: Optional[datetime]
    current_step: Optional[str]
    completed_steps: int
    total_steps: Optional[int]
    items_fetched: int
    attempts: int
    max_attempts: int
    error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime


class RateLimitResponse(BaseModel):
    user_id: int
    known: bool
    remaining: Optional[int] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    reset_at: Optional[datetime] = None
    recorded_at: Optional[datetime] = None


def _job_response(job: SyncJob) -> SyncJobResponse:
    return SyncJobResponse(**job.model_dump())


async def _run_scheduler(services: Services) -> None:
    try:
        await services.scheduler.run_once()
    except Exception as exc:
        logger.error("Background sync run failed: %s", exc)


def _request(
    services: Services,
    background_tasks: BackgroundTasks,
    job_type: str,
    resource_id: Optional[str],
    body: Optional[SyncRequest],
    default_priority: int = USER_REQUEST_PRIORITY,
):
    body = body or SyncRequest()
    job, created = services.jobs.request_job(
        job_type,
        RESOURCE_TYPES[job_type],
        resource_id,
        body.user_id or services.settings.user_id,
        priority=body.priority if body.priority is not None else default_priority,
        total_steps=len(plan_for(job_type)),
    )
    if created:
        background_tasks.add_task(_run_scheduler, services)
    return {"created": created, "job": _job_response(job)}


@router.post("/overview", status_code=202)
def request_overview_sync(
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    services: Services = Depends(get_services),
):
    """Orgs, repos and open PR lists for the whole account."""
    return _request(services, background_tasks, OVERVIEW_SYNC, None, body)


@router.post("/repos/{owner}/{repo}", status_code=202)
def request_repo_sync(
    owner: str,
    repo: str,
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    services: Services = Depends(get_services),
):
    return _request(services, background_tasks, REPO_SYNC, repo_resource_id(owner, repo), body)


@router.post("/repos/{owner}/{repo}/pulls/{number}", status_code=202)
def request_pr_detail_sync(
    owner: str,
    repo: str,
    number: int,
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    services: Services = Depends(get_services),
):
    return _request(
        services, background_tasks, PR_DETAIL_SYNC, numbered_resource_id(owner, repo, number), body
    )


@router.post("/repos/{owner}/{repo}/issues/{number}", status_code=202)
def request_issue_sync(
    owner: str,
    repo: str,
    number: int,
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    services: Services = Depends(get_services),
):
    return _request(
        services, background_tasks, ISSUE_SYNC, numbered_resource_id(owner, repo, number), body
    )


@router.get("/jobs", response_model=List[SyncJobResponse])
def list_jobs(
    state: Optional[str] = None,
    limit: int = 50,
    services: Services = Depends(get_services),
):
    """Most recent jobs first."""
    return [_job_response(job) for job in services.jobs.list_jobs(state=state, limit=limit)]


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
def get_job(job_id: int, services: Services = Depends(get_services)):
    job = services.jobs.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return _job_response(job)


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobResponse)
def cancel_job(job_id: int, services: Services = Depends(get_services)):
    """Cancel a job. Re-cancelling, or cancelling a finished job, changes nothing."""
    job = services.jobs.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    services.jobs.cancel(job_id)
    return _job_response(services.jobs.get(job_id))


@router.get("/rate-limit", response_model=RateLimitResponse)
def rate_limit(user_id: Optional[int] = None, services: Services = Depends(get_services)):
    """Last rate-limit budget seen for the user."""
    uid = user_id or services.settings.user_id
    snapshot = services.tracker.get_last(uid)
    if snapshot is None:
        return RateLimitResponse(user_id=uid, known=False)
    return RateLimitResponse(
        user_id=uid,
        known=True,
        remaining=snapshot.remaining,
        limit=snapshot.limit,
        used=snapshot.used,
        reset_at=snapshot.reset_at,
        recorded_at=snapshot.recorded_at,
    )
