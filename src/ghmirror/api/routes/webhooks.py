"""Webhook receiver, queue operator actions and queue health."""
import json
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from ghmirror.services import Services, get_services
from ghmirror.timeutil import utcnow
from ghmirror.webhooks.health import derive_queue_health
from ghmirror.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()

QUEUE_ACTIONS = ("retry", "retry-all", "discard", "discard-all", "purge-all")


class QueueActionRequest(BaseModel):
    action: str
    item_id: Optional[int] = None


class QueueItemResponse(BaseModel):
    id: int
    delivery_id: str
    event: str
    action: Optional[str]
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    next_retry_at: Optional[datetime]
    failed_at: Optional[datetime]
    created_at: datetime


async def _process_queue(services: Services) -> None:
    """Background task: drain what is due. Errors are logged, never raised."""
    try:
        await services.processor.run_once(limit=services.settings.processor_batch_size)
    except Exception as exc:
        logger.error("Background queue run failed: %s", exc)


@router.post("/github", status_code=202)
async def receive_webhook(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    GitHub webhook endpoint.

    Verifies the signature, enqueues the delivery and returns right away;
    handling happens in a background processor run. Redeliveries of a known
    delivery ID answer 200 with duplicate=true.
    """
    secret = services.settings.webhook_secret
    if not secret:
        logger.error("Webhook received but no webhook secret is configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    body = await request.body()
    if not verify_signature(body, request.headers.get("x-hub-signature-256"), secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = request.headers.get("x-github-event")
    delivery_id = request.headers.get("x-github-delivery")
    if not event or not delivery_id:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event or X-GitHub-Delivery")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    repository = payload.get("repository") or {}
    owner = services.store.owner_of_repository(repository.get("full_name"))
    result = services.queue.enqueue(
        delivery_id,
        event,
        payload.get("action"),
        body.decode("utf-8"),
        owner_user_id=owner or services.settings.user_id,
    )
    if result.queued:
        background_tasks.add_task(_process_queue, services)
    else:
        response.status_code = 200
    return {"queued": result.queued, "duplicate": result.duplicate}


@router.get("/queue", response_model=List[QueueItemResponse])
def list_queue_problems(services: Services = Depends(get_services)):
    """Failed and dead-letter items with their last error, newest first."""
    return [QueueItemResponse(**item.model_dump()) for item in services.queue.list_problem_items()]


@router.post("/queue")
def queue_action(request: QueueActionRequest, services: Services = Depends(get_services)):
    """Operator actions. Each is idempotent and reports how many rows changed."""
    queue = services.queue
    if request.action not in QUEUE_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")
    if request.action in ("retry", "discard") and request.item_id is None:
        raise HTTPException(status_code=400, detail=f"{request.action} requires item_id")

    if request.action == "retry":
        count = queue.retry(request.item_id)
    elif request.action == "retry-all":
        count = queue.retry_all()
    elif request.action == "discard":
        count = queue.discard(request.item_id)
    elif request.action == "discard-all":
        count = queue.discard_all()
    else:
        summary = services.retention.purge(queue, services.ledger)
        return {"action": request.action, "count": summary.items, "deliveries": summary.deliveries}

    logger.info("Queue action %s affected %d items", request.action, count)
    return {"action": request.action, "count": count}


@router.post("/process")
async def process_queue(services: Services = Depends(get_services)):
    """Run the processor once in the request and report the counts."""
    summary = await services.processor.run_once(limit=services.settings.processor_batch_size)
    return {
        "processed": summary.processed,
        "failed": summary.failed,
        "dead_lettered": summary.dead_lettered,
        "skipped": summary.skipped,
        "total": summary.total,
    }


@router.get("/health")
def queue_health(services: Services = Depends(get_services)):
    """Backlog, age and dead-letter alerts for the webhook queue."""
    return derive_queue_health(services.queue.list_all(), utcnow()).as_dict()
