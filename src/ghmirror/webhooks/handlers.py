"""
Webhook event handlers and the registry that routes events to them.

Each handler receives a WebhookContext and turns the payload into idempotent
MirrorStore upserts. Handlers never touch queue state; they either return
(success) or raise. TransientError/PermanentError state the class of failure
explicitly; anything else is classified by ghmirror.errors.classify_error.

Events without a registered handler are acknowledged as IGNORED, so new
GitHub event types never end up in the dead-letter queue.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ghmirror.errors import PermanentError
from ghmirror.mirror.store import MirrorStore
from ghmirror.models.mirror import PullRequest, Repository
from ghmirror.models.sync import PR_DETAIL_SYNC
from ghmirror.sync.jobs import SyncJobStore
from ghmirror.sync.steps import RESOURCE_TYPES, plan_for

logger = logging.getLogger(__name__)

HANDLED = "handled"
IGNORED = "ignored"

PULL_REQUEST_ACTIONS = frozenset(
    {
        "opened",
        "edited",
        "closed",
        "reopened",
        "synchronize",
        "ready_for_review",
        "converted_to_draft",
        "labeled",
        "unlabeled",
        "assigned",
        "unassigned",
        "review_requested",
        "review_request_removed",
        "locked",
        "unlocked",
        "milestoned",
        "demilestoned",
        "auto_merge_enabled",
        "auto_merge_disabled",
        "enqueued",
        "dequeued",
    }
)


@dataclass
class WebhookContext:
    """Everything a handler may use. The payload is already parsed JSON."""

    store: MirrorStore
    event: str
    action: Optional[str]
    payload: Dict[str, Any]
    delivery_id: Optional[str] = None
    user_id: int = 1
    jobs: Optional[SyncJobStore] = None


Handler = Callable[[WebhookContext], Awaitable[None]]


class HandlerRegistry:
    """Maps event names to handler coroutines."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, event: str) -> Callable[[Handler], Handler]:
        """Decorator: @registry.register("pull_request")."""

        def decorator(fn: Handler) -> Handler:
            self._handlers[event] = fn
            return fn

        return decorator

    def add(self, event: str, handler: Handler) -> None:
        self._handlers[event] = handler

    def get(self, event: str) -> Optional[Handler]:
        return self._handlers.get(event)

    def events(self):
        return sorted(self._handlers)

    def copy(self) -> "HandlerRegistry":
        clone = HandlerRegistry()
        clone._handlers = dict(self._handlers)
        return clone


class EventDispatcher:
    """Routes (event, action, payload) to the registered handler."""

    def __init__(
        self,
        store: MirrorStore,
        registry: Optional[HandlerRegistry] = None,
        jobs: Optional[SyncJobStore] = None,
    ):
        self.store = store
        self.registry = registry or default_registry
        self.jobs = jobs

    async def dispatch(
        self,
        event: str,
        action: Optional[str],
        payload: Dict[str, Any],
        *,
        delivery_id: Optional[str] = None,
        user_id: int = 1,
    ) -> str:
        """Run the handler for event. Returns HANDLED or IGNORED; raises on failure."""
        if not isinstance(payload, dict):
            raise PermanentError(f"{event} payload is not a JSON object")
        handler = self.registry.get(event)
        if handler is None:
            logger.info("Unhandled webhook event %s (action=%s); acknowledging", event, action)
            return IGNORED
        ctx = WebhookContext(
            store=self.store,
            event=event,
            action=action,
            payload=payload,
            delivery_id=delivery_id,
            user_id=user_id,
            jobs=self.jobs,
        )
        await handler(ctx)
        return HANDLED


default_registry = HandlerRegistry()


# ─── Shared lookups ───────────────────────────────────────────────────────────


def _require(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise PermanentError(f"payload has no '{key}' object")
    return value


def _ensure_repository(ctx: WebhookContext) -> Repository:
    """Upsert the repository the event is about (auto-tracks unknown repos)."""
    return ctx.store.upsert_repository(
        _require(ctx.payload, "repository"), user_id=ctx.user_id, from_webhook=True
    )


def _ensure_pull_request(ctx: WebhookContext, repo: Repository) -> PullRequest:
    return ctx.store.upsert_pull_request(
        _require(ctx.payload, "pull_request"), repo, delivery_id=ctx.delivery_id
    )


def _request_pull_sync(ctx: WebhookContext, repo: Repository, number: int) -> None:
    resource_id = f"{repo.full_name}#{number}"
    if ctx.jobs is None:
        logger.info("PR %s not mirrored yet; skipping comment", resource_id)
        return
    job, created = ctx.jobs.request_job(
        PR_DETAIL_SYNC,
        RESOURCE_TYPES[PR_DETAIL_SYNC],
        resource_id,
        repo.user_id,
        total_steps=len(plan_for(PR_DETAIL_SYNC)),
    )
    logger.info(
        "PR %s not mirrored yet; %s detail sync job %s",
        resource_id,
        "requested" if created else "coalesced into",
        job.id,
    )


# ─── Handlers ─────────────────────────────────────────────────────────────────


@default_registry.register("ping")
async def handle_ping(ctx: WebhookContext) -> None:
    logger.info("Received ping webhook (hook %s)", ctx.payload.get("hook_id"))


@default_registry.register("pull_request")
async def handle_pull_request(ctx: WebhookContext) -> None:
    if ctx.action not in PULL_REQUEST_ACTIONS:
        raise PermanentError(f"unsupported pull_request action: {ctx.action}")
    repo = _ensure_repository(ctx)
    pr = _ensure_pull_request(ctx, repo)
    logger.debug("Mirrored PR %s#%s (%s)", repo.full_name, pr.number, ctx.action)


@default_registry.register("pull_request_review")
async def handle_pull_request_review(ctx: WebhookContext) -> None:
    repo = _ensure_repository(ctx)
    pr = _ensure_pull_request(ctx, repo)
    ctx.store.upsert_review(_require(ctx.payload, "review"), pr)


@default_registry.register("pull_request_review_comment")
async def handle_pull_request_review_comment(ctx: WebhookContext) -> None:
    comment = _require(ctx.payload, "comment")
    if ctx.action == "deleted":
        ctx.store.mark_comment_deleted(int(comment["id"]))
        return
    repo = _ensure_repository(ctx)
    pr = _ensure_pull_request(ctx, repo)
    ctx.store.upsert_comment(comment, repo, "pr_review_comment", pull_request=pr)


@default_registry.register("issues")
async def handle_issues(ctx: WebhookContext) -> None:
    repo = _ensure_repository(ctx)
    ctx.store.upsert_issue(_require(ctx.payload, "issue"), repo, from_webhook=True)


@default_registry.register("issue_comment")
async def handle_issue_comment(ctx: WebhookContext) -> None:
    """Conversation comments arrive as issue_comment for both issues and PRs.

    GitHub marks the PR case with issue.pull_request; those comments belong
    to the mirrored pull request, not to an issue row.
    """
    comment = _require(ctx.payload, "comment")
    if ctx.action == "deleted":
        ctx.store.mark_comment_deleted(int(comment["id"]))
        return

    issue_obj = _require(ctx.payload, "issue")
    repo = _ensure_repository(ctx)
    if issue_obj.get("pull_request"):
        number = int(issue_obj["number"])
        pr = ctx.store.get_pull_request(repo.id, number)
        if pr is None:
            # The issue object carries the issue id, not the PR id, so the PR
            # row can't be created from here. The detail sync fetches the PR
            # with this comment included.
            _request_pull_sync(ctx, repo, number)
            return
        ctx.store.upsert_comment(comment, repo, "pr_issue_comment", pull_request=pr)
    else:
        issue = ctx.store.upsert_issue(issue_obj, repo, from_webhook=True)
        ctx.store.upsert_comment(comment, repo, "issue", issue=issue)


@default_registry.register("push")
async def handle_push(ctx: WebhookContext) -> None:
    repo = _ensure_repository(ctx)
    commits = ctx.payload.get("commits") or []
    for commit in commits:
        ctx.store.upsert_commit(commit, repo)
    logger.debug("Mirrored %d commits for %s %s", len(commits), repo.full_name, ctx.payload.get("ref"))


@default_registry.register("repository")
async def handle_repository(ctx: WebhookContext) -> None:
    if ctx.action == "deleted":
        # Deleting mirrored history is left to the operator.
        logger.info("Repository %s deleted upstream", _require(ctx.payload, "repository").get("full_name"))
        return
    _ensure_repository(ctx)


@default_registry.register("organization")
async def handle_organization(ctx: WebhookContext) -> None:
    org = _require(ctx.payload, "organization")
    if ctx.action == "deleted":
        logger.info("Organization %s deleted upstream", org.get("login"))
        return
    ctx.store.upsert_organization(org, user_id=ctx.user_id)
