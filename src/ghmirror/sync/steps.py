"""
Step plans for each sync job type.

A plan is an ordered list of named async steps. The scheduler runs them from
job.completed_steps onward, so every step must be safe to re-run: they only
do idempotent MirrorStore upserts and re-resolve the entities they need from
the store instead of relying on an earlier step having run in this process.

Long steps call ctx.checkpoint(cursor) after each sub-unit; on resume the
same step receives that cursor back in ctx.cursor and skips what it already
covered.

  overview_sync   orgs → repos → pulls
  repo_sync       repository → pulls → issues
  pr_detail_sync  pull → reviews → comments → commits
  issue_sync      issue → comments
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ghmirror.errors import PermanentError
from ghmirror.github.client import GitHubClient
from ghmirror.github.sync_state import SyncStateStore
from ghmirror.mirror.store import MirrorStore
from ghmirror.models.mirror import Issue, PullRequest, Repository
from ghmirror.models.sync import (
    ISSUE_SYNC,
    OVERVIEW_SYNC,
    PR_DETAIL_SYNC,
    REPO_SYNC,
    SyncJob,
)

logger = logging.getLogger(__name__)

# SyncJob.resource_type / SyncState.resource_type per job type
RESOURCE_ACCOUNT = "account"
RESOURCE_REPO = "repo"
RESOURCE_PULL = "pull"
RESOURCE_ISSUE = "issue"

# SyncState rows written by individual steps
STATE_ORGS = "orgs"
STATE_REPOS = "repos"
STATE_PULLS = "pulls"
STATE_ISSUES = "issues"

RESOURCE_TYPES = {
    OVERVIEW_SYNC: RESOURCE_ACCOUNT,
    REPO_SYNC: RESOURCE_REPO,
    PR_DETAIL_SYNC: RESOURCE_PULL,
    ISSUE_SYNC: RESOURCE_ISSUE,
}


@dataclass
class StepContext:
    job: SyncJob
    client: GitHubClient
    store: MirrorStore
    sync_state: SyncStateStore
    checkpoint: Callable[[Optional[str]], None]
    cursor: Optional[str] = None
    items_fetched: int = 0
    etag: Optional[str] = None

    @property
    def user_id(self) -> int:
        return self.job.user_id

    def fetched(self, count: int) -> None:
        self.items_fetched += count


Step = Callable[[StepContext], Awaitable[None]]


@dataclass
class StepPlan:
    steps: List[Tuple[str, Step]]
    # Checked before the first step; True completes the job with no API calls.
    is_fresh: Optional[Callable[[StepContext, timedelta], bool]] = None
    names: List[str] = field(init=False)

    def __post_init__(self):
        self.names = [name for name, _ in self.steps]

    def __len__(self) -> int:
        return len(self.steps)


# ─── Resource ids ─────────────────────────────────────────────────────────────


def repo_resource_id(owner: str, repo: str) -> str:
    return f"{owner}/{repo}"


def numbered_resource_id(owner: str, repo: str, number: int) -> str:
    return f"{owner}/{repo}#{number}"


def parse_numbered(resource_id: Optional[str]) -> Tuple[str, int]:
    """'owner/repo#42' → ('owner/repo', 42)."""
    full_name, sep, number = (resource_id or "").partition("#")
    if not sep or "/" not in full_name or not number.isdigit():
        raise PermanentError(f"invalid resource id: {resource_id!r}")
    return full_name, int(number)


def _repo_full_name(resource_id: Optional[str]) -> str:
    if not resource_id or "/" not in resource_id:
        raise PermanentError(f"invalid repository id: {resource_id!r}")
    return resource_id


# ─── Shared lookups ───────────────────────────────────────────────────────────


async def _repository(ctx: StepContext, full_name: str) -> Repository:
    repo = ctx.store.get_repository(full_name)
    if repo is not None:
        return repo
    response = await ctx.client.get_repository(full_name)
    ctx.fetched(1)
    return ctx.store.upsert_repository(response.data, user_id=ctx.user_id)


async def _pull_request(ctx: StepContext, repo: Repository, number: int) -> PullRequest:
    pr = ctx.store.get_pull_request(repo.id, number)
    if pr is not None:
        return pr
    response = await ctx.client.get_pull_request(repo.full_name, number)
    ctx.fetched(1)
    return ctx.store.upsert_pull_request(response.data, repo)


async def _issue(ctx: StepContext, repo: Repository, number: int) -> Issue:
    issue = ctx.store.get_issue(repo.id, number)
    if issue is not None:
        return issue
    response = await ctx.client.get_issue(repo.full_name, number)
    ctx.fetched(1)
    return ctx.store.upsert_issue(response.data, repo)


# ─── overview_sync ────────────────────────────────────────────────────────────


async def sync_organizations(ctx: StepContext) -> None:
    response = await ctx.client.list_organizations()
    for raw in response.data:
        ctx.store.upsert_organization(raw, user_id=ctx.user_id)
    ctx.fetched(len(response.data))
    ctx.sync_state.mark_synced(ctx.user_id, STATE_ORGS, None)


async def sync_repositories(ctx: StepContext) -> None:
    response = await ctx.client.list_repositories()
    for raw in response.data:
        ctx.store.upsert_repository(raw, user_id=ctx.user_id)
    ctx.fetched(len(response.data))
    ctx.sync_state.mark_synced(ctx.user_id, STATE_REPOS, None)


async def sync_repository_pulls(ctx: StepContext) -> None:
    """Open PR lists for every tracked repo, in full_name order.

    The cursor is the last repo handled. Repos with no push or update since
    their pull list was last synced are skipped without an API call.
    """
    for repo in ctx.store.list_repositories(ctx.user_id):
        if ctx.cursor is not None and repo.full_name <= ctx.cursor:
            continue
        if _pulls_up_to_date(ctx, repo):
            logger.debug("Skipping pulls for %s; unchanged since last sync", repo.full_name)
        else:
            await _sync_pulls(ctx, repo)
        ctx.checkpoint(repo.full_name)


def _pulls_up_to_date(ctx: StepContext, repo: Repository) -> bool:
    last = ctx.sync_state.last_synced_at(ctx.user_id, STATE_PULLS, repo.full_name)
    changed = repo.github_pushed_at or repo.github_updated_at
    return last is not None and changed is not None and changed <= last


async def _sync_pulls(ctx: StepContext, repo: Repository) -> None:
    response = await ctx.client.list_pull_requests(repo.full_name)
    for raw in response.data:
        ctx.store.upsert_pull_request(raw, repo)
    ctx.fetched(len(response.data))
    ctx.sync_state.mark_synced(ctx.user_id, STATE_PULLS, repo.full_name)


# ─── repo_sync ────────────────────────────────────────────────────────────────


def _repo_is_fresh(ctx: StepContext, max_age: timedelta) -> bool:
    return ctx.sync_state.is_fresh(ctx.user_id, RESOURCE_REPO, ctx.job.resource_id, max_age)


async def sync_repository(ctx: StepContext) -> None:
    """Conditional GET; a 304 leaves the mirrored row as it is."""
    full_name = _repo_full_name(ctx.job.resource_id)
    state = ctx.sync_state.get(ctx.user_id, RESOURCE_REPO, full_name)
    etag = state.last_etag if state else None
    if ctx.store.get_repository(full_name) is None:
        etag = None
    response = await ctx.client.get_repository(full_name, etag=etag)
    ctx.etag = response.etag
    if response.not_modified:
        logger.debug("Repository %s not modified", full_name)
        return
    ctx.store.upsert_repository(response.data, user_id=ctx.user_id)
    ctx.fetched(1)


async def sync_pulls(ctx: StepContext) -> None:
    repo = await _repository(ctx, _repo_full_name(ctx.job.resource_id))
    await _sync_pulls(ctx, repo)


async def sync_issues(ctx: StepContext) -> None:
    repo = await _repository(ctx, _repo_full_name(ctx.job.resource_id))
    response = await ctx.client.list_issues(repo.full_name)
    for raw in response.data:
        ctx.store.upsert_issue(raw, repo)
    ctx.fetched(len(response.data))
    ctx.sync_state.mark_synced(ctx.user_id, STATE_ISSUES, repo.full_name)


# ─── pr_detail_sync ───────────────────────────────────────────────────────────


async def sync_pull(ctx: StepContext) -> None:
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    response = await ctx.client.get_pull_request(full_name, number)
    ctx.store.upsert_pull_request(response.data, repo)
    ctx.fetched(1)


async def sync_reviews(ctx: StepContext) -> None:
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    pr = await _pull_request(ctx, repo, number)
    response = await ctx.client.list_reviews(full_name, number)
    for raw in response.data:
        ctx.store.upsert_review(raw, pr)
    ctx.fetched(len(response.data))


async def sync_pull_comments(ctx: StepContext) -> None:
    """Review (diff) comments, then conversation comments.

    Cursor "review" means the review comments are already stored.
    """
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    pr = await _pull_request(ctx, repo, number)

    if ctx.cursor != "review":
        response = await ctx.client.list_review_comments(full_name, number)
        for raw in response.data:
            ctx.store.upsert_comment(raw, repo, "pr_review_comment", pull_request=pr)
        ctx.fetched(len(response.data))
        ctx.checkpoint("review")

    response = await ctx.client.list_issue_comments(full_name, number)
    for raw in response.data:
        ctx.store.upsert_comment(raw, repo, "pr_issue_comment", pull_request=pr)
    ctx.fetched(len(response.data))


async def sync_pull_commits(ctx: StepContext) -> None:
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    pr = await _pull_request(ctx, repo, number)
    response = await ctx.client.list_pull_commits(full_name, number)
    for raw in response.data:
        ctx.store.upsert_commit(raw, repo, pull_request=pr)
    ctx.fetched(len(response.data))


# ─── issue_sync ───────────────────────────────────────────────────────────────


async def sync_issue(ctx: StepContext) -> None:
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    response = await ctx.client.get_issue(full_name, number)
    ctx.store.upsert_issue(response.data, repo)
    ctx.fetched(1)


async def sync_issue_comments(ctx: StepContext) -> None:
    full_name, number = parse_numbered(ctx.job.resource_id)
    repo = await _repository(ctx, full_name)
    issue = await _issue(ctx, repo, number)
    response = await ctx.client.list_issue_comments(full_name, number)
    for raw in response.data:
        ctx.store.upsert_comment(raw, repo, "issue", issue=issue)
    ctx.fetched(len(response.data))


PLANS: Dict[str, StepPlan] = {
    OVERVIEW_SYNC: StepPlan(
        [
            ("orgs", sync_organizations),
            ("repos", sync_repositories),
            ("pulls", sync_repository_pulls),
        ]
    ),
    REPO_SYNC: StepPlan(
        [
            ("repository", sync_repository),
            ("pulls", sync_pulls),
            ("issues", sync_issues),
        ],
        is_fresh=_repo_is_fresh,
    ),
    PR_DETAIL_SYNC: StepPlan(
        [
            ("pull", sync_pull),
            ("reviews", sync_reviews),
            ("comments", sync_pull_comments),
            ("commits", sync_pull_commits),
        ]
    ),
    ISSUE_SYNC: StepPlan(
        [
            ("issue", sync_issue),
            ("comments", sync_issue_comments),
        ]
    ),
}


def plan_for(job_type: str) -> StepPlan:
    try:
        return PLANS[job_type]
    except KeyError:
        raise PermanentError(f"unknown sync job type: {job_type}") from None
