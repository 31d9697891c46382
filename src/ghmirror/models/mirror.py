"""Mirrored GitHub entities.

Every row is keyed by GitHub's stable numeric id (commits by sha) so both the
webhook path and the pull path upsert onto the same row. Columns below the
"local-only" marker are owned by this mirror and are never written from a
provider payload.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from ghmirror.timeutil import utcnow


class Organization(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    login: str = Field(index=True)
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    synced_at: datetime = Field(default_factory=utcnow)


class Repository(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    name: str
    full_name: str = Field(index=True)
    owner: str
    description: Optional[str] = None
    html_url: Optional[str] = None
    private: bool = False
    fork: bool = False
    default_branch: str = "main"
    language: Optional[str] = None
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    github_pushed_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    webhook_status: Optional[str] = None  # "installed", "no_access", "error"
    synced_at: datetime = Field(default_factory=utcnow)
    webhook_updated_at: Optional[datetime] = None


class PullRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    repository_id: int = Field(foreign_key="repository.id", index=True)
    number: int = Field(index=True)
    title: str
    body: Optional[str] = None
    state: str  # "open" or "closed"
    draft: bool = False
    merged: bool = False
    author_login: Optional[str] = None
    head_ref: Optional[str] = None
    head_sha: Optional[str] = None
    base_ref: Optional[str] = None
    html_url: Optional[str] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None
    labels_json: Optional[str] = None
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    synced_at: datetime = Field(default_factory=utcnow)
    webhook_updated_at: Optional[datetime] = None
    last_delivery_id: Optional[str] = None


class Review(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    pull_request_id: int = Field(foreign_key="pullrequest.id", index=True)
    state: str  # "APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"
    body: Optional[str] = None
    author_login: Optional[str] = None
    commit_id: Optional[str] = None
    html_url: Optional[str] = None
    submitted_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    synced_at: datetime = Field(default_factory=utcnow)


class Issue(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    repository_id: int = Field(foreign_key="repository.id", index=True)
    number: int = Field(index=True)
    title: str
    body: Optional[str] = None
    state: str
    state_reason: Optional[str] = None
    author_login: Optional[str] = None
    html_url: Optional[str] = None
    comments_count: int = 0
    labels_json: Optional[str] = None
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    synced_at: datetime = Field(default_factory=utcnow)
    webhook_updated_at: Optional[datetime] = None


class Comment(SQLModel, table=True):
    """Issue comments, PR conversation comments and PR review comments."""

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(unique=True, index=True)
    comment_type: str  # "issue", "pr_issue_comment", "pr_review_comment"
    repository_id: int = Field(foreign_key="repository.id", index=True)
    pull_request_id: Optional[int] = Field(default=None, foreign_key="pullrequest.id", index=True)
    issue_id: Optional[int] = Field(default=None, foreign_key="issue.id", index=True)
    review_github_id: Optional[int] = None
    body: Optional[str] = None
    author_login: Optional[str] = None
    path: Optional[str] = None
    line: Optional[int] = None
    html_url: Optional[str] = None
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    deleted: bool = False
    synced_at: datetime = Field(default_factory=utcnow)


class Commit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sha: str = Field(unique=True, index=True)
    repository_id: int = Field(foreign_key="repository.id", index=True)
    pull_request_id: Optional[int] = Field(default=None, foreign_key="pullrequest.id", index=True)
    message: Optional[str] = None
    author_name: Optional[str] = None
    author_login: Optional[str] = None
    html_url: Optional[str] = None
    committed_at: Optional[datetime] = None

    # local-only
    user_id: int = Field(default=1, index=True)
    synced_at: datetime = Field(default_factory=utcnow)
