"""
MirrorStore: idempotent upserts of GitHub entities into the local mirror.

Every write is "find by stable provider key, then update provider-owned
fields in place, else insert". Local-only columns are set on insert and
otherwise left alone, so neither a webhook redelivery nor a pull sync can
create duplicates or wipe mirror-owned annotations.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlmodel import Session, SQLModel, select

from ghmirror.mirror.normalizer import (
    normalize_comment,
    normalize_commit,
    normalize_issue,
    normalize_organization,
    normalize_pull_request,
    normalize_repository,
    normalize_review,
)
from ghmirror.models.mirror import (
    Comment,
    Commit,
    Issue,
    Organization,
    PullRequest,
    Repository,
    Review,
)
from ghmirror.timeutil import utcnow

M = TypeVar("M", bound=SQLModel)


class MirrorStore:
    """Upsert contract used by webhook handlers and sync steps."""

    def __init__(self, engine):
        self.engine = engine

    # ─── Upserts ──────────────────────────────────────────────────────────────

    def upsert_organization(self, raw: Dict[str, Any], *, user_id: int = 1) -> Organization:
        return self._upsert(
            Organization, "github_id", normalize_organization(raw), on_insert={"user_id": user_id}
        )

    def upsert_repository(
        self, raw: Dict[str, Any], *, user_id: int = 1, from_webhook: bool = False
    ) -> Repository:
        return self._upsert(
            Repository,
            "github_id",
            normalize_repository(raw),
            on_insert={"user_id": user_id},
            local=self._webhook_stamp(from_webhook),
        )

    def upsert_pull_request(
        self,
        raw: Dict[str, Any],
        repository: Repository,
        *,
        delivery_id: Optional[str] = None,
    ) -> PullRequest:
        fields = normalize_pull_request(raw)
        fields["repository_id"] = repository.id
        local = self._webhook_stamp(delivery_id is not None)
        if delivery_id:
            local["last_delivery_id"] = delivery_id
        return self._upsert(
            PullRequest, "github_id", fields, on_insert={"user_id": repository.user_id}, local=local
        )

    def upsert_issue(
        self, raw: Dict[str, Any], repository: Repository, *, from_webhook: bool = False
    ) -> Issue:
        fields = normalize_issue(raw)
        fields["repository_id"] = repository.id
        return self._upsert(
            Issue,
            "github_id",
            fields,
            on_insert={"user_id": repository.user_id},
            local=self._webhook_stamp(from_webhook),
        )

    def upsert_review(self, raw: Dict[str, Any], pull_request: PullRequest) -> Review:
        fields = normalize_review(raw)
        fields["pull_request_id"] = pull_request.id
        return self._upsert(Review, "github_id", fields, on_insert={"user_id": pull_request.user_id})

    def upsert_comment(
        self,
        raw: Dict[str, Any],
        repository: Repository,
        comment_type: str,
        *,
        pull_request: Optional[PullRequest] = None,
        issue: Optional[Issue] = None,
    ) -> Comment:
        fields = normalize_comment(raw)
        fields.update(
            comment_type=comment_type,
            repository_id=repository.id,
            pull_request_id=pull_request.id if pull_request else None,
            issue_id=issue.id if issue else None,
        )
        return self._upsert(Comment, "github_id", fields, on_insert={"user_id": repository.user_id})

    def upsert_commit(
        self,
        raw: Dict[str, Any],
        repository: Repository,
        *,
        pull_request: Optional[PullRequest] = None,
    ) -> Commit:
        fields = normalize_commit(raw)
        fields["repository_id"] = repository.id
        if pull_request is not None:
            fields["pull_request_id"] = pull_request.id
        return self._upsert(Commit, "sha", fields, on_insert={"user_id": repository.user_id})

    def mark_comment_deleted(self, github_id: int) -> bool:
        """Soft-delete: 'deleted' is a local flag, the row stays for history."""
        with Session(self.engine) as s:
            comment = s.exec(select(Comment).where(Comment.github_id == github_id)).first()
            if comment is None:
                return False
            comment.deleted = True
            comment.synced_at = utcnow()
            s.add(comment)
            s.commit()
            return True

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get_repository(self, full_name: str) -> Optional[Repository]:
        with Session(self.engine) as s:
            return s.exec(select(Repository).where(Repository.full_name == full_name)).first()

    def owner_of_repository(self, full_name: Optional[str]) -> Optional[int]:
        """User who tracks the repo, used to attribute webhook deliveries."""
        if not full_name:
            return None
        repo = self.get_repository(full_name)
        return repo.user_id if repo else None

    def list_repositories(self, user_id: int) -> List[Repository]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(Repository)
                    .where(Repository.user_id == user_id)
                    .order_by(Repository.full_name)
                ).all()
            )

    def get_pull_request(self, repository_id: int, number: int) -> Optional[PullRequest]:
        with Session(self.engine) as s:
            return s.exec(
                select(PullRequest)
                .where(PullRequest.repository_id == repository_id)
                .where(PullRequest.number == number)
            ).first()

    def get_issue(self, repository_id: int, number: int) -> Optional[Issue]:
        with Session(self.engine) as s:
            return s.exec(
                select(Issue)
                .where(Issue.repository_id == repository_id)
                .where(Issue.number == number)
            ).first()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _webhook_stamp(from_webhook: bool) -> Dict[str, datetime]:
        return {"webhook_updated_at": utcnow()} if from_webhook else {}

    def _upsert(
        self,
        model: Type[M],
        key: str,
        fields: Dict[str, Any],
        *,
        on_insert: Optional[Dict[str, Any]] = None,
        local: Optional[Dict[str, Any]] = None,
    ) -> M:
        """Update provider fields in place if the row exists, else insert it."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(model).where(getattr(model, key) == fields[key])
            ).first()

            if existing:
                # Update scalar fields in-place (keeps same id)
                for k, v in fields.items():
                    setattr(existing, k, v)
                for k, v in (local or {}).items():
                    setattr(existing, k, v)
                existing.synced_at = utcnow()
                row = existing
            else:
                row = model(**fields, **(on_insert or {}), **(local or {}))
            s.add(row)
            s.commit()
            s.refresh(row)
            return row
