"""Tests for MirrorStore upserts."""
from sqlmodel import Session, select

from ghmirror.mirror.store import MirrorStore
from ghmirror.models.mirror import PullRequest, Repository


def test_repository_upsert_keeps_local_columns(engine, load_fixture):
    store = MirrorStore(engine)
    repo = store.upsert_repository(load_fixture("github_repo.json"), user_id=4, from_webhook=True)
    stamped = repo.webhook_updated_at

    raw = load_fixture("github_repo.json")
    raw["stargazers_count"] = 99
    again = store.upsert_repository(raw, user_id=9)

    assert again.id == repo.id
    assert again.stargazers_count == 99
    assert again.user_id == 4
    assert again.webhook_updated_at == stamped


def test_list_detail_fields_survive_list_sync(engine, load_fixture):
    store = MirrorStore(engine)
    repo = store.upsert_repository(load_fixture("github_repo.json"))
    detail = load_fixture("github_pull_request_opened.json")["pull_request"]
    store.upsert_pull_request(detail, repo)

    listed = dict(detail)
    for key in ("additions", "deletions", "changed_files"):
        listed.pop(key)
    store.upsert_pull_request(listed, repo)

    with Session(engine) as s:
        pr = s.exec(select(PullRequest)).one()
    assert pr.additions == 120


def test_owner_of_repository(engine, load_fixture):
    store = MirrorStore(engine)
    store.upsert_repository(load_fixture("github_repo.json"), user_id=4)

    assert store.owner_of_repository("octo/widgets") == 4
    assert store.owner_of_repository("octo/unknown") is None
    assert store.owner_of_repository(None) is None


def test_list_repositories_per_user(engine, load_fixture):
    store = MirrorStore(engine)
    store.upsert_repository(load_fixture("github_repo.json"), user_id=1)
    other = load_fixture("github_repo.json")
    other.update(id=5002, full_name="octo/gadgets", name="gadgets")
    store.upsert_repository(other, user_id=2)

    assert [r.full_name for r in store.list_repositories(1)] == ["octo/widgets"]
    with Session(engine) as s:
        assert len(s.exec(select(Repository)).all()) == 2


def test_mark_comment_deleted_missing(engine):
    assert MirrorStore(engine).mark_comment_deleted(123) is False
