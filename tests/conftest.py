"""Shared test fixtures."""
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from ghmirror.models import mirror, sync, webhook  # noqa: F401
from ghmirror.github.client import GitHubClient
from ghmirror.timeutil import utcnow

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# 2100-01-01: a reset time that is always in the future
FAR_FUTURE_RESET = 4102444800


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def load_fixture():
    """Return a loader for JSON files under tests/fixtures (fresh copy each call)."""

    def _load(name: str):
        return json.loads((FIXTURES_DIR / name).read_text())

    return _load


# ─── Controllable clock ───────────────────────────────────────────────────────


class FakeClock:
    """Callable clock for components that take `clock=`; advance() moves time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(utcnow())


# ─── Fake GitHub REST API ─────────────────────────────────────────────────────


class FakeGitHubAPI:
    """httpx.MockTransport-backed stand-in for api.github.com.

    Register responses per path with add(). A path with several responses
    serves them in order and then keeps repeating the last one. Unknown paths
    answer 404. Every response carries rate-limit headers built from
    `remaining` / `reset`.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.remaining = 4999
        self.limit = 5000
        self.reset = FAR_FUTURE_RESET

    def add(self, path: str, body=None, status: int = 200, headers=None) -> None:
        self.routes.setdefault(path, []).append((status, body, headers or {}))

    def rate_headers(self):
        return {
            "x-ratelimit-remaining": str(self.remaining),
            "x-ratelimit-limit": str(self.limit),
            "x-ratelimit-reset": str(self.reset),
            "x-ratelimit-used": str(self.limit - self.remaining),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((path, dict(request.headers)))
        responses = self.routes.get(path)
        if not responses:
            return httpx.Response(404, json={"message": "Not Found"}, headers=self.rate_headers())
        status, body, headers = responses.pop(0) if len(responses) > 1 else responses[0]
        if status == 304 or body is None:
            return httpx.Response(status, headers={**self.rate_headers(), **headers})
        return httpx.Response(status, json=body, headers={**self.rate_headers(), **headers})

    @property
    def paths(self):
        return [path for path, _ in self.calls]

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler), base_url="https://api.github.com"
        )

    def client_factory(self, user_id, on_response) -> GitHubClient:
        return GitHubClient(on_response=on_response, http=self.http())


@pytest.fixture
def github_api() -> FakeGitHubAPI:
    return FakeGitHubAPI()
