"""Integration tests for /webhooks routes."""
import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from ghmirror.api.main import create_app
from ghmirror.config import Settings
from ghmirror.models.mirror import PullRequest
from ghmirror.models.webhook import DEAD_LETTER, PENDING, PROCESSED
from ghmirror.services import build_services, get_services
from ghmirror.webhooks.signature import sign

SECRET = "s3cret"


@pytest.fixture(name="services")
def services_fixture(engine, github_api):
    return build_services(engine, Settings(webhook_secret=SECRET), client_factory=github_api.client_factory)


@pytest.fixture(name="client")
def client_fixture(engine, services):
    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    with patch("ghmirror.api.main.get_engine", return_value=engine), TestClient(app) as c:
        yield c


def _post(client, payload, delivery_id="abc123", event="pull_request", secret=SECRET, body=None):
    body = body if body is not None else json.dumps(payload).encode()
    return client.post(
        "/webhooks/github",
        content=body,
        headers={
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": delivery_id,
            "X-Hub-Signature-256": sign(body, secret),
            "Content-Type": "application/json",
        },
    )


@pytest.fixture
def pr_payload(load_fixture):
    return load_fixture("github_pull_request_opened.json")


class TestReceiveWebhook:
    def test_accepts_and_processes(self, client, services, pr_payload, test_session):
        resp = _post(client, pr_payload)

        assert resp.status_code == 202
        assert resp.json() == {"queued": True, "duplicate": False}
        # The background processor run happens before TestClient returns.
        item = services.queue.get_by_delivery("abc123")
        assert item.status == PROCESSED
        assert test_session.exec(select(PullRequest)).one().number == 42

    def test_redelivery_is_duplicate(self, client, pr_payload):
        _post(client, pr_payload)
        resp = _post(client, pr_payload)

        assert resp.status_code == 200
        assert resp.json() == {"queued": False, "duplicate": True}

    def test_bad_signature(self, client, services, pr_payload):
        resp = _post(client, pr_payload, secret="wrong")

        assert resp.status_code == 401
        assert services.queue.list_all() == []

    def test_missing_signature(self, client, pr_payload):
        resp = client.post(
            "/webhooks/github",
            content=json.dumps(pr_payload),
            headers={"X-GitHub-Event": "pull_request", "X-GitHub-Delivery": "abc123"},
        )
        assert resp.status_code == 401

    def test_missing_delivery_header(self, client, pr_payload):
        body = json.dumps(pr_payload).encode()
        resp = client.post(
            "/webhooks/github",
            content=body,
            headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": sign(body, SECRET)},
        )
        assert resp.status_code == 400

    def test_invalid_json(self, client):
        resp = _post(client, None, body=b"{not json")
        assert resp.status_code == 400

    def test_non_object_json(self, client):
        resp = _post(client, None, body=b"[1, 2]")
        assert resp.status_code == 400

    def test_unconfigured_secret(self, engine, pr_payload):
        app = create_app()
        app.dependency_overrides[get_services] = lambda: build_services(engine, Settings(webhook_secret=""))
        with patch("ghmirror.api.main.get_engine", return_value=engine), TestClient(app) as c:
            resp = _post(c, pr_payload)
        assert resp.status_code == 500

    def test_owner_from_tracked_repository(self, client, services, pr_payload):
        services.store.upsert_repository(pr_payload["repository"], user_id=4)

        _post(client, pr_payload)

        assert services.queue.get_by_delivery("abc123").owner_user_id == 4


class TestQueueRoutes:
    def _dead_letter(self, services, delivery_id="d-1"):
        item_id = services.queue.enqueue(delivery_id, "push", None, "{}").queue_item_id
        services.queue.claim(item_id)
        services.queue.mark_dead_letter(item_id, "PermanentError: payload has no 'repository' object")
        return item_id

    def test_list_problem_items(self, client, services):
        self._dead_letter(services)

        resp = client.get("/webhooks/queue")

        assert resp.status_code == 200
        [item] = resp.json()
        assert item["status"] == DEAD_LETTER
        assert "repository" in item["last_error"]

    def test_retry(self, client, services):
        item_id = self._dead_letter(services)

        resp = client.post("/webhooks/queue", json={"action": "retry", "item_id": item_id})

        assert resp.json() == {"action": "retry", "count": 1}
        assert services.queue.get(item_id).status == PENDING
        # Idempotent
        resp = client.post("/webhooks/queue", json={"action": "retry", "item_id": item_id})
        assert resp.json()["count"] == 0

    def test_discard_all(self, client, services):
        self._dead_letter(services, "d-1")
        self._dead_letter(services, "d-2")

        resp = client.post("/webhooks/queue", json={"action": "discard-all"})

        assert resp.json()["count"] == 2
        assert services.queue.list_all() == []

    def test_purge_all(self, client):
        resp = client.post("/webhooks/queue", json={"action": "purge-all"})
        assert resp.status_code == 200
        assert resp.json() == {"action": "purge-all", "count": 0, "deliveries": 0}

    def test_unknown_action(self, client):
        resp = client.post("/webhooks/queue", json={"action": "explode"})
        assert resp.status_code == 400

    def test_retry_requires_item_id(self, client):
        resp = client.post("/webhooks/queue", json={"action": "retry"})
        assert resp.status_code == 400

    def test_process_reports_counts(self, client, services, pr_payload):
        services.queue.enqueue("abc123", "pull_request", "opened", json.dumps(pr_payload))

        resp = client.post("/webhooks/process")

        assert resp.status_code == 200
        assert resp.json()["processed"] == 1

    def test_health(self, client, services):
        self._dead_letter(services)

        resp = client.get("/webhooks/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["health"] == "ok"
        assert data["dead_letter"] == 1
