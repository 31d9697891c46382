"""Tests for GitHubClient status mapping and pagination (httpx.MockTransport)."""
import logging
from datetime import datetime

import httpx
import pytest

from ghmirror.errors import NotFoundError, PermanentError, RateLimitedError, TransientError
from ghmirror.github.client import GitHubClient
from ghmirror.timeutil import from_epoch


@pytest.fixture
def seen_headers():
    return []


@pytest.fixture
def client(github_api, seen_headers):
    return GitHubClient(on_response=seen_headers.append, http=github_api.http())


@pytest.mark.asyncio
async def test_get_repository(client, github_api, load_fixture):
    github_api.add("/repos/octo/widgets", load_fixture("github_repo.json"), headers={"etag": '"v1"'})

    response = await client.get_repository("octo/widgets")

    assert response.data["id"] == 5001
    assert response.etag == '"v1"'
    assert response.not_modified is False


@pytest.mark.asyncio
async def test_not_modified_sends_if_none_match(client, github_api):
    github_api.add("/repos/octo/widgets", status=304)

    response = await client.get_repository("octo/widgets", etag='"v1"')

    assert response.not_modified is True
    assert response.data is None
    assert response.etag == '"v1"'
    _, headers = github_api.calls[0]
    assert headers["if-none-match"] == '"v1"'


@pytest.mark.asyncio
async def test_pagination_follows_link_header(client, github_api):
    next_link = '<https://api.github.com/repos/octo/widgets/pulls?page=2>; rel="next"'
    github_api.add("/repos/octo/widgets/pulls", [{"number": 2}], headers={"link": next_link})
    github_api.add("/repos/octo/widgets/pulls", [{"number": 1}])

    response = await client.list_pull_requests("octo/widgets")

    assert [pr["number"] for pr in response.data] == [2, 1]
    assert len(github_api.calls) == 2


@pytest.mark.asyncio
async def test_pagination_stops_at_max_pages(github_api):
    next_link = '<https://api.github.com/user/repos?page=2>; rel="next"'
    github_api.add("/user/repos", [{"id": 1}], headers={"link": next_link})
    client = GitHubClient(http=github_api.http(), max_pages=3)

    response = await client.list_repositories()

    assert len(response.data) == 3
    assert len(github_api.calls) == 3


@pytest.mark.asyncio
async def test_pagination_cap_is_logged(github_api, caplog):
    next_link = '<https://api.github.com/user/repos?page=2>; rel="next"'
    github_api.add("/user/repos", [{"id": 1}], headers={"link": next_link})
    client = GitHubClient(http=github_api.http(), max_pages=2)

    with caplog.at_level(logging.WARNING, logger="ghmirror.github.client"):
        await client.list_repositories()

    assert "Stopped paging /user/repos after 2 pages" in caplog.text


@pytest.mark.asyncio
async def test_list_issues_drops_pull_requests(client, github_api):
    github_api.add(
        "/repos/octo/widgets/issues",
        [{"number": 7}, {"number": 42, "pull_request": {"url": "..."}}],
    )

    response = await client.list_issues("octo/widgets")

    assert [i["number"] for i in response.data] == [7]


@pytest.mark.asyncio
async def test_rate_limited_403(client, github_api, seen_headers):
    github_api.remaining = 0
    github_api.add("/user/orgs", {"message": "API rate limit exceeded"}, status=403)

    with pytest.raises(RateLimitedError) as excinfo:
        await client.list_organizations()

    assert excinfo.value.reset_at == from_epoch(github_api.reset)
    # The hook saw the exhausted budget even though the call failed.
    assert seen_headers[-1]["x-ratelimit-remaining"] == "0"


@pytest.mark.asyncio
async def test_secondary_rate_limit_uses_retry_after(client, github_api):
    github_api.add("/user/orgs", {"message": "slow down"}, status=429, headers={"retry-after": "60"})

    with pytest.raises(RateLimitedError) as excinfo:
        await client.list_organizations()

    assert excinfo.value.reset_at is not None


@pytest.mark.asyncio
async def test_retry_after_http_date(client, github_api):
    github_api.add(
        "/user/orgs",
        {"message": "slow down"},
        status=429,
        headers={"retry-after": "Wed, 21 Oct 2099 07:28:00 GMT"},
    )

    with pytest.raises(RateLimitedError) as excinfo:
        await client.list_organizations()

    assert excinfo.value.reset_at == datetime(2099, 10, 21, 7, 28)


@pytest.mark.asyncio
async def test_unreadable_retry_after_falls_back_to_reset(client, github_api):
    github_api.add("/user/orgs", {"message": "slow down"}, status=429, headers={"retry-after": "soon"})

    with pytest.raises(RateLimitedError) as excinfo:
        await client.list_organizations()

    assert excinfo.value.reset_at == from_epoch(github_api.reset)


@pytest.mark.asyncio
async def test_forbidden_with_budget_is_permanent(client, github_api):
    github_api.add("/repos/octo/secret", {"message": "Resource not accessible"}, status=403)

    with pytest.raises(PermanentError) as excinfo:
        await client.get_repository("octo/secret")

    assert not isinstance(excinfo.value, RateLimitedError)


@pytest.mark.asyncio
async def test_not_found(client):
    with pytest.raises(NotFoundError):
        await client.get_pull_request("octo/widgets", 999)


@pytest.mark.asyncio
async def test_server_error_is_transient(client, github_api):
    github_api.add("/repos/octo/widgets", {"message": "Server Error"}, status=502)

    with pytest.raises(TransientError):
        await client.get_repository("octo/widgets")


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="https://api.github.com")
    async with GitHubClient(http=http) as client:
        with pytest.raises(TransientError):
            await client.get_repository("octo/widgets")
