"""
Async GitHub REST client used by the sync steps.

Thin wrapper over httpx.AsyncClient. Every HTTP response, including error
responses, is handed to the on_response hook before anything else happens,
so the rate-limit tracker sees the budget even for calls that fail.

Status mapping:
  304                     → ApiResponse(not_modified=True)
  403/429 with no budget  → RateLimitedError(reset_at)
  401, 403, 422           → PermanentError
  404, 410                → NotFoundError
  5xx, transport errors   → TransientError
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from ghmirror.errors import NotFoundError, PermanentError, RateLimitedError, TransientError
from ghmirror.timeutil import from_epoch, utcnow

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PER_PAGE = 100

ResponseHook = Callable[[Mapping[str, str]], Any]


@dataclass
class ApiResponse:
    data: Any
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    etag: Optional[str] = None
    not_modified: bool = False
    next_url: Optional[str] = None


def _retry_after(value: Optional[str]) -> Optional[datetime]:
    """Retry-After is either delta-seconds or an HTTP-date. None if unparseable."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return utcnow() + timedelta(seconds=int(value))
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc).replace(tzinfo=None)
    return when


class GitHubClient:
    """
    Minimal GitHub REST v3 client.

    Use as an async context manager, or call aclose() when done. Pass `http`
    to inject a preconfigured httpx.AsyncClient (tests use MockTransport).
    """

    def __init__(
        self,
        token: str = "",
        *,
        base_url: str = DEFAULT_API_URL,
        on_response: Optional[ResponseHook] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_pages: int = 10,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "ghmirror",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = http or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self._on_response = on_response
        self._max_pages = max_pages

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Endpoints ────────────────────────────────────────────────────────────

    async def list_organizations(self) -> ApiResponse:
        return await self._paginate("/user/orgs")

    async def list_repositories(self) -> ApiResponse:
        return await self._paginate(
            "/user/repos",
            {"affiliation": "owner,collaborator,organization_member", "sort": "pushed"},
        )

    async def get_repository(self, full_name: str, *, etag: Optional[str] = None) -> ApiResponse:
        return await self._request("GET", f"/repos/{full_name}", etag=etag)

    async def list_pull_requests(self, full_name: str, state: str = "open") -> ApiResponse:
        return await self._paginate(
            f"/repos/{full_name}/pulls", {"state": state, "sort": "updated", "direction": "desc"}
        )

    async def get_pull_request(self, full_name: str, number: int) -> ApiResponse:
        return await self._request("GET", f"/repos/{full_name}/pulls/{number}")

    async def list_reviews(self, full_name: str, number: int) -> ApiResponse:
        return await self._paginate(f"/repos/{full_name}/pulls/{number}/reviews")

    async def list_review_comments(self, full_name: str, number: int) -> ApiResponse:
        return await self._paginate(f"/repos/{full_name}/pulls/{number}/comments")

    async def list_issue_comments(self, full_name: str, number: int) -> ApiResponse:
        return await self._paginate(f"/repos/{full_name}/issues/{number}/comments")

    async def list_pull_commits(self, full_name: str, number: int) -> ApiResponse:
        return await self._paginate(f"/repos/{full_name}/pulls/{number}/commits")

    async def list_issues(self, full_name: str, state: str = "open") -> ApiResponse:
        """Issues only; GitHub's issues endpoint also returns PRs, which are dropped."""
        response = await self._paginate(f"/repos/{full_name}/issues", {"state": state})
        response.data = [i for i in response.data if "pull_request" not in i]
        return response

    async def get_issue(self, full_name: str, number: int) -> ApiResponse:
        return await self._request("GET", f"/repos/{full_name}/issues/{number}")

    # ─── Transport ────────────────────────────────────────────────────────────

    async def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Follow Link rel="next" up to max_pages; returns all items with the last page's headers."""
        items: List[Any] = []
        params = {"per_page": PER_PAGE, **(params or {})}
        url: Optional[str] = path
        last: Optional[ApiResponse] = None
        pages = 0
        while url and pages < self._max_pages:
            last = await self._request("GET", url, params=params)
            items.extend(last.data or [])
            pages += 1
            url = last.next_url
            params = None  # the next link already carries the query string
        if url:
            logger.warning(
                "Stopped paging %s after %d pages (%d items); later pages were not fetched",
                path,
                pages,
                len(items),
            )
        return ApiResponse(
            data=items,
            status_code=last.status_code if last else 200,
            headers=last.headers if last else {},
            etag=last.etag if last else None,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
    ) -> ApiResponse:
        headers = {"If-None-Match": etag} if etag else None
        try:
            response = await self._http.request(method, url, params=params, headers=headers)
        except httpx.TransportError as exc:
            raise TransientError(f"GitHub request failed: {exc}") from exc

        if self._on_response is not None:
            self._on_response(response.headers)

        if response.status_code == 304:
            return ApiResponse(
                data=None,
                status_code=304,
                headers=response.headers,
                etag=etag,
                not_modified=True,
            )
        if response.status_code >= 400:
            raise self._error_for(response)

        return ApiResponse(
            data=response.json() if response.content else None,
            status_code=response.status_code,
            headers=response.headers,
            etag=response.headers.get("etag"),
            next_url=response.links.get("next", {}).get("url"),
        )

    @staticmethod
    def _error_for(response: httpx.Response) -> Exception:
        status = response.status_code
        try:
            message = (response.json() or {}).get("message", "")
        except ValueError:
            message = response.text
        detail = f"GitHub {status} for {response.request.method} {response.request.url.path}: {message}"

        if status in (403, 429):
            remaining = response.headers.get("x-ratelimit-remaining")
            retry_after = response.headers.get("retry-after")
            if remaining == "0" or retry_after or "rate limit" in message.lower():
                reset_at = _retry_after(retry_after)
                if reset_at is None and response.headers.get("x-ratelimit-reset"):
                    reset_at = from_epoch(response.headers["x-ratelimit-reset"])
                return RateLimitedError(detail, reset_at=reset_at)
        if status in (404, 410):
            return NotFoundError(detail)
        if status in (401, 403, 422):
            return PermanentError(detail)
        if status >= 500:
            return TransientError(detail)
        return PermanentError(detail)
