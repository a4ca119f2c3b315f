"""GitHub API client with rate limiting and retry logic.

Issue search goes through the GraphQL API, which exposes the lock reason of
each issue; comment threads are paginated through the REST API.
"""

import time
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

import requests

from heated_crawler.domain.entities import Page, RateLimitInfo, parse_github_datetime
from heated_crawler.domain.errors import (
    AuthError,
    CrawlCancelled,
    NotFoundError,
    RateLimitError,
    TransientError,
)
from heated_crawler.infrastructure.rate_limit import RateLimitTracker

logger = logging.getLogger(__name__)


GRAPHQL_RESOURCE = "graphql"
CORE_RESOURCE = "core"

SEARCH_ISSUES_QUERY = """
query($limit: Int!, $cursor: String, $searchQuery: String!) {
    search(query: $searchQuery, type: ISSUE, first: $limit, after: $cursor) {
        issueCount
        pageInfo {
            hasNextPage
            endCursor
        }
        nodes {
            ... on Issue {
                databaseId
                number
                title
                createdAt
                locked
                activeLockReason
                repository {
                    databaseId
                    nameWithOwner
                }
            }
        }
    }
    rateLimit {
        limit
        remaining
        resetAt
    }
}
"""


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_rate_limit_headers(headers, default_resource: str) -> Optional[RateLimitInfo]:
    """Read the ``X-RateLimit-*`` headers of a response."""
    remaining = _parse_int(headers.get("X-RateLimit-Remaining"))
    reset = _parse_int(headers.get("X-RateLimit-Reset"))
    if remaining is None and reset is None:
        return None
    return RateLimitInfo(
        resource=headers.get("X-RateLimit-Resource") or default_resource,
        limit=_parse_int(headers.get("X-RateLimit-Limit")),
        remaining=remaining,
        reset_at=float(reset) if reset is not None else None,
    )


class GitHubClient:
    """Client for the GitHub GraphQL and REST APIs with rate limiting and retries."""

    API_BASE = "https://api.github.com"
    GRAPHQL_ENDPOINT = "https://api.github.com/graphql"
    API_VERSION = "2022-11-28"
    USER_AGENT = "heated-issues-crawler"
    MAX_RETRIES = 5
    MAX_RATE_LIMIT_WAITS = 3
    RETRY_DELAY_SECONDS = 1
    MAX_RETRY_DELAY_SECONDS = 60
    SECONDARY_RATE_LIMIT_WAIT_SECONDS = 60
    REQUEST_TIMEOUT_SECONDS = 30
    NOT_FOUND_STATUSES = (404, 410, 451)
    RATE_LIMIT_MARKERS = ("rate limit", "abuse")
    # Errors GitHub attaches to single nodes while still returning the rest of the data
    PARTIAL_ERROR_TYPES = frozenset({"FORBIDDEN", "NOT_FOUND"})

    def __init__(
        self,
        token: Optional[str] = None,
        rate_limiter: Optional[RateLimitTracker] = None,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize GitHub client.

        Args:
            token: GitHub personal access token. If None, uses GITHUB_TOKEN env var.
            rate_limiter: Shared quota tracker. A waiting tracker is created if None.
            session: HTTP session, mainly for tests.
            sleep: Blocking sleep used for retry backoff and quota waits.
            clock: Returns the current unix time.
            stop_event: Stop signal that interrupts backoff and quota waits.
                Taken from ``rate_limiter`` when not given.
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")
        if not token:
            raise AuthError("GitHub token is missing. Set GITHUB_TOKEN.")

        self.token = token
        self.rate_limiter = rate_limiter or RateLimitTracker(sleep=sleep, clock=clock, stop_event=stop_event)
        self.stop_event = stop_event or self.rate_limiter.stop_event
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "User-Agent": self.USER_AGENT,
            "X-GitHub-Api-Version": self.API_VERSION,
        })
        self._sleep = sleep or self.stop_event.wait
        self._clock = clock

    def _backoff(self, attempt: int) -> float:
        return min(self.RETRY_DELAY_SECONDS * (2 ** attempt), self.MAX_RETRY_DELAY_SECONDS)

    def _pause(self, seconds: float):
        if self.stop_event.is_set():
            raise CrawlCancelled("Stop requested")
        self._sleep(seconds)
        if self.stop_event.is_set():
            raise CrawlCancelled("Stop requested")

    def _rate_limit_reset(self, response: requests.Response) -> float:
        retry_after = _parse_int(response.headers.get("Retry-After"))
        if retry_after is not None:
            return self._clock() + retry_after
        reset = _parse_int(response.headers.get("X-RateLimit-Reset"))
        if response.headers.get("X-RateLimit-Remaining") == "0" and reset is not None:
            return float(reset)
        # Secondary limits come without a reset time; GitHub asks for at least a minute
        return self._clock() + self.SECONDARY_RATE_LIMIT_WAIT_SECONDS

    def _error_message(self, response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(data, dict):
            return str(data.get("message") or "")
        return response.text or ""

    def _is_rate_limited(self, response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        if response.headers.get("X-RateLimit-Remaining") == "0" or "Retry-After" in response.headers:
            return True
        message = self._error_message(response).lower()
        return any(marker in message for marker in self.RATE_LIMIT_MARKERS)

    def _request(self, method: str, url: str, resource: str, **kwargs) -> requests.Response:
        """
        Send one API request with rate limiting and retry logic.

        Returns:
            A successful (2xx) response

        Raises:
            AuthError: On 401
            NotFoundError: On 404/410/451 and on 403 that is not a rate limit
            RateLimitError: If the quota is exhausted and waiting is not possible
            CrawlCancelled: If the stop signal interrupts a wait
            TransientError: If the request keeps failing after MAX_RETRIES attempts
        """
        attempt = 0
        rate_limit_waits = 0
        while True:
            self.rate_limiter.acquire(resource)
            try:
                response = self.session.request(
                    method, url, timeout=self.REQUEST_TIMEOUT_SECONDS, **kwargs
                )
            except requests.exceptions.RequestException as e:
                error = TransientError(f"Request to {url} failed: {e}")
            else:
                self.rate_limiter.update(parse_rate_limit_headers(response.headers, resource))

                if 200 <= response.status_code < 300:
                    return response
                if response.status_code == 401:
                    raise AuthError("Authentication failed. Check your GitHub token.")
                if self._is_rate_limited(response):
                    reset_at = self._rate_limit_reset(response)
                    if rate_limit_waits >= self.MAX_RATE_LIMIT_WAITS:
                        raise RateLimitError(f"Rate limit still exhausted for {url}", reset_at=reset_at)
                    rate_limit_waits += 1
                    self.rate_limiter.mark_exhausted(resource, reset_at)
                    continue
                if response.status_code in self.NOT_FOUND_STATUSES or response.status_code == 403:
                    raise NotFoundError(f"{url} returned {response.status_code}")
                error = TransientError(f"{url} returned {response.status_code}: {response.text[:200]}")

            attempt += 1
            if attempt >= self.MAX_RETRIES:
                raise error
            delay = self._backoff(attempt - 1)
            logger.warning(f"Request failed (attempt {attempt}/{self.MAX_RETRIES}): {error}. Retrying in {delay}s...")
            self._pause(delay)

    def execute_query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query.

        GraphQL reports most failures with a 200 status and an ``errors`` list,
        so those are mapped onto the same error taxonomy as REST failures.
        Unknown GraphQL errors are treated as transient and retried. When the
        response still carries data and the errors only concern single nodes
        (FORBIDDEN, NOT_FOUND), the data is returned and the errors are logged.
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        rate_limit_waits = 0
        for attempt in range(self.MAX_RETRIES):
            response = self._request("POST", self.GRAPHQL_ENDPOINT, GRAPHQL_RESOURCE, json=payload)
            data = response.json()

            if "errors" not in data:
                return data.get("data") or {}

            errors = data["errors"]
            error_types = {err.get("type") for err in errors}
            error_messages = [err.get("message", "") for err in errors]

            if "RATE_LIMITED" in error_types:
                reset_at = _parse_int(response.headers.get("X-RateLimit-Reset"))
                if rate_limit_waits >= self.MAX_RATE_LIMIT_WAITS:
                    raise RateLimitError(f"GraphQL rate limit exceeded: {error_messages}", reset_at=reset_at)
                rate_limit_waits += 1
                self.rate_limiter.mark_exhausted(GRAPHQL_RESOURCE, float(reset_at) if reset_at else None)
                continue
            if data.get("data") and error_types <= self.PARTIAL_ERROR_TYPES:
                logger.warning(f"GraphQL returned partial data: {error_messages}")
                return data["data"]
            if "NOT_FOUND" in error_types:
                raise NotFoundError(f"GraphQL errors: {error_messages}")

            if attempt < self.MAX_RETRIES - 1:
                delay = self._backoff(attempt)
                logger.warning(f"GraphQL errors (attempt {attempt + 1}/{self.MAX_RETRIES}): {error_messages}. Retrying in {delay}s...")
                self._pause(delay)

        raise TransientError(f"GraphQL query failed after {self.MAX_RETRIES} attempts")

    def search_issues(self, search_query: str, cursor: Optional[str] = None, page_size: int = 100) -> Page:
        """
        Run one page of an issue search.

        Args:
            search_query: GitHub search query string (e.g. "is:issue is:locked")
            cursor: GraphQL ``endCursor`` of the previous page
            page_size: Results per page (max 100)

        Returns:
            Page of raw Issue nodes; ``next_cursor`` is None on the last page
        """
        variables = {
            "limit": min(page_size, 100),
            "cursor": cursor,
            "searchQuery": search_query,
        }
        data = self.execute_query(SEARCH_ISSUES_QUERY, variables)

        search_result = data.get("search") or {}
        page_info = search_result.get("pageInfo") or {}
        nodes = [node for node in search_result.get("nodes") or [] if node]

        rate_limit = None
        rate_limit_data = data.get("rateLimit")
        if rate_limit_data:
            reset_at = rate_limit_data.get("resetAt")
            rate_limit = RateLimitInfo(
                resource=GRAPHQL_RESOURCE,
                limit=rate_limit_data.get("limit"),
                remaining=rate_limit_data.get("remaining"),
                reset_at=parse_github_datetime(reset_at).timestamp() if reset_at else None,
            )
            self.rate_limiter.update(rate_limit)

        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return Page(
            items=nodes,
            next_cursor=next_cursor,
            rate_limit=rate_limit,
            total_count=search_result.get("issueCount"),
        )

    def list_comments(self, comments_url: str, cursor: Optional[int] = None, page_size: int = 100) -> Page:
        """
        Fetch one page of an issue's comments.

        Args:
            comments_url: REST URL of the issue's comment collection
            cursor: 1-based page number
            page_size: Comments per page (max 100)

        Returns:
            Page of raw comment objects; ``next_cursor`` is the next page number
            or None when GitHub reports no further page
        """
        page = cursor or 1
        response = self._request(
            "GET",
            comments_url,
            CORE_RESOURCE,
            params={"page": page, "per_page": min(page_size, 100)},
        )
        items = response.json() or []
        next_cursor = page + 1 if "next" in response.links else None
        return Page(
            items=items,
            next_cursor=next_cursor,
            rate_limit=self.rate_limiter.snapshot(CORE_RESOURCE),
        )
