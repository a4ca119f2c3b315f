"""Discovery of issues locked with the "too heated" reason."""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from heated_crawler.domain.entities import (
    Issue,
    IssueCandidate,
    Page,
    Repository,
    parse_github_datetime,
)
from heated_crawler.infrastructure.github_client import GitHubClient

logger = logging.getLogger(__name__)


TOO_HEATED = "TOO_HEATED"

# GitHub issues start in 2008; windows are laid out from this fixed date so a
# window's index never changes when newer windows are appended.
SEARCH_EPOCH = date(2008, 1, 1)

# GitHub stops serving search results after this many matches
SEARCH_RESULT_LIMIT = 1000


@dataclass(frozen=True)
class SearchWindow:
    """A creation-date range searched as one query."""

    start: date
    end: date

    def qualifier(self) -> str:
        return f"created:{self.start.isoformat()}..{self.end.isoformat()}"

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def split(self) -> Tuple["SearchWindow", "SearchWindow"]:
        """Halve the window; the first half gets the extra day of an odd span."""
        if self.days < 2:
            raise ValueError(f"Cannot split single-day window {self.qualifier()}")
        middle = self.start + timedelta(days=(self.days - 1) // 2)
        return SearchWindow(self.start, middle), SearchWindow(middle + timedelta(days=1), self.end)

    @classmethod
    def parse(cls, value: str) -> "SearchWindow":
        start, sep, end = value.partition("..")
        if not sep:
            raise ValueError(f"Malformed search window: {value!r}")
        return cls(date.fromisoformat(start), date.fromisoformat(end))


def build_search_windows(
    step_days: int = 7,
    start: date = SEARCH_EPOCH,
    until: Optional[date] = None,
) -> List[SearchWindow]:
    """
    Split the search space into consecutive creation-date windows.

    GitHub returns at most 1,000 results per search query. Windows that still
    match more than that are narrowed further while they are searched. The
    last window contains ``until`` and may reach past it.
    """
    if step_days < 1:
        raise ValueError("step_days must be at least 1")
    until = until or date.today()

    windows = []
    window_start = start
    while window_start <= until:
        window_end = window_start + timedelta(days=step_days - 1)
        windows.append(SearchWindow(window_start, window_end))
        window_start = window_end + timedelta(days=1)
    return windows


@dataclass(frozen=True)
class DiscoveryCursor:
    """Position in the discovery feed.

    ``window`` indexes the base windows, ``span`` is the narrowed part of that
    window being searched when it matched too many issues, and ``after`` is
    the search cursor inside the searched range. Encoded as
    ``"<window>:<after>"`` or ``"<window>@<start>..<end>:<after>"``.
    """

    window: int = 0
    after: Optional[str] = None
    span: Optional[SearchWindow] = None

    def encode(self) -> str:
        head = str(self.window)
        if self.span is not None:
            head = f"{head}@{self.span.start.isoformat()}..{self.span.end.isoformat()}"
        return f"{head}:{self.after or ''}"

    @classmethod
    def decode(cls, value: Optional[str]) -> "DiscoveryCursor":
        if not value:
            return cls()
        head, sep, after = value.partition(":")
        window, _, span = head.partition("@")
        if not sep or not window.isdigit():
            raise ValueError(f"Malformed discovery cursor: {value!r}")
        try:
            parsed_span = SearchWindow.parse(span) if span else None
        except ValueError:
            raise ValueError(f"Malformed discovery cursor: {value!r}")
        return cls(window=int(window), after=after or None, span=parsed_span)


@dataclass
class DiscoveryPage:
    issues: List[IssueCandidate] = field(default_factory=list)
    next_cursor: Optional[str] = None
    exhausted: bool = False
    scanned: int = 0


def parse_issue_node(node: Dict[str, Any], api_base: str = GitHubClient.API_BASE) -> Optional[IssueCandidate]:
    """Build an issue and its repository from a GraphQL search node.

    Returns None for nodes without identities (deleted or inaccessible items).
    """
    repo_node = node.get("repository") or {}
    if node.get("databaseId") is None or repo_node.get("databaseId") is None:
        return None

    full_name = repo_node["nameWithOwner"]
    repo_api = f"{api_base}/repos/{full_name}"
    repository = Repository(
        id=repo_node["databaseId"],
        name=full_name,
        stars_url=f"{repo_api}/stargazers",
        forks_url=f"{repo_api}/forks",
        commits_url=f"{repo_api}/commits{{/sha}}",
    )
    issue = Issue(
        id=node["databaseId"],
        repository_id=repository.id,
        created_at=parse_github_datetime(node["createdAt"]),
        title=node.get("title") or "",
        comments_url=f"{repo_api}/issues/{node['number']}/comments",
        number=node["number"],
    )
    return IssueCandidate(repository=repository, issue=issue)


def is_too_heated(node: Dict[str, Any]) -> bool:
    return bool(node.get("locked")) and node.get("activeLockReason") == TOO_HEATED


class IssueDiscovery:
    """Pages through locked-issue search results and keeps the "too heated" ones.

    Windows are searched oldest first. The window that contains today keeps
    receiving new locks, so the cursor never moves past it: once its last page
    is read the feed reports itself exhausted and the next run searches that
    window again from its first page.
    """

    BASE_QUERY = "is:issue is:locked"
    SORT = "sort:created-desc"

    def __init__(
        self,
        github_client: GitHubClient,
        windows: Optional[List[SearchWindow]] = None,
        page_size: int = 100,
        base_query: str = BASE_QUERY,
        today: Callable[[], date] = date.today,
    ):
        self.github_client = github_client
        self.windows = windows if windows is not None else build_search_windows(until=today())
        self.page_size = page_size
        self.base_query = base_query
        self._today = today
        self._seen: set[tuple[int, int]] = set()

    def search_query(self, window: SearchWindow) -> str:
        return f"{self.base_query} {window.qualifier()} {self.SORT}"

    def forget(self, candidate: IssueCandidate):
        """Let a later page return ``candidate`` again, e.g. after it failed to persist."""
        self._seen.discard(candidate.identity)

    def _too_many_results(self, page: Page, window: SearchWindow) -> bool:
        if page.total_count is None or page.total_count <= SEARCH_RESULT_LIMIT:
            return False
        if window.days < 2:
            logger.warning(
                f"{page.total_count} locked issues in {window.qualifier()}, "
                f"only the first {SEARCH_RESULT_LIMIT} can be searched"
            )
            return False
        return True

    def discover_heated_issues(self, cursor: Optional[str] = None) -> DiscoveryPage:
        """
        Fetch the next page of the discovery feed.

        Args:
            cursor: Opaque cursor returned by a previous call; None starts at
                the first window

        Returns:
            DiscoveryPage with the new "too heated" issues of this page, the
            cursor of the following page and whether the feed is exhausted
        """
        position = DiscoveryCursor.decode(cursor)
        if position.window >= len(self.windows):
            return DiscoveryPage(next_cursor=position.encode(), exhausted=True)

        base = self.windows[position.window]
        window = position.span or base
        query = self.search_query(window)
        logger.info(f"Searching issues: {query} (cursor: {position.after})")
        page = self.github_client.search_issues(query, cursor=position.after, page_size=self.page_size)

        if position.after is None and self._too_many_results(page, window):
            narrowed = DiscoveryCursor(position.window, None, window.split()[0])
            logger.warning(
                f"{page.total_count} locked issues in {window.qualifier()}, "
                f"narrowing the search to {narrowed.span.qualifier()}"
            )
            return DiscoveryPage(next_cursor=narrowed.encode(), scanned=len(page.items))

        candidates = []
        for node in page.items:
            if not is_too_heated(node):
                continue
            candidate = parse_issue_node(node)
            if candidate is None:
                logger.debug(f"Skipping search result without identity: {node}")
                continue
            if candidate.identity in self._seen:
                continue
            self._seen.add(candidate.identity)
            candidates.append(candidate)

        exhausted = False
        if page.next_cursor:
            next_position = DiscoveryCursor(position.window, page.next_cursor, position.span)
        elif window.end < base.end:
            rest = SearchWindow(window.end + timedelta(days=1), base.end)
            next_position = DiscoveryCursor(position.window, None, rest)
        elif base.end >= self._today():
            next_position = DiscoveryCursor(position.window, None)
            exhausted = True
        else:
            next_position = DiscoveryCursor(position.window + 1, None)
            exhausted = next_position.window >= len(self.windows)

        logger.info(
            f"Found {len(candidates)} too heated issues among {len(page.items)} locked issues "
            f"in window {position.window + 1}/{len(self.windows)}"
        )
        return DiscoveryPage(
            issues=candidates,
            next_cursor=next_position.encode(),
            exhausted=exhausted,
            scanned=len(page.items),
        )

    def iter_heated_issues(self, cursor: Optional[str] = None) -> Iterator[IssueCandidate]:
        """Lazily walk the feed from ``cursor`` until it is exhausted."""
        while True:
            page = self.discover_heated_issues(cursor)
            yield from page.issues
            if page.exhausted:
                return
            cursor = page.next_cursor
