from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from heated_crawler.domain.entities import (
    Comment,
    Issue,
    Page,
    PendingIssue,
    Repository,
)
from heated_crawler.domain.errors import ConstraintViolation


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        json_data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        links: Optional[Dict[str, Any]] = None,
        text: str = "",
    ) -> None:
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.links = links or {}
        self.text = text

    def json(self) -> Any:
        return self._json


class FakeSession:
    """Stands in for requests.Session, replaying queued responses or exceptions."""

    def __init__(self, responses: List[Any], on_request: Optional[Callable[[], None]] = None) -> None:
        self.headers: Dict[str, str] = {}
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []
        self.on_request = on_request

    def request(self, method: str, url: str, timeout: float = 0, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.on_request is not None:
            self.on_request()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def issue_node(
    issue_id: int,
    repo_id: int = 7,
    repo_name: str = "acme/widgets",
    number: Optional[int] = None,
    title: str = "Flame war",
    reason: Optional[str] = "TOO_HEATED",
    locked: bool = True,
    created_at: str = "2023-05-01T10:00:00Z",
) -> Dict[str, Any]:
    return {
        "databaseId": issue_id,
        "number": number if number is not None else issue_id,
        "title": title,
        "createdAt": created_at,
        "locked": locked,
        "activeLockReason": reason,
        "repository": {"databaseId": repo_id, "nameWithOwner": repo_name},
    }


def comment_item(comment_id: int, body: str = "calm down", **extra: Any) -> Dict[str, Any]:
    return {"id": comment_id, "body": body, "created_at": "2023-05-01T11:00:00Z", **extra}


def comments_url(issue_number: int, repo_name: str = "acme/widgets") -> str:
    return f"https://api.github.com/repos/{repo_name}/issues/{issue_number}/comments"


class FakeGitHubClient:
    """Serves canned search pages and comment pages.

    ``search_pages`` maps a ``created:`` qualifier (or ``"*"`` for any query)
    to a list of pages; search cursors are ``"c<page index>"``.
    ``comments`` maps a comments URL to a list of pages.
    ``comment_errors`` maps ``(url, page)`` to errors raised, one per call,
    before the page is served. ``search_errors`` is raised in order before
    any search is served. ``search_totals`` maps a qualifier to the
    reported number of matches.
    """

    def __init__(
        self,
        search_pages: Optional[Dict[str, List[List[Dict[str, Any]]]]] = None,
        comments: Optional[Dict[str, List[List[Dict[str, Any]]]]] = None,
        comment_errors: Optional[Dict[Tuple[str, int], List[Exception]]] = None,
        search_errors: Optional[List[Exception]] = None,
        search_totals: Optional[Dict[str, int]] = None,
    ) -> None:
        self.search_pages = search_pages or {}
        self.comments = comments or {}
        self.comment_errors = comment_errors or {}
        self.search_errors = list(search_errors or [])
        self.search_totals = search_totals or {}
        self.search_calls: List[Tuple[str, Optional[str]]] = []
        self.comment_calls: List[Tuple[str, int]] = []
        self._lock = threading.Lock()

    def _pages_for(self, query: str) -> List[List[Dict[str, Any]]]:
        for token in query.split():
            if token.startswith("created:") and token in self.search_pages:
                return self.search_pages[token]
        return self.search_pages.get("*", [])

    def search_issues(self, search_query: str, cursor: Optional[str] = None, page_size: int = 100) -> Page:
        self.search_calls.append((search_query, cursor))
        if self.search_errors:
            raise self.search_errors.pop(0)
        pages = self._pages_for(search_query)
        index = int(cursor[1:]) if cursor else 0
        items = pages[index] if index < len(pages) else []
        next_cursor = f"c{index + 1}" if index + 1 < len(pages) else None
        total = next((self.search_totals[t] for t in search_query.split() if t in self.search_totals), None)
        return Page(items=items, next_cursor=next_cursor, total_count=total)

    def list_comments(self, comments_url: str, cursor: Optional[int] = None, page_size: int = 100) -> Page:
        page = cursor or 1
        with self._lock:
            self.comment_calls.append((comments_url, page))
            errors = self.comment_errors.get((comments_url, page))
            if errors:
                raise errors.pop(0)
        pages = self.comments.get(comments_url, [[]])
        items = pages[page - 1] if page <= len(pages) else []
        next_cursor = page + 1 if page < len(pages) else None
        return Page(items=items, next_cursor=next_cursor)


class InMemoryUnitOfWork:
    """Stages writes; the database applies them only when the unit commits."""

    def __init__(self, db: "InMemoryDatabase") -> None:
        self.db = db
        self.repositories: Dict[int, Repository] = {}
        self.issues: Dict[int, Issue] = {}
        self.comments: Dict[int, Comment] = {}
        self.progress: Dict[int, Dict[str, Any]] = {}
        self.cursors: Dict[str, Optional[str]] = {}

    def _issue_exists(self, issue_id: int) -> bool:
        return issue_id in self.issues or issue_id in self.db.issues

    def upsert_repository(self, repository: Repository) -> bool:
        if repository.id in self.db.repositories or repository.id in self.repositories:
            return False
        self.repositories[repository.id] = repository
        return True

    def upsert_issue(self, issue: Issue) -> bool:
        if issue.repository_id not in self.db.repositories and issue.repository_id not in self.repositories:
            raise ConstraintViolation(f"repository {issue.repository_id} missing for issue {issue.id}")
        if self._issue_exists(issue.id):
            return False
        self.issues[issue.id] = issue
        return True

    def upsert_comments(self, comments: List[Comment]) -> int:
        changed = 0
        for comment in comments:
            if not self._issue_exists(comment.issue_id):
                raise ConstraintViolation(f"issue {comment.issue_id} missing for comment {comment.id}")
            existing = self.comments.get(comment.id) or self.db.comments.get(comment.id)
            if existing is None:
                self.comments[comment.id] = comment
                changed += 1
                continue
            is_toxic = existing.is_toxic or comment.is_toxic
            if existing.text != comment.text or is_toxic != existing.is_toxic:
                self.comments[comment.id] = Comment(
                    id=existing.id,
                    issue_id=existing.issue_id,
                    created_at=existing.created_at,
                    text=comment.text,
                    is_toxic=is_toxic,
                )
                changed += 1
        return changed

    def upsert_comment(self, comment: Comment) -> bool:
        return self.upsert_comments([comment]) == 1

    def save_comment_progress(self, issue_id: int, cursor: int, complete: bool, failed: bool = False) -> None:
        if not self._issue_exists(issue_id):
            raise ConstraintViolation(f"issue {issue_id} missing for progress")
        previous = self.progress.get(issue_id) or self.db.progress.get(issue_id) or {"attempts": 0}
        self.progress[issue_id] = {
            "cursor": cursor,
            "complete": complete,
            "attempts": previous["attempts"] + (1 if failed else 0),
        }

    def save_cursor(self, name: str, cursor: Optional[str]) -> None:
        self.cursors[name] = cursor


class InMemoryDatabase:
    """Thread-safe in-memory replacement for DatabaseRepository."""

    def __init__(self) -> None:
        self.repositories: Dict[int, Repository] = {}
        self.issues: Dict[int, Issue] = {}
        self.comments: Dict[int, Comment] = {}
        self.progress: Dict[int, Dict[str, Any]] = {}
        self.cursors: Dict[str, Optional[str]] = {}
        self.before_commit: Optional[Callable[[InMemoryUnitOfWork], None]] = None
        self.commits = 0
        self._lock = threading.RLock()

    @contextmanager
    def unit_of_work(self):
        with self._lock:
            uow = InMemoryUnitOfWork(self)
            yield uow
            if self.before_commit is not None:
                self.before_commit(uow)
            self.repositories.update(uow.repositories)
            self.issues.update(uow.issues)
            self.comments.update(uow.comments)
            self.progress.update(uow.progress)
            self.cursors.update(uow.cursors)
            self.commits += 1

    def load_cursor(self, name: str) -> Optional[str]:
        with self._lock:
            return self.cursors.get(name)

    def pending_comment_issues(self, limit: int, max_attempts: int) -> List[PendingIssue]:
        with self._lock:
            pending = []
            for issue_id in sorted(self.issues):
                progress = self.progress.get(issue_id, {"cursor": 1, "complete": False, "attempts": 0})
                if progress["complete"] or progress["attempts"] >= max_attempts:
                    continue
                pending.append(PendingIssue(
                    issue_id=issue_id,
                    comments_url=self.issues[issue_id].comments_url,
                    comments_cursor=progress["cursor"],
                    attempts=progress["attempts"],
                ))
            pending.sort(key=lambda p: p.attempts)
            return pending[:limit]

    def reset_comment_progress(self) -> int:
        with self._lock:
            for issue_id in self.issues:
                self.progress[issue_id] = {"cursor": 1, "complete": False, "attempts": 0}
            return len(self.issues)

    def get_table_counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "repositories": len(self.repositories),
                "issues": len(self.issues),
                "comments": len(self.comments),
            }

    def assert_referential_integrity(self) -> None:
        for issue in self.issues.values():
            assert issue.repository_id in self.repositories, f"issue {issue.id} has no repository"
        for comment in self.comments.values():
            assert comment.issue_id in self.issues, f"comment {comment.id} has no issue"
