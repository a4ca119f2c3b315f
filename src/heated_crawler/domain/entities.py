"""Domain entities for locked issues, their repositories and comments."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional


@dataclass(frozen=True)
class Repository:
    """Immutable repository entity, synthesized from an issue's repository summary."""

    id: int
    name: str
    stars_url: str
    forks_url: str
    commits_url: str


@dataclass(frozen=True)
class Issue:
    """Immutable issue entity."""

    id: int
    repository_id: int
    created_at: datetime
    title: str
    comments_url: str
    number: Optional[int] = None


@dataclass(frozen=True)
class Comment:
    """Issue comment. ``is_toxic`` is supplied from outside and defaults to False."""

    id: int
    issue_id: int
    created_at: datetime
    text: str
    is_toxic: bool = False


@dataclass(frozen=True)
class IssueCandidate:
    """A discovered issue together with the repository it belongs to."""

    repository: Repository
    issue: Issue

    @property
    def identity(self) -> tuple[int, int]:
        return (self.repository.id, self.issue.id)


@dataclass(frozen=True)
class PendingIssue:
    """A stored issue whose comment thread has not been fetched completely."""

    issue_id: int
    comments_url: str
    comments_cursor: int = 1
    attempts: int = 0


@dataclass(frozen=True)
class RateLimitInfo:
    """Quota snapshot for one API resource."""

    resource: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None


@dataclass
class Page:
    """One page of raw items returned by the API client."""

    items: List[Any]
    next_cursor: Optional[Any] = None
    rate_limit: Optional[RateLimitInfo] = None
    total_count: Optional[int] = None

    @property
    def has_next(self) -> bool:
        return self.next_cursor is not None


@dataclass
class CommentThread:
    """Result of paginating one issue's comments, possibly partial."""

    issue_id: int
    comments: List[Comment] = field(default_factory=list)
    next_cursor: int = 1
    complete: bool = False
    error: Optional[Exception] = None


def parse_github_datetime(value: str) -> datetime:
    """Parse GitHub's ISO-8601 timestamps (``2024-01-01T00:00:00Z``)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
