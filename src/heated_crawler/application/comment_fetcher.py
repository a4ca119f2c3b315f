"""Pagination of an issue's comment thread."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from heated_crawler.domain.entities import Comment, CommentThread, parse_github_datetime
from heated_crawler.domain.errors import NotFoundError, RateLimitError, TransientError
from heated_crawler.infrastructure.github_client import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class CommentPage:
    comments: List[Comment] = field(default_factory=list)
    next_cursor: Optional[int] = None
    exhausted: bool = True


def parse_comment(item: Dict[str, Any], issue_id: int) -> Comment:
    # is_toxic is only present when an external classifier annotated the payload
    return Comment(
        id=item["id"],
        issue_id=issue_id,
        created_at=parse_github_datetime(item["created_at"]),
        text=item.get("body") or "",
        is_toxic=bool(item.get("is_toxic", False)),
    )


class CommentFetcher:
    """Fetches issue comments page by page, in thread order."""

    MAX_PAGES = 50

    def __init__(self, github_client: GitHubClient, page_size: int = 100, max_pages: int = MAX_PAGES):
        self.github_client = github_client
        self.page_size = page_size
        self.max_pages = max_pages

    def fetch_comments(self, comments_url: str, issue_id: int, cursor: Optional[int] = None) -> CommentPage:
        """Fetch one page of comments starting at page ``cursor``."""
        page = self.github_client.list_comments(comments_url, cursor=cursor, page_size=self.page_size)
        comments = [parse_comment(item, issue_id) for item in page.items]
        return CommentPage(
            comments=comments,
            next_cursor=page.next_cursor,
            exhausted=page.next_cursor is None or not page.items,
        )

    def fetch_thread(self, issue_id: int, comments_url: str, start_cursor: int = 1) -> CommentThread:
        """
        Paginate an issue's comments, stopping after ``max_pages`` pages.

        Failures are captured on the returned thread rather than raised, so the
        caller can persist what was fetched and resume from ``next_cursor``
        later. Only AuthError, CrawlCancelled and anything outside the
        crawler's error taxonomy propagate.
        """
        thread = CommentThread(issue_id=issue_id, next_cursor=start_cursor)
        cursor = start_cursor

        for _ in range(self.max_pages):
            logger.debug(f"Retrieving comments: {comments_url} (page {cursor})")
            try:
                page = self.fetch_comments(comments_url, issue_id, cursor)
            except NotFoundError as e:
                logger.warning(f"Comments of issue {issue_id} are gone: {e}")
                thread.complete = True
                thread.error = e
                return thread
            except (TransientError, RateLimitError) as e:
                logger.warning(f"Failed to fetch comments of issue {issue_id} at page {cursor}: {e}")
                thread.error = e
                return thread

            thread.comments.extend(page.comments)
            if page.exhausted:
                thread.complete = True
                return thread
            cursor = page.next_cursor
            thread.next_cursor = cursor

        logger.warning(f"Issue {issue_id} has more than {self.max_pages} pages of comments; continuing later")
        return thread
