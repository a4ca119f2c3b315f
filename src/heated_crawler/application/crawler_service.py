"""Application service for crawling "too heated" issues and their comments."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple, TypeVar

from heated_crawler.application.comment_fetcher import CommentFetcher
from heated_crawler.application.issue_discovery import IssueDiscovery
from heated_crawler.domain.entities import CommentThread, IssueCandidate, PendingIssue
from heated_crawler.domain.errors import (
    ConstraintViolation,
    CrawlCancelled,
    NotFoundError,
    RateLimitError,
    StorageUnavailable,
    TransientError,
)
from heated_crawler.infrastructure.database import DatabaseRepository, UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCOVERY_CURSOR = "discovery"


class CrawlState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    FETCHING_COMMENTS = "fetching_comments"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CrawlReport:
    """Summary of one crawler run."""

    state: CrawlState = CrawlState.IDLE
    iterations: int = 0
    issues_discovered: int = 0
    issues_persisted: int = 0
    comments_persisted: int = 0
    comment_failures: int = 0
    stop_reason: Optional[str] = None
    cursor: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == CrawlState.DONE


class CrawlerService:
    """Drives discovery, comment fetching and persistence for a bounded number of iterations.

    One iteration handles one page of the discovery feed. Comment threads of the
    page's issues are fetched concurrently, then every issue is written in its
    own transaction (repository, issue, comments, progress marker). The
    discovery cursor is saved only once the whole page is persisted.
    """

    MAX_STORAGE_RETRIES = 3
    STORAGE_RETRY_DELAY_SECONDS = 2
    TOLERATED_CONSTRAINT_VIOLATIONS = 1

    def __init__(
        self,
        issue_discovery: IssueDiscovery,
        comment_fetcher: CommentFetcher,
        database_repository: DatabaseRepository,
        max_workers: int = 4,
        retry_batch_size: int = 20,
        max_comment_attempts: int = 5,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize crawler service.

        Args:
            issue_discovery: Source of "too heated" issues
            comment_fetcher: Fetches comment threads
            database_repository: Database repository for storing data
            max_workers: Issues processed concurrently within an iteration
            retry_batch_size: Incomplete comment threads retried per iteration
            max_comment_attempts: Failed attempts after which a thread is no longer retried
            stop_event: Set from outside to stop the run cleanly
            sleep: Blocking sleep used between storage retries
        """
        self.issue_discovery = issue_discovery
        self.comment_fetcher = comment_fetcher
        self.database_repository = database_repository
        self.max_workers = max_workers
        self.retry_batch_size = retry_batch_size
        self.max_comment_attempts = max_comment_attempts
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep

        self.state = CrawlState.IDLE
        self.report = CrawlReport()
        self._lock = threading.Lock()
        self._constraint_violations = 0

    def _set_state(self, state: CrawlState):
        if state != self.state:
            logger.debug(f"Crawler state: {self.state.value} -> {state.value}")
        self.state = state
        self.report.state = state

    def _with_storage_retries(self, operation: Callable[[], T]) -> T:
        for attempt in range(self.MAX_STORAGE_RETRIES + 1):
            try:
                return operation()
            except StorageUnavailable as e:
                if attempt >= self.MAX_STORAGE_RETRIES:
                    raise
                delay = self.STORAGE_RETRY_DELAY_SECONDS * (2 ** attempt)
                logger.warning(
                    f"Storage unavailable (attempt {attempt + 1}/{self.MAX_STORAGE_RETRIES + 1}): {e}. "
                    f"Retrying in {delay}s..."
                )
                self._sleep(delay)
        raise StorageUnavailable("Max retries exceeded")

    def _write(self, work: Callable[[UnitOfWork], T]) -> T:
        def run() -> T:
            with self.database_repository.unit_of_work() as uow:
                return work(uow)

        return self._with_storage_retries(run)

    def _record_constraint_violation(self, error: ConstraintViolation):
        with self._lock:
            self._constraint_violations += 1
            count = self._constraint_violations
        if count > self.TOLERATED_CONSTRAINT_VIOLATIONS:
            raise error
        logger.error(f"Constraint violation, skipping issue: {error}")

    def _count(self, **increments: int):
        with self._lock:
            for name, value in increments.items():
                setattr(self.report, name, getattr(self.report, name) + value)

    def crawl(self, iterations: int, cursor: Optional[str] = None) -> CrawlReport:
        """
        Crawl "too heated" issues for at most ``iterations`` discovery pages.

        Args:
            iterations: Iteration budget
            cursor: Discovery cursor to start from. If None, resumes from the
                cursor stored by the previous run.

        Returns:
            Report of the run; its state is DONE

        Raises:
            AuthError, ConstraintViolation, StorageUnavailable: Fatal errors;
                the state is FAILED and already persisted work stays
        """
        self.report = CrawlReport()
        self._constraint_violations = 0
        self._set_state(CrawlState.IDLE)
        logger.info(f"Starting crawl for {iterations} iterations")

        try:
            if cursor is None:
                cursor = self._with_storage_retries(
                    lambda: self.database_repository.load_cursor(DISCOVERY_CURSOR)
                )
            self.report.cursor = cursor

            for iteration in range(iterations):
                if self.stop_event.is_set():
                    self.report.stop_reason = "stopped"
                    break

                self.report.iterations += 1
                logger.info(f"Iteration {iteration + 1}/{iterations} (cursor: {cursor})")
                self._retry_pending_comments()

                self._set_state(CrawlState.DISCOVERING)
                try:
                    page = self.issue_discovery.discover_heated_issues(cursor)
                except (TransientError, NotFoundError) as e:
                    logger.error(f"Discovery failed, cursor not advanced: {e}")
                    continue
                self._count(issues_discovered=len(page.issues))

                if not self._process_candidates(page.issues):
                    if self.stop_event.is_set():
                        self.report.stop_reason = "stopped"
                        break
                    logger.warning("Not every issue of the page was stored, the page will be read again")
                    continue

                if page.next_cursor != cursor:
                    next_cursor = page.next_cursor
                    self._write(lambda uow: uow.save_cursor(DISCOVERY_CURSOR, next_cursor))
                    cursor = next_cursor
                    self.report.cursor = cursor

                if page.exhausted and not self._has_pending_comments():
                    logger.info("Discovery feed exhausted and no comment threads pending")
                    self.report.stop_reason = "exhausted"
                    break
            else:
                self.report.stop_reason = "budget"

        except RateLimitError as e:
            logger.warning(f"Stopping crawl: {e}")
            self.report.stop_reason = "rate_limited"
        except CrawlCancelled:
            logger.warning("Stop requested, crawl interrupted")
            self.report.stop_reason = "stopped"
        except BaseException as e:
            self._set_state(CrawlState.FAILED)
            logger.error(f"Crawl failed: {e}")
            raise

        self._set_state(CrawlState.DONE)
        logger.info(
            f"Crawl completed ({self.report.stop_reason}). Iterations: {self.report.iterations}, "
            f"issues discovered: {self.report.issues_discovered}, "
            f"issues persisted: {self.report.issues_persisted}, "
            f"comments persisted: {self.report.comments_persisted}, "
            f"comment failures: {self.report.comment_failures}"
        )
        return self.report

    def populate_comments(self, refresh: bool = False) -> CrawlReport:
        """
        Fetch the comment threads of stored issues without running discovery.

        Args:
            refresh: Re-fetch every issue's thread, not only incomplete ones
        """
        self.report = CrawlReport()
        self._constraint_violations = 0
        self._set_state(CrawlState.IDLE)

        try:
            if refresh:
                self._with_storage_retries(self.database_repository.reset_comment_progress)

            while not self.stop_event.is_set():
                self.report.iterations += 1
                if self._retry_pending_comments() == 0:
                    self.report.stop_reason = "exhausted"
                    break
            else:
                self.report.stop_reason = "stopped"
        except RateLimitError as e:
            logger.warning(f"Stopping comment population: {e}")
            self.report.stop_reason = "rate_limited"
        except CrawlCancelled:
            logger.warning("Stop requested, comment population interrupted")
            self.report.stop_reason = "stopped"
        except BaseException as e:
            self._set_state(CrawlState.FAILED)
            logger.error(f"Comment population failed: {e}")
            raise

        self._set_state(CrawlState.DONE)
        logger.info(
            f"Comment population completed. Comments persisted: {self.report.comments_persisted}, "
            f"failures: {self.report.comment_failures}"
        )
        return self.report

    def _has_pending_comments(self) -> bool:
        pending = self._with_storage_retries(
            lambda: self.database_repository.pending_comment_issues(1, self.max_comment_attempts)
        )
        return bool(pending)

    def _fetch_thread(self, issue_id: int, comments_url: str, start_cursor: int) -> Optional[CommentThread]:
        if self.stop_event.is_set():
            return None
        return self.comment_fetcher.fetch_thread(issue_id, comments_url, start_cursor)

    def _fetch_threads(self, jobs: List[Tuple[int, str, int]]) -> List[Optional[CommentThread]]:
        """Fetch comment threads concurrently and wait for all of them."""
        self._set_state(CrawlState.FETCHING_COMMENTS)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(lambda job: self._fetch_thread(*job), jobs))

    def _process_candidates(self, candidates: List[IssueCandidate]) -> bool:
        """Fetch and persist the issues of one discovery page.

        Returns True when every issue was persisted. Issues that were not are
        forgotten by discovery so that reading the page again returns them.
        """
        if not candidates:
            return True

        stored = set()
        try:
            threads = self._fetch_threads(
                [(c.issue.id, c.issue.comments_url, 1) for c in candidates]
            )

            self._set_state(CrawlState.PERSISTING)
            fetched = [(c, t) for c, t in zip(candidates, threads) if t is not None]
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                persisted = list(executor.map(lambda pair: self._persist_candidate(*pair), fetched))
            stored = {c.identity for (c, _), ok in zip(fetched, persisted) if ok}
        finally:
            for candidate in candidates:
                if candidate.identity not in stored:
                    self.issue_discovery.forget(candidate)
        return len(stored) == len(candidates)

    def _persist_candidate(self, candidate: IssueCandidate, thread: CommentThread) -> bool:
        issue = candidate.issue
        failed = thread.error is not None and not thread.complete

        def work(uow: UnitOfWork) -> int:
            uow.upsert_repository(candidate.repository)
            uow.upsert_issue(issue)
            count = uow.upsert_comments(thread.comments)
            uow.save_comment_progress(issue.id, thread.next_cursor, thread.complete, failed=failed)
            return count

        try:
            count = self._write(work)
        except ConstraintViolation as e:
            self._record_constraint_violation(e)
            return False

        self._count(issues_persisted=1, comments_persisted=count, comment_failures=int(failed))
        logger.info(
            f"Stored issue {issue.id} of {candidate.repository.name} "
            f"with {len(thread.comments)} comments"
            + ("" if thread.complete else " (comments incomplete)")
        )
        return True

    def _retry_pending_comments(self) -> int:
        """Continue comment threads left incomplete by earlier iterations.

        Returns the number of pending threads that were picked up.
        """
        pending: List[PendingIssue] = self._with_storage_retries(
            lambda: self.database_repository.pending_comment_issues(
                self.retry_batch_size, self.max_comment_attempts
            )
        )
        if not pending:
            return 0

        logger.info(f"Retrying comments of {len(pending)} issues")
        threads = self._fetch_threads(
            [(p.issue_id, p.comments_url, p.comments_cursor) for p in pending]
        )

        self._set_state(CrawlState.PERSISTING)
        for thread in threads:
            if thread is not None:
                self._persist_thread(thread)
        return len(pending)

    def _persist_thread(self, thread: CommentThread):
        failed = thread.error is not None and not thread.complete

        def work(uow: UnitOfWork) -> int:
            count = uow.upsert_comments(thread.comments)
            uow.save_comment_progress(thread.issue_id, thread.next_cursor, thread.complete, failed=failed)
            return count

        try:
            count = self._write(work)
        except ConstraintViolation as e:
            self._record_constraint_violation(e)
            return

        self._count(comments_persisted=count, comment_failures=int(failed))
