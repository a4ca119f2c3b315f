"""Central bookkeeping of the GitHub API quota shared by all workers."""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from heated_crawler.domain.entities import RateLimitInfo
from heated_crawler.domain.errors import CrawlCancelled, RateLimitError

logger = logging.getLogger(__name__)


class RateLimitTracker:
    """Tracks remaining quota per API resource and suspends callers when it runs out.

    Every outbound call goes through :meth:`acquire`. The tracker never assumes
    quota it has not seen: until a response reports the budget for a resource,
    calls are allowed through and the first response fills in the numbers.
    Within one reset window the remaining count only goes down, so a response
    that arrives late cannot hand back quota other workers already spent.
    """

    RESET_MARGIN_SECONDS = 1

    def __init__(
        self,
        buffer: int = 0,
        wait: bool = True,
        max_wait: float = 3600.0,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            buffer: Calls to keep in reserve; waiting starts when remaining <= buffer.
            wait: Suspend until the reset time instead of failing fast.
            max_wait: Longest suspension accepted, in seconds.
            sleep: Blocking sleep used for suspensions. Defaults to waiting on
                ``stop_event`` so a stop request ends the suspension early.
            clock: Returns the current unix time.
            stop_event: Stop signal checked around every suspension.
        """
        self.buffer = buffer
        self.wait = wait
        self.max_wait = max_wait
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep or self.stop_event.wait
        self._clock = clock
        self._lock = threading.Lock()
        self._limits: Dict[str, RateLimitInfo] = {}
        self.waits = 0

    def snapshot(self, resource: str) -> Optional[RateLimitInfo]:
        with self._lock:
            return self._limits.get(resource)

    def acquire(self, resource: str):
        """Reserve one call against ``resource``, waiting for the reset if needed.

        The suspension happens outside the lock so other workers can keep
        reporting quota while one of them waits.

        Raises:
            RateLimitError: If the quota is spent and waiting is disabled or
                the reset lies further away than ``max_wait``.
            CrawlCancelled: If the stop signal is set before or during the wait.
        """
        while True:
            with self._lock:
                info = self._limits.get(resource)
                if info is None or info.remaining is None:
                    return

                if info.remaining > self.buffer:
                    self._limits[resource] = RateLimitInfo(
                        resource=resource,
                        limit=info.limit,
                        remaining=info.remaining - 1,
                        reset_at=info.reset_at,
                    )
                    return

                now = self._clock()
                reset_at = info.reset_at
                if reset_at is None:
                    raise RateLimitError(f"Rate limit exhausted for '{resource}' with unknown reset time")
                if reset_at <= now:
                    # Quota after a reset is unknown until the next response reports it
                    self._limits[resource] = RateLimitInfo(resource=resource, limit=info.limit)
                    return
                wait_time = self._wait_time(resource, reset_at, now)
                self.waits += 1

            logger.warning(f"Rate limit exhausted for '{resource}'. Waiting {wait_time:.0f} seconds...")
            self.pause(wait_time)

    def update(self, info: Optional[RateLimitInfo]):
        """Record the quota reported by a response."""
        if info is None or info.remaining is None:
            return
        with self._lock:
            current = self._limits.get(info.resource)
            if self._window_open(current) and info.remaining >= current.remaining:
                return
            self._limits[info.resource] = info
        if info.remaining <= self.buffer:
            logger.warning(f"Rate limit for '{info.resource}' down to {info.remaining} calls")

    def mark_exhausted(self, resource: str, reset_at: Optional[float]):
        """Record that the API refused a call because the quota ran out."""
        with self._lock:
            previous = self._limits.get(resource)
            self._limits[resource] = RateLimitInfo(
                resource=resource,
                limit=previous.limit if previous else None,
                remaining=0,
                reset_at=reset_at,
            )

    def pause(self, seconds: float):
        """Sleep for ``seconds`` unless the stop signal is set.

        Raises:
            CrawlCancelled: If the stop signal is set before or during the pause.
        """
        if self.stop_event.is_set():
            raise CrawlCancelled("Stop requested")
        self._sleep(seconds)
        if self.stop_event.is_set():
            raise CrawlCancelled("Stop requested")

    def _window_open(self, info: Optional[RateLimitInfo]) -> bool:
        return (
            info is not None
            and info.remaining is not None
            and info.reset_at is not None
            and info.reset_at > self._clock()
        )

    def _wait_time(self, resource: str, reset_at: float, now: float) -> float:
        wait_time = reset_at - now + self.RESET_MARGIN_SECONDS
        if not self.wait:
            raise RateLimitError(f"Rate limit exhausted for '{resource}'", reset_at=reset_at)
        if wait_time > self.max_wait:
            raise RateLimitError(
                f"Rate limit for '{resource}' resets in {wait_time:.0f}s, "
                f"longer than the allowed {self.max_wait:.0f}s wait",
                reset_at=reset_at,
            )
        return wait_time
