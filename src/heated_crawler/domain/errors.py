"""Error taxonomy shared by the API client, the storage layer and the crawler."""

from datetime import datetime, timezone
from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""
    pass


class AuthError(CrawlerError):
    """Raised when the GitHub token is missing or rejected. Fatal."""
    pass


class RateLimitError(CrawlerError):
    """Raised when the API quota is exhausted and the caller may not wait."""

    def __init__(self, message: str, reset_at: Optional[float] = None):
        super().__init__(message)
        self.reset_at = reset_at

    def __str__(self) -> str:
        message = super().__str__()
        if self.reset_at is None:
            return message
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()
        return f"{message} (resets at {reset})"


class TransientError(CrawlerError):
    """Raised for network failures and 5xx responses that survived all retries."""
    pass


class NotFoundError(CrawlerError):
    """Raised when a resource no longer exists or is not accessible."""
    pass


class ConstraintViolation(CrawlerError):
    """Raised when the database rejects a row for integrity reasons."""
    pass


class StorageUnavailable(CrawlerError):
    """Raised when the database cannot be reached or a write fails."""
    pass


class CrawlCancelled(CrawlerError):
    """Raised when a wait is interrupted by the stop signal."""
    pass
