"""Runtime configuration read from environment variables."""

import os
from dataclasses import dataclass
from typing import Optional

from heated_crawler.infrastructure.database import build_connection_string


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass
class CrawlerConfig:
    """Settings for one crawler run."""

    database_url: str
    github_token: Optional[str] = None
    iterations: int = 1
    max_workers: int = 4
    page_size: int = 100
    wait_on_rate_limit: bool = True
    max_rate_limit_wait: int = 3600
    rate_limit_buffer: int = 10
    search_window_days: int = 7
    max_comment_pages: int = 50
    max_comment_attempts: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "CrawlerConfig":
        return cls(
            database_url=build_connection_string(),
            github_token=os.getenv("GITHUB_TOKEN"),
            iterations=_env_int("ITERATIONS", 1),
            max_workers=_env_int("MAX_WORKERS", 4),
            page_size=_env_int("PAGE_SIZE", 100),
            wait_on_rate_limit=_env_bool("WAIT_ON_RATE_LIMIT", True),
            max_rate_limit_wait=_env_int("MAX_RATE_LIMIT_WAIT", 3600),
            rate_limit_buffer=_env_int("RATE_LIMIT_BUFFER", 10),
            search_window_days=_env_int("SEARCH_WINDOW_DAYS", 7),
            max_comment_pages=_env_int("MAX_COMMENT_PAGES", 50),
            max_comment_attempts=_env_int("MAX_COMMENT_ATTEMPTS", 5),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
