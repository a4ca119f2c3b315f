#!/usr/bin/env python3
"""Script to crawl GitHub issues locked as "too heated" and store them with their comments."""

import argparse
import logging
import os
import signal
import sys
import threading

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from heated_crawler.application.comment_fetcher import CommentFetcher
from heated_crawler.application.crawler_service import CrawlerService, DISCOVERY_CURSOR
from heated_crawler.application.issue_discovery import IssueDiscovery, build_search_windows
from heated_crawler.config import CrawlerConfig
from heated_crawler.infrastructure.database import DatabaseRepository
from heated_crawler.infrastructure.github_client import GitHubClient
from heated_crawler.infrastructure.rate_limit import RateLimitTracker

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("-d", "--database-url", help="PostgreSQL connection string (default: DATABASE_URL)")
    parser.add_argument("-i", "--iterations", type=int, help="Discovery pages to process (default: ITERATIONS)")
    parser.add_argument("--populate-comments", action="store_true",
                        help="Only fetch comments of already stored issues")
    parser.add_argument("--refresh", action="store_true",
                        help="With --populate-comments, re-fetch every thread")
    parser.add_argument("--restart", action="store_true",
                        help="Ignore the stored discovery cursor and start from the first window")
    parser.add_argument("-w", "--workers", type=int, help="Concurrent comment fetches (default: MAX_WORKERS)")
    parser.add_argument("--no-wait", action="store_true",
                        help="Stop instead of waiting when the rate limit is exhausted")
    parser.add_argument("--init-schema", action="store_true",
                        help="Create the database tables and exit")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CrawlerConfig:
    config = CrawlerConfig.from_env()
    if args.database_url:
        config.database_url = args.database_url
    if args.iterations is not None:
        config.iterations = args.iterations
    if args.workers is not None:
        config.max_workers = args.workers
    if args.no_wait:
        config.wait_on_rate_limit = False
    if args.log_level:
        config.log_level = args.log_level.upper()
    return config


def install_stop_handlers(stop_event: threading.Event):
    def handle(signum, frame):
        logger.warning(f"Received signal {signum}, finishing in-flight work...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv=None):
    """Crawl "too heated" issues and store them in the database."""
    args = parse_args(argv)
    config = build_config(args)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    db_repository = None
    try:
        db_repository = DatabaseRepository(config.database_url, max_connections=config.max_workers + 1)
        db_repository.connect()

        if args.init_schema:
            db_repository.initialize_schema()
            logger.info("Database schema setup completed successfully")
            return 0

        stop_event = threading.Event()
        install_stop_handlers(stop_event)

        rate_limiter = RateLimitTracker(
            buffer=config.rate_limit_buffer,
            wait=config.wait_on_rate_limit,
            max_wait=config.max_rate_limit_wait,
            stop_event=stop_event,
        )
        github_client = GitHubClient(token=config.github_token, rate_limiter=rate_limiter, stop_event=stop_event)

        crawler = CrawlerService(
            IssueDiscovery(
                github_client,
                windows=build_search_windows(config.search_window_days),
                page_size=config.page_size,
            ),
            CommentFetcher(github_client, page_size=config.page_size, max_pages=config.max_comment_pages),
            db_repository,
            max_workers=config.max_workers,
            max_comment_attempts=config.max_comment_attempts,
            stop_event=stop_event,
        )

        if args.populate_comments:
            logger.info("Retrieving and storing comments for stored issues...")
            report = crawler.populate_comments(refresh=args.refresh)
        else:
            if args.restart:
                with db_repository.unit_of_work() as uow:
                    uow.save_cursor(DISCOVERY_CURSOR, None)
            report = crawler.crawl(config.iterations)

        counts = db_repository.get_table_counts()
        logger.info(f"Rows in database: {counts}")
        return 0 if report.succeeded else 1

    except Exception as e:
        logger.error(f"Crawl failed: {e}", exc_info=True)
        return 1
    finally:
        if db_repository is not None:
            db_repository.close()


if __name__ == "__main__":
    sys.exit(main())
