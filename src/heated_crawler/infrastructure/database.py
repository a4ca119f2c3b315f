"""Database connection and storage of repositories, issues and comments."""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional
import os

import psycopg2
from psycopg2.extras import execute_values
from psycopg2.pool import ThreadedConnectionPool

from heated_crawler.domain.entities import Comment, Issue, PendingIssue, Repository
from heated_crawler.domain.errors import ConstraintViolation, StorageUnavailable

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS repositories (
        id_repo BIGINT PRIMARY KEY,
        name TEXT NOT NULL,
        stars_url TEXT NOT NULL,
        forks_url TEXT NOT NULL,
        commits_url TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS issues (
        id_issue BIGINT PRIMARY KEY,
        id_repo BIGINT NOT NULL REFERENCES repositories (id_repo),
        created_at TIMESTAMPTZ,
        title TEXT NOT NULL,
        comments_url TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS comments (
        id_comment BIGINT PRIMARY KEY,
        id_issue BIGINT NOT NULL REFERENCES issues (id_issue),
        created_at TIMESTAMPTZ,
        text TEXT NOT NULL,
        is_toxic BOOLEAN NOT NULL DEFAULT FALSE
    );

    CREATE TABLE IF NOT EXISTS crawl_cursors (
        name TEXT PRIMARY KEY,
        cursor TEXT,
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS issue_progress (
        id_issue BIGINT PRIMARY KEY REFERENCES issues (id_issue),
        comments_cursor INTEGER NOT NULL DEFAULT 1,
        comments_complete BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_issues_id_repo ON issues(id_repo);
    CREATE INDEX IF NOT EXISTS idx_comments_id_issue ON comments(id_issue);
    CREATE INDEX IF NOT EXISTS idx_issue_progress_pending
        ON issue_progress(id_issue) WHERE NOT comments_complete;
"""

DATA_TABLES = ("repositories", "issues", "comments")


def build_connection_string() -> str:
    """Build a connection string from DATABASE_URL or the POSTGRES_* variables."""
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    db_host = os.getenv("POSTGRES_HOST", "localhost")
    db_port = os.getenv("POSTGRES_PORT", "5432")
    db_name = os.getenv("POSTGRES_DB", "heated_issues")
    db_user = os.getenv("POSTGRES_USER", "postgres")
    db_password = os.getenv("POSTGRES_PASSWORD", "postgres")

    return (
        f"host={db_host} port={db_port} dbname={db_name} "
        f"user={db_user} password={db_password}"
    )


class UnitOfWork:
    """Writes executed on a single connection inside one transaction."""

    def __init__(self, cursor):
        self.cursor = cursor

    def upsert_repository(self, repository: Repository) -> bool:
        """Insert the repository unless it already exists. Returns True if inserted."""
        self.cursor.execute(
            """
            INSERT INTO repositories (id_repo, name, stars_url, forks_url, commits_url)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id_repo) DO NOTHING
            """,
            (
                repository.id,
                repository.name,
                repository.stars_url,
                repository.forks_url,
                repository.commits_url,
            ),
        )
        return self.cursor.rowcount == 1

    def upsert_issue(self, issue: Issue) -> bool:
        """Insert the issue unless it already exists. Returns True if inserted."""
        self.cursor.execute(
            """
            INSERT INTO issues (id_issue, id_repo, created_at, title, comments_url)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id_issue) DO NOTHING
            """,
            (
                issue.id,
                issue.repository_id,
                issue.created_at,
                issue.title,
                issue.comments_url,
            ),
        )
        return self.cursor.rowcount == 1

    def upsert_comments(self, comments: List[Comment]) -> int:
        """
        Insert comments, refreshing the text of ones already stored.

        ``is_toxic`` only ever goes from False to True so an externally
        supplied verdict is never reset by a re-fetch.

        Returns:
            Number of rows inserted or changed
        """
        if not comments:
            return 0

        values = [
            (c.id, c.issue_id, c.created_at, c.text, c.is_toxic)
            for c in comments
        ]
        rows = execute_values(
            self.cursor,
            """
            INSERT INTO comments (id_comment, id_issue, created_at, text, is_toxic)
            VALUES %s
            ON CONFLICT (id_comment)
            DO UPDATE SET
                text = EXCLUDED.text,
                is_toxic = comments.is_toxic OR EXCLUDED.is_toxic
            WHERE comments.text IS DISTINCT FROM EXCLUDED.text
               OR (EXCLUDED.is_toxic AND NOT comments.is_toxic)
            RETURNING id_comment
            """,
            values,
            template=None,
            page_size=1000,
            fetch=True,
        )
        return len(rows)

    def upsert_comment(self, comment: Comment) -> bool:
        return self.upsert_comments([comment]) == 1

    def save_comment_progress(self, issue_id: int, cursor: int, complete: bool, failed: bool = False):
        """Record how far the issue's comment thread has been fetched."""
        self.cursor.execute(
            """
            INSERT INTO issue_progress (id_issue, comments_cursor, comments_complete, attempts)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id_issue)
            DO UPDATE SET
                comments_cursor = EXCLUDED.comments_cursor,
                comments_complete = EXCLUDED.comments_complete,
                attempts = issue_progress.attempts + EXCLUDED.attempts,
                updated_at = CURRENT_TIMESTAMP
            """,
            (issue_id, cursor, complete, 1 if failed else 0),
        )

    def save_cursor(self, name: str, cursor: Optional[str]):
        self.cursor.execute(
            """
            INSERT INTO crawl_cursors (name, cursor)
            VALUES (%s, %s)
            ON CONFLICT (name)
            DO UPDATE SET cursor = EXCLUDED.cursor, updated_at = CURRENT_TIMESTAMP
            """,
            (name, cursor),
        )


class DatabaseRepository:
    """Repository for storing locked issues and their comments in PostgreSQL."""

    def __init__(self, connection_string: Optional[str] = None, max_connections: int = 5):
        """
        Initialize database repository.

        Args:
            connection_string: PostgreSQL connection string. If None, uses env vars.
            max_connections: Upper bound of the connection pool; should cover
                the crawler's worker count.
        """
        if connection_string is None:
            connection_string = build_connection_string()

        self.connection_string = connection_string
        self.max_connections = max_connections
        self.pool: Optional[ThreadedConnectionPool] = None

    def connect(self):
        """Initialize connection pool."""
        try:
            self.pool = ThreadedConnectionPool(1, self.max_connections, self.connection_string)
            logger.info("Database connection pool created")
        except psycopg2.Error as e:
            logger.error(f"Error creating connection pool: {e}")
            raise StorageUnavailable(f"Could not connect to database: {e}") from e

    def close(self):
        """Close connection pool."""
        if self.pool:
            self.pool.closeall()
            self.pool = None
            logger.info("Database connection pool closed")

    def _get_connection(self):
        """Get a connection from the pool."""
        if not self.pool:
            self.connect()
        try:
            return self.pool.getconn()
        except psycopg2.Error as e:
            raise StorageUnavailable(f"Could not get a database connection: {e}") from e

    def _return_connection(self, conn):
        """Return a connection to the pool, discarding it if it broke."""
        if self.pool:
            self.pool.putconn(conn, close=bool(conn.closed))

    @staticmethod
    def _rollback(conn):
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """
        Run a group of writes in one transaction.

        Commits when the block exits normally and rolls back on any exception,
        so a failure never leaves half of the group in the database.

        Raises:
            ConstraintViolation: If a row breaks a key or foreign key constraint
            StorageUnavailable: If the connection or the write fails
        """
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                yield UnitOfWork(cur)
            conn.commit()
        except psycopg2.IntegrityError as e:
            self._rollback(conn)
            logger.error(f"Constraint violation: {e}")
            raise ConstraintViolation(str(e)) from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._rollback(conn)
            logger.error(f"Storage failure: {e}")
            raise StorageUnavailable(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self._return_connection(conn)

    def initialize_schema(self):
        """Create database tables if they don't exist."""
        with self.unit_of_work() as uow:
            uow.cursor.execute(SCHEMA_SQL)
        logger.info("Database schema initialized")

    def upsert_repository(self, repository: Repository) -> bool:
        with self.unit_of_work() as uow:
            return uow.upsert_repository(repository)

    def upsert_issue(self, issue: Issue) -> bool:
        with self.unit_of_work() as uow:
            return uow.upsert_issue(issue)

    def upsert_comment(self, comment: Comment) -> bool:
        with self.unit_of_work() as uow:
            return uow.upsert_comment(comment)

    def load_cursor(self, name: str) -> Optional[str]:
        """Return the stored cursor called ``name``, or None if never saved."""
        with self.unit_of_work() as uow:
            uow.cursor.execute("SELECT cursor FROM crawl_cursors WHERE name = %s", (name,))
            row = uow.cursor.fetchone()
        return row[0] if row else None

    def pending_comment_issues(self, limit: int, max_attempts: int) -> List[PendingIssue]:
        """
        Return issues whose comment thread is still incomplete.

        Issues stored without any progress row (e.g. by an older run) count as
        pending from the first page.
        """
        with self.unit_of_work() as uow:
            uow.cursor.execute(
                """
                SELECT i.id_issue, i.comments_url,
                       COALESCE(p.comments_cursor, 1), COALESCE(p.attempts, 0)
                FROM issues i
                LEFT JOIN issue_progress p ON p.id_issue = i.id_issue
                WHERE COALESCE(p.comments_complete, FALSE) = FALSE
                  AND COALESCE(p.attempts, 0) < %s
                ORDER BY COALESCE(p.attempts, 0), i.id_issue
                LIMIT %s
                """,
                (max_attempts, limit),
            )
            rows = uow.cursor.fetchall()
        return [
            PendingIssue(issue_id=row[0], comments_url=row[1], comments_cursor=row[2], attempts=row[3])
            for row in rows
        ]

    def reset_comment_progress(self) -> int:
        """Mark every issue's comment thread for a full re-fetch."""
        with self.unit_of_work() as uow:
            uow.cursor.execute(
                """
                INSERT INTO issue_progress (id_issue, comments_cursor, comments_complete, attempts)
                SELECT id_issue, 1, FALSE, 0 FROM issues
                ON CONFLICT (id_issue)
                DO UPDATE SET comments_cursor = 1, comments_complete = FALSE, attempts = 0,
                              updated_at = CURRENT_TIMESTAMP
                """
            )
            count = uow.cursor.rowcount
        logger.info(f"Reset comment progress of {count} issues")
        return count

    def get_table_counts(self) -> Dict[str, int]:
        """Get the number of rows in each data table."""
        counts = {}
        with self.unit_of_work() as uow:
            for table in DATA_TABLES:
                uow.cursor.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = uow.cursor.fetchone()[0]
        return counts
