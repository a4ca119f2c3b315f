#!/usr/bin/env python3
"""Script to dump the crawled issues and comments to CSV and JSON."""

import logging
import sys
import os
import csv
import json
from datetime import datetime

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import psycopg2
from psycopg2.extras import RealDictCursor

from heated_crawler.infrastructure.database import build_connection_string

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


QUERIES = {
    "repositories": """
        SELECT id_repo, name, stars_url, forks_url, commits_url
        FROM repositories
        ORDER BY id_repo
    """,
    "issues": """
        SELECT i.id_issue, i.id_repo, r.name AS repository, i.created_at, i.title, i.comments_url
        FROM issues i
        JOIN repositories r ON r.id_repo = i.id_repo
        ORDER BY i.created_at DESC
    """,
    "comments": """
        SELECT id_comment, id_issue, created_at, text, is_toxic
        FROM comments
        ORDER BY id_issue, created_at
    """,
}


def fetch_rows(conn, query: str) -> list:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(query)
        rows = []
        for row in cur.fetchall():
            row_dict = dict(row)
            # Convert datetime objects to ISO format strings
            for key, value in row_dict.items():
                if isinstance(value, datetime):
                    row_dict[key] = value.isoformat()
            rows.append(row_dict)
        return rows


def dump_to_csv(rows: list, output_file: str):
    """Dump rows to CSV."""
    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=rows[0].keys())
        writer.writeheader()
        writer.writerows(rows)
    logger.info(f"Dumped {len(rows)} rows to {output_file}")


def dump_to_json(rows: list, output_file: str):
    """Dump rows to JSON."""
    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)
    logger.info(f"Dumped {len(rows)} rows to {output_file}")


def main():
    """Dump every table to CSV and JSON."""
    try:
        output_dir = os.getenv("OUTPUT_DIR", "artifacts")
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        conn = psycopg2.connect(build_connection_string())
        try:
            for table, query in QUERIES.items():
                rows = fetch_rows(conn, query)
                if not rows:
                    logger.warning(f"No {table} to dump")
                    continue
                dump_to_csv(rows, os.path.join(output_dir, f"{table}_{timestamp}.csv"))
                dump_to_json(rows, os.path.join(output_dir, f"{table}_{timestamp}.json"))
        finally:
            conn.close()

        logger.info(f"Database dump completed in {output_dir}")
        return 0
    except Exception as e:
        logger.error(f"Database dump failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
