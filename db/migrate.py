#!/usr/bin/env python3
"""
Agro analysis database migration runner.

Usage:
    python3 db/migrate.py

Reads DATABASE_URL from environment. Applies every *.sql file in
db/migrations/ in numeric filename order, one transaction per file, and
records it in schema_migrations. Exits non-zero on the first failure.
"""

import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

logging.basicConfig(
    level=logging.INFO,
    format='{"ts":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}',
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("migrator")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     TEXT        NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def get_connection():
    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL environment variable is not set")
        sys.exit(1)
    logger.info("Connecting to database")
    return psycopg2.connect(db_url)


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    files: list[tuple[str, Path]] = []
    for file_path in directory.glob("*.sql"):
        match = re.match(r"^(\d+)", file_path.name)
        if match:
            files.append((match.group(1), file_path))
    return sorted(files, key=lambda item: int(item[0]))


def applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cur.fetchall()}


def run_migrations(conn, directory: Path = MIGRATIONS_DIR) -> int:
    conn.autocommit = False
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
    conn.commit()

    migration_files = get_migration_files(directory)
    if not migration_files:
        logger.warning(f"No migration files found in {directory}")
        return 0

    done = applied_versions(conn)
    applied_count = 0
    for version, file_path in migration_files:
        if version in done:
            logger.info(f"Skipping {file_path.name} (already applied)")
            continue

        logger.info(f"Applying {file_path.name}")
        sql = file_path.read_text(encoding="utf-8")
        try:
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.execute(
                    "INSERT INTO schema_migrations (version, filename) VALUES (%s, %s)",
                    (version, file_path.name),
                )
            conn.commit()
        except psycopg2.Error as exc:
            conn.rollback()
            logger.error(f"Migration {file_path.name} FAILED: {exc}")
            raise
        logger.info(f"Applied {file_path.name} successfully")
        applied_count += 1

    return applied_count


def main():
    logger.info("Starting migration runner")
    conn = get_connection()
    try:
        applied = run_migrations(conn)
    except psycopg2.Error:
        sys.exit(1)
    finally:
        conn.close()
    logger.info(f"Migration complete. {applied} migration(s) applied.")
    sys.exit(0)


if __name__ == "__main__":
    main()
