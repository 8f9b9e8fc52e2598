"""Simple SQL migration runner."""

import logging
import sqlite3
from pathlib import Path

from sage.db.connection import get_conn

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent


def pending_migrations(applied: set[str], directory: Path = MIGRATIONS_DIR) -> list[Path]:
    return [file for file in sorted(directory.glob("*.sql")) if file.name not in applied]


def _migration_script(file: Path) -> str:
    name = file.name.replace("'", "''")
    # The bookkeeping row goes first so a concurrent runner that lost the race fails fast.
    return (
        "BEGIN IMMEDIATE;\n"
        "INSERT INTO schema_migrations(name, applied_at) "
        f"VALUES('{name}', datetime('now'));\n"
        f"{file.read_text()}\n;\n"
        "COMMIT;\n"
    )


def _is_applied(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute("SELECT 1 FROM schema_migrations WHERE name=?", (name,)).fetchone()
    return row is not None


def run_migrations(path: str | None = None, directory: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply unapplied ``*.sql`` files in name order; returns the names applied.

    Each file runs through ``executescript`` inside its own transaction, so a
    failing file leaves neither its schema changes nor its bookkeeping row.
    """
    ran: list[str] = []
    with get_conn(path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations("
            "name TEXT PRIMARY KEY, "
            "applied_at TEXT NOT NULL)"
        )
        applied = {
            row[0] for row in conn.execute("SELECT name FROM schema_migrations").fetchall()
        }
        for file in pending_migrations(applied, directory):
            try:
                conn.executescript(_migration_script(file))
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.rollback()
                if _is_applied(conn, file.name):
                    logger.info("migration %s already applied by another runner", file.name)
                    continue
                raise
            ran.append(file.name)
    return ran


if __name__ == "__main__":
    run_migrations()
