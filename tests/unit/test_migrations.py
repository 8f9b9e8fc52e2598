import sqlite3
from pathlib import Path

import pytest

from sage.db.connection import get_conn
from sage.db.migrations.runner import run_migrations


def _write(directory: Path, name: str, sql: str) -> None:
    directory.mkdir(exist_ok=True)
    (directory / name).write_text(sql)


def test_semicolons_inside_literals_and_triggers(tmp_path: Path) -> None:
    migrations = tmp_path / "migrations"
    _write(
        migrations,
        "0001_notes.sql",
        """
        CREATE TABLE notes (body TEXT NOT NULL, touched INTEGER NOT NULL DEFAULT 0);
        INSERT INTO notes(body) VALUES('first; second');
        CREATE TRIGGER notes_touch AFTER UPDATE OF body ON notes
        BEGIN
          UPDATE notes SET touched = touched + 1 WHERE rowid = NEW.rowid;
        END;
        """,
    )
    db = str(tmp_path / "custom.db")

    assert run_migrations(db, migrations) == ["0001_notes.sql"]
    assert run_migrations(db, migrations) == []

    with get_conn(db) as conn:
        conn.execute("UPDATE notes SET body='third; fourth'")
        row = conn.execute("SELECT body, touched FROM notes").fetchone()
    assert (row["body"], row["touched"]) == ("third; fourth", 1)


def test_failing_migration_leaves_no_trace(tmp_path: Path) -> None:
    migrations = tmp_path / "migrations"
    _write(migrations, "0001_ok.sql", "CREATE TABLE ok (id INTEGER PRIMARY KEY);")
    _write(
        migrations,
        "0002_broken.sql",
        "CREATE TABLE half_done (id INTEGER);\nINSERT INTO missing_table VALUES (1);",
    )
    db = str(tmp_path / "custom.db")

    with pytest.raises(sqlite3.OperationalError):
        run_migrations(db, migrations)

    with get_conn(db) as conn:
        applied = {row["name"] for row in conn.execute("SELECT name FROM schema_migrations")}
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    assert applied == {"0001_ok.sql"}
    assert "ok" in tables
    assert "half_done" not in tables
