from __future__ import annotations

import os
import sqlite3
import subprocess
import sys
from pathlib import Path


def _alembic(repo_root: Path, env: dict[str, str], *args: str) -> None:
    subprocess.run(
        [sys.executable, "-m", "alembic", "-c", "alembic.ini", *args],
        cwd=repo_root,
        env=env,
        check=True,
    )


def _tables(conn: sqlite3.Connection) -> set[str]:
    cur = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    return {row[0] for row in cur.fetchall()}


def test_alembic_upgrade_and_downgrade_for_queue_table(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[2]
    db_path = tmp_path / "migration_test.db"
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{db_path}"

    _alembic(repo_root, env, "upgrade", "head")

    conn = sqlite3.connect(db_path)
    assert {
        "companies",
        "candidates",
        "jobs",
        "applications",
        "parsed_cvs",
        "job_embeddings",
        "workflow_executions",
        "match_results",
        "queue_jobs",
    } <= _tables(conn)

    cur = conn.execute("PRAGMA table_info(queue_jobs)")
    queue_cols = {row[1] for row in cur.fetchall()}
    assert {"priority", "attempts", "max_attempts", "available_at", "result_json"} <= queue_cols

    _alembic(repo_root, env, "downgrade", "0001_initial_schema")

    tables = _tables(conn)
    assert "queue_jobs" not in tables
    assert "workflow_executions" in tables

    conn.close()
