from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


SCHEMA = """
CREATE TABLE IF NOT EXISTS dependencies (
    node_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    version TEXT NOT NULL,
    observed_at INTEGER NOT NULL,
    PRIMARY KEY (node_id, name, type)
);

CREATE INDEX IF NOT EXISTS idx_dependencies_type_name ON dependencies (type, name);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    node_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    cause TEXT,
    log_closed INTEGER NOT NULL DEFAULT 0,
    created_ts INTEGER NOT NULL,
    finished_ts INTEGER
);

CREATE TABLE IF NOT EXISTS task_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    ts INTEGER NOT NULL,
    stream TEXT NOT NULL,
    line TEXT NOT NULL,
    FOREIGN KEY(task_id) REFERENCES tasks(id)
);
"""

BUSY_TIMEOUT_SEC = 30.0


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SEC, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    conn.commit()


def replace_node_dependencies(
    conn: sqlite3.Connection,
    node_id: str,
    dep_type: str,
    rows: Iterable[Tuple[str, str]],
) -> int:
    now = int(time.time())
    count = 0
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            "DELETE FROM dependencies WHERE node_id = ? AND type = ?",
            (node_id, dep_type),
        )
        for name, version in rows:
            conn.execute(
                """
                INSERT OR REPLACE INTO dependencies (node_id, name, type, version, observed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (node_id, name, dep_type, version, now),
            )
            count += 1
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    return count


def select_dependencies_by_name(
    conn: sqlite3.Connection, dep_type: str, names: Sequence[str]
) -> List[Dict]:
    placeholders = ", ".join("?" for _ in names)
    rows = conn.execute(
        f"SELECT node_id, name, version FROM dependencies WHERE type = ? AND name IN ({placeholders})",
        (dep_type, *names),
    ).fetchall()
    return [dict(row) for row in rows]


def list_node_dependencies(conn: sqlite3.Connection, node_id: str, dep_type: str) -> List[Dict]:
    rows = conn.execute(
        "SELECT * FROM dependencies WHERE node_id = ? AND type = ? ORDER BY name ASC",
        (node_id, dep_type),
    ).fetchall()
    return [dict(row) for row in rows]


def insert_task(conn: sqlite3.Connection, task_id: str, node_id: str, action: str, status: str) -> None:
    conn.execute(
        "INSERT INTO tasks (id, node_id, action, status, created_ts) VALUES (?, ?, ?, ?, ?)",
        (task_id, node_id, action, status, int(time.time())),
    )
    conn.commit()


def get_task(conn: sqlite3.Connection, task_id: str) -> Optional[Dict]:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return dict(row) if row else None


def update_task(conn: sqlite3.Connection, task_id: str, updates: Dict) -> Optional[Dict]:
    if not updates:
        return get_task(conn, task_id)
    keys = list(updates.keys())
    assignments = ", ".join([f"{key} = ?" for key in keys])
    values = [updates[key] for key in keys]
    values.append(task_id)
    conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", values)
    conn.commit()
    return get_task(conn, task_id)


def insert_task_log(conn: sqlite3.Connection, task_id: str, stream: str, line: str) -> None:
    conn.execute(
        "INSERT INTO task_logs (task_id, ts, stream, line) VALUES (?, ?, ?, ?)",
        (task_id, int(time.time()), stream, line),
    )
    conn.commit()


def get_task_logs(conn: sqlite3.Connection, task_id: str, tail: Optional[int] = None) -> List[Dict]:
    if tail is None:
        rows = conn.execute(
            "SELECT ts, stream, line FROM task_logs WHERE task_id = ? ORDER BY id ASC",
            (task_id,),
        ).fetchall()
        return [dict(row) for row in rows]
    rows = conn.execute(
        "SELECT ts, stream, line FROM task_logs WHERE task_id = ? ORDER BY id DESC LIMIT ?",
        (task_id, tail),
    ).fetchall()
    logs = [dict(row) for row in rows]
    logs.reverse()
    return logs
