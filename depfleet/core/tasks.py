from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import closing
from typing import Dict, List, Optional

from depfleet.core import db
from depfleet.core.errors import StoreError, TaskNotFound
from depfleet.core.models import TaskRecord, TaskState

logger = logging.getLogger(__name__)


class TaskLogSink:
    """Append-only output log for one task, backed by the ``task_logs`` table.

    Lines keep the order in which ``append`` was called. Once closed the sink
    rejects further lines and is never reopened.
    """

    def __init__(self, db_path: str, task_id: str) -> None:
        self.task_id = task_id
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._conn = db.connect(db_path)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open log sink for task {task_id}: {exc}") from exc

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, line: str, stream: str = "stdout") -> None:
        with self._lock:
            if self._closed:
                raise StoreError(f"log sink for task {self.task_id} is closed")
            try:
                db.insert_task_log(self._conn, self.task_id, stream, line)
            except sqlite3.Error as exc:
                raise StoreError(f"cannot append to task log {self.task_id}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                db.update_task(self._conn, self.task_id, {"log_closed": 1})
            finally:
                self._conn.close()


class TaskRegistry:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        try:
            with closing(db.connect(db_path)) as conn:
                db.init_db(conn)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot initialise task store {db_path}: {exc}") from exc

    def create(self, task_id: str, node_id: str, action: str) -> TaskLogSink:
        with closing(db.connect(self.db_path)) as conn:
            try:
                db.insert_task(conn, task_id, node_id, action, TaskState.DISPATCHED.value)
            except sqlite3.IntegrityError as exc:
                raise StoreError(f"task {task_id} already exists") from exc
            except sqlite3.Error as exc:
                raise StoreError(f"cannot create task {task_id}: {exc}") from exc
        return TaskLogSink(self.db_path, task_id)

    def mark_running(self, task_id: str) -> TaskRecord:
        return self._update(task_id, {"status": TaskState.RUNNING.value})

    def mark_finished(self, task_id: str, state: TaskState, cause: Optional[str] = None) -> TaskRecord:
        return self._update(
            task_id,
            {"status": state.value, "cause": cause, "finished_ts": int(time.time())},
        )

    def get(self, task_id: str) -> TaskRecord:
        try:
            with closing(db.connect(self.db_path)) as conn:
                row = db.get_task(conn, task_id)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot read task {task_id}: {exc}") from exc
        if row is None:
            raise TaskNotFound(f"task {task_id} not found")
        return _to_record(row)

    def logs(self, task_id: str, tail: Optional[int] = None) -> List[Dict]:
        self.get(task_id)
        try:
            with closing(db.connect(self.db_path)) as conn:
                return db.get_task_logs(conn, task_id, tail)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot read logs for task {task_id}: {exc}") from exc

    def _update(self, task_id: str, updates: Dict) -> TaskRecord:
        with closing(db.connect(self.db_path)) as conn:
            try:
                row = db.update_task(conn, task_id, updates)
            except sqlite3.Error as exc:
                raise StoreError(f"cannot update task {task_id}: {exc}") from exc
        if row is None:
            raise TaskNotFound(f"task {task_id} not found")
        logger.info("task %s -> %s", task_id, row["status"])
        return _to_record(row)


def _to_record(row: Dict) -> TaskRecord:
    return TaskRecord(
        id=row["id"],
        node_id=row["node_id"],
        action=row["action"],
        status=TaskState(row["status"]),
        cause=row["cause"],
        log_closed=bool(row["log_closed"]),
        created_ts=row["created_ts"],
        finished_ts=row["finished_ts"],
    )
