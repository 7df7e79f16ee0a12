"""Fleet-wide package inventory.

Each node reports the packages it has installed for an ecosystem type. A
report replaces everything previously stored for that ``(node_id, type)``
pair, and readers see either the old set or the new one.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing
from typing import Dict, Iterable, List, Sequence, Tuple

from depfleet.core import db
from depfleet.core.errors import StoreError
from depfleet.core.models import FleetResult, InventoryRecord

logger = logging.getLogger(__name__)


class InventoryStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        with closing(self._connect()) as conn:
            try:
                db.init_db(conn)
            except sqlite3.Error as exc:
                raise StoreError(f"cannot initialise inventory store: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        try:
            return db.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open inventory store {self.db_path}: {exc}") from exc

    def _key_lock(self, node_id: str, dep_type: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((node_id, dep_type))
            if lock is None:
                lock = threading.Lock()
                self._locks[(node_id, dep_type)] = lock
            return lock

    def upsert_node_inventory(
        self, node_id: str, dep_type: str, records: Iterable[Tuple[str, str]]
    ) -> int:
        """Replace the stored set for ``(node_id, dep_type)`` with ``records``.

        ``records`` are ``(package_name, version)`` pairs. Returns the number
        of rows written.
        """
        rows = list(records)
        with self._key_lock(node_id, dep_type):
            with closing(self._connect()) as conn:
                try:
                    count = db.replace_node_dependencies(conn, node_id, dep_type, rows)
                except sqlite3.Error as exc:
                    raise StoreError(f"inventory upsert failed for {node_id}/{dep_type}: {exc}") from exc
        logger.debug("stored %d %s packages for node %s", count, dep_type, node_id)
        return count

    def aggregate_by_name(self, dep_type: str, names: Sequence[str]) -> Dict[str, FleetResult]:
        if not names:
            return {}
        with closing(self._connect()) as conn:
            try:
                rows = db.select_dependencies_by_name(conn, dep_type, list(dict.fromkeys(names)))
            except sqlite3.Error as exc:
                raise StoreError(f"inventory aggregation failed: {exc}") from exc

        node_ids: Dict[str, set] = {}
        versions: Dict[str, set] = {}
        for row in rows:
            node_ids.setdefault(row["name"], set()).add(row["node_id"])
            versions.setdefault(row["name"], set()).add(row["version"])
        return {
            name: FleetResult(
                package_name=name,
                node_ids=frozenset(node_ids[name]),
                versions=frozenset(versions[name]),
            )
            for name in node_ids
        }

    def list_node_inventory(self, node_id: str, dep_type: str) -> List[InventoryRecord]:
        with closing(self._connect()) as conn:
            try:
                rows = db.list_node_dependencies(conn, node_id, dep_type)
            except sqlite3.Error as exc:
                raise StoreError(f"cannot list inventory for {node_id}: {exc}") from exc
        return [
            InventoryRecord(
                node_id=row["node_id"],
                package_name=row["name"],
                type=row["type"],
                version=row["version"],
                observed_at=row["observed_at"],
            )
            for row in rows
        ]
