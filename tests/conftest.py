"""
Shared test fixtures and fakes.
"""

from __future__ import annotations

import stat
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from depfleet.core.errors import ManagerExecutionError, TaskCancelled, UpstreamError
from depfleet.core.inventory import InventoryStore
from depfleet.core.models import DEPENDENCY_TYPE_NODE, SearchHit
from depfleet.core.orchestrator import OrchestrationService
from depfleet.core.tasks import TaskRegistry
from depfleet.adapters.npm.adapter import build_install_args, build_uninstall_args


class ListSink:
    def __init__(self) -> None:
        self.lines: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def append(self, line: str, stream: str = "stdout") -> None:
        with self._lock:
            self.lines.append((stream, line))

    def stream(self, name: str) -> List[str]:
        return [line for s, line in self.lines if s == name]


class FakeRegistry:
    def __init__(
        self,
        hits: Sequence[Tuple[str, Optional[str]]] = (),
        total: Optional[int] = None,
        latest: Optional[Dict[str, str]] = None,
        error: Optional[UpstreamError] = None,
    ) -> None:
        self.hits = [SearchHit(name=n, latest_version=v) for n, v in hits]
        self.total = len(self.hits) if total is None else total
        self.latest = latest or {}
        self.error = error
        self.search_calls: List[Tuple[str, int, int]] = []
        self.detail_calls: List[str] = []

    def search(self, query: str, offset: int, limit: int):
        self.search_calls.append((query, offset, limit))
        if self.error is not None:
            raise self.error
        return list(self.hits), self.total

    def fetch_latest_version(self, name: str) -> str:
        self.detail_calls.append(name)
        if self.error is not None:
            raise self.error
        return self.latest[name]


class FakeManager:
    """In-process package manager: writes canned output and exits with a canned code."""

    name = "fake"
    dependency_type = DEPENDENCY_TYPE_NODE

    def __init__(
        self,
        installed: Sequence[Tuple[str, str]] = (),
        stdout: Sequence[str] = (),
        stderr: Sequence[str] = (),
        returncode: int = 0,
        list_error: Optional[Exception] = None,
    ) -> None:
        self.installed = list(installed)
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.returncode = returncode
        self.list_error = list_error
        self.executed: List[Tuple[str, List[str]]] = []

    def list_global_installed(self, command: str):
        if self.list_error is not None:
            raise self.list_error
        return list(self.installed)

    def build_install_args(self, params):
        return build_install_args(params)

    def build_uninstall_args(self, params):
        return build_uninstall_args(params)

    def execute(self, command, args, log_sink, cancel_event=None):
        self.executed.append((command, list(args)))
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled("cancelled")
        for line in self.stdout:
            log_sink.append(line, stream="stdout")
        for line in self.stderr:
            log_sink.append(line, stream="stderr")
        if self.returncode != 0:
            raise ManagerExecutionError(f"exited with code {self.returncode}", returncode=self.returncode)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "data" / "depfleet.db")


@pytest.fixture
def store(db_path: str) -> InventoryStore:
    return InventoryStore(db_path)


@pytest.fixture
def task_registry(db_path: str) -> TaskRegistry:
    return TaskRegistry(db_path)


@pytest.fixture
def make_service(store: InventoryStore, task_registry: TaskRegistry):
    created: List[OrchestrationService] = []

    def _make(manager, registry=None, max_workers: int = 2) -> OrchestrationService:
        svc = OrchestrationService(manager, store, registry or FakeRegistry(), task_registry, max_workers=max_workers)
        created.append(svc)
        return svc

    yield _make
    for svc in created:
        svc.shutdown(wait=True)


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], str]:
    """Write an executable shell script standing in for the package manager."""

    def _write(name: str, body: str) -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write
