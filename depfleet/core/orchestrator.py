"""Install/uninstall orchestration for the local node.

Every install or uninstall is a task with its own output log. A task moves
``dispatched -> running -> succeeded | failed`` and is never retried: a
failed task stays failed and the caller resubmits if it wants another go.
After a successful run the node's inventory is re-listed so the fleet
catalogue catches up with what the package manager actually did.
"""

from __future__ import annotations

import logging
import shlex
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Union

from depfleet.adapters.base import PackageManagerAdapter, RegistryClient
from depfleet.core.errors import DepFleetError, InvalidArgument, ManagerExecutionError, TaskCancelled
from depfleet.core.inventory import InventoryStore
from depfleet.core.models import Dependency, InstallParams, TaskRecord, TaskState, UninstallParams
from depfleet.core.tasks import TaskLogSink, TaskRegistry

logger = logging.getLogger(__name__)

TaskParams = Union[InstallParams, UninstallParams]


def new_task_id() -> str:
    return uuid.uuid4().hex


class OrchestrationService:
    def __init__(
        self,
        manager: PackageManagerAdapter,
        inventory: InventoryStore,
        registry: RegistryClient,
        tasks: TaskRegistry,
        max_workers: int = 4,
    ) -> None:
        self.manager = manager
        self.inventory = inventory
        self.registry = registry
        self.tasks = tasks
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="depfleet-task")
        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}

    def install(self, params: InstallParams) -> TaskRecord:
        args = self._prepare_install(params)
        sink = self._dispatch(params, "install")
        return self._run(params, "install", args, sink)

    def uninstall(self, params: UninstallParams) -> TaskRecord:
        args = self._prepare_uninstall(params)
        sink = self._dispatch(params, "uninstall")
        return self._run(params, "uninstall", args, sink)

    def submit_install(self, params: InstallParams) -> str:
        args = self._prepare_install(params)
        return self._submit(params, "install", args)

    def submit_uninstall(self, params: UninstallParams) -> str:
        args = self._prepare_uninstall(params)
        return self._submit(params, "uninstall", args)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        """Block until a submitted task finishes and return its record.

        Re-raises the task's failure, like the synchronous entry points.
        Once a finished task's future has been dropped, the failure is
        rebuilt from the stored task record.
        """
        with self._lock:
            future = self._futures.get(task_id)
        if future is not None:
            return future.result(timeout=timeout)
        record = self.tasks.get(task_id)
        if record.status is TaskState.FAILED:
            if record.cause == TaskCancelled.cause:
                raise TaskCancelled(f"task {task_id} was cancelled", task_id=task_id)
            if record.cause == ManagerExecutionError.cause:
                raise ManagerExecutionError(f"task {task_id} failed", task_id=task_id)
            raise DepFleetError(f"task {task_id} failed: {record.cause}")
        return record

    def cancel(self, task_id: str) -> bool:
        """Ask a dispatched or running task to stop. Returns False if it already finished."""
        record = self.tasks.get(task_id)
        if record.status.terminal:
            return False
        with self._lock:
            event = self._cancel_events.get(task_id)
        if event is None:
            return False
        event.set()
        logger.info("cancel requested for task %s", task_id)
        return True

    def get_task(self, task_id: str) -> TaskRecord:
        return self.tasks.get(task_id)

    def get_task_logs(self, task_id: str, tail: Optional[int] = None) -> List[Dict]:
        return self.tasks.logs(task_id, tail)

    def refresh_inventory(self, node_id: str, command: str) -> int:
        if not node_id:
            raise InvalidArgument("node id is required")
        if not command or not command.strip():
            raise InvalidArgument("package manager command path is required")
        packages = self.manager.list_global_installed(command)
        return self.inventory.upsert_node_inventory(node_id, self.manager.dependency_type, packages)

    def get_latest_version(self, dependency: Dependency) -> str:
        version = self.registry.fetch_latest_version(dependency.name)
        dependency.latest_version = version
        return version

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _prepare_install(self, params: InstallParams) -> List[str]:
        _validate(params, allow_empty_names=params.use_manager_default_config)
        return self.manager.build_install_args(params)

    def _prepare_uninstall(self, params: UninstallParams) -> List[str]:
        _validate(params, allow_empty_names=False)
        return self.manager.build_uninstall_args(params)

    def _dispatch(self, params: TaskParams, action: str) -> TaskLogSink:
        sink = self.tasks.create(params.task_id, params.node_id, action)
        with self._lock:
            self._cancel_events[params.task_id] = threading.Event()
        logger.info("task %s dispatched: %s %s on %s", params.task_id, action, list(params.package_names), params.node_id)
        return sink

    def _submit(self, params: TaskParams, action: str, args: List[str]) -> str:
        sink = self._dispatch(params, action)
        future = self._pool.submit(self._run, params, action, args, sink)
        with self._lock:
            self._futures[params.task_id] = future
        future.add_done_callback(lambda _done, task_id=params.task_id: self._forget(task_id))
        return params.task_id

    def _forget(self, task_id: str) -> None:
        with self._lock:
            self._futures.pop(task_id, None)

    def _run(self, params: TaskParams, action: str, args: Sequence[str], sink: TaskLogSink) -> TaskRecord:
        task_id = params.task_id
        with self._lock:
            cancel_event = self._cancel_events.get(task_id)
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise TaskCancelled(f"task {task_id} cancelled before start")
            self.tasks.mark_running(task_id)
            sink.append(f"$ {shlex.join([params.command, *args])}", stream="system")
            self.manager.execute(params.command, args, sink, cancel_event)
        except Exception as exc:
            cause = getattr(exc, "cause", "error")
            if isinstance(exc, ManagerExecutionError):
                exc.task_id = task_id
            logger.warning("task %s (%s) failed: %s", task_id, action, exc)
            try:
                if not sink.closed:
                    sink.append(f"{action} failed: {exc}", stream="system")
            finally:
                self._finish(task_id, sink, TaskState.FAILED, cause)
            raise

        # the process has exited; a late cancel can no longer change the outcome
        with self._lock:
            self._cancel_events.pop(task_id, None)
        try:
            self._refresh_after(params, sink)
        finally:
            record = self._finish(task_id, sink, TaskState.SUCCEEDED)
        return record

    def _refresh_after(self, params: TaskParams, sink: TaskLogSink) -> None:
        try:
            count = self.refresh_inventory(params.node_id, params.command)
        except DepFleetError as exc:
            logger.exception("inventory refresh failed for node %s after task %s", params.node_id, params.task_id)
            sink.append(f"inventory refresh failed: {exc}", stream="system")
            return
        sink.append(f"inventory refreshed: {count} packages on {params.node_id}", stream="system")

    def _finish(self, task_id: str, sink: TaskLogSink, state: TaskState, cause: Optional[str] = None) -> TaskRecord:
        try:
            sink.close()
        finally:
            with self._lock:
                self._cancel_events.pop(task_id, None)
            record = self.tasks.mark_finished(task_id, state, cause)
        return record


def _validate(params: TaskParams, allow_empty_names: bool) -> None:
    if not params.command or not params.command.strip():
        raise InvalidArgument("package manager command path is required")
    if not params.task_id:
        raise InvalidArgument("task id is required")
    if not params.node_id:
        raise InvalidArgument("node id is required")
    names = list(params.package_names)
    if not names and not allow_empty_names:
        raise InvalidArgument("at least one package name is required")
    seen = set()
    for name in names:
        if not name or not name.strip():
            raise InvalidArgument("package names must not be empty")
        if name.startswith("-"):
            raise InvalidArgument(f"invalid package name {name!r}")
        if name in seen:
            raise InvalidArgument(f"duplicate package name {name!r}")
        seen.add(name)
