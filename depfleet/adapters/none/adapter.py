from __future__ import annotations

import shlex
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from depfleet.adapters.base import LogSink, PackageManagerAdapter
from depfleet.adapters.npm.adapter import build_install_args, build_uninstall_args
from depfleet.core.errors import TaskCancelled
from depfleet.core.models import DEPENDENCY_TYPE_NODE, InstallParams, UninstallParams


class NoneAdapter:
    """Dry-run package manager: logs the command it would run and tracks a simulated install set."""

    name = "none"
    dependency_type = DEPENDENCY_TYPE_NODE

    def __init__(self, proxy_with_default_config: bool = True) -> None:
        self.proxy_with_default_config = proxy_with_default_config
        self._installed: Dict[str, str] = {}
        self._lock = threading.Lock()

    def list_global_installed(self, command: str) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._installed.items())

    def build_install_args(self, params: InstallParams) -> List[str]:
        return build_install_args(params, self.proxy_with_default_config)

    def build_uninstall_args(self, params: UninstallParams) -> List[str]:
        return build_uninstall_args(params)

    def execute(
        self,
        command: str,
        args: Sequence[str],
        log_sink: LogSink,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled(f"{command} cancelled before start")
        log_sink.append(f"dry-run: {shlex.join([command, *args])}")

        action = args[0] if args else ""
        names = [arg for arg in args[2:] if not arg.startswith("--")]
        if "--registry" in args:
            proxy = args[args.index("--registry") + 1]
            names = [name for name in names if name != proxy]

        with self._lock:
            for name in names:
                if action == "install":
                    base, _, pin = name.rpartition("@") if name.rfind("@") > 0 else (name, "", "")
                    self._installed[base] = pin or "0.0.0-dryrun"
                elif action == "uninstall":
                    self._installed.pop(name, None)
        log_sink.append(f"dry-run: {action} {len(names)} package(s)")


def create_adapter(proxy_with_default_config: bool = True) -> PackageManagerAdapter:
    return NoneAdapter(proxy_with_default_config=proxy_with_default_config)
