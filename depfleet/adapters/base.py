from __future__ import annotations

import threading
from typing import List, Optional, Protocol, Sequence, Tuple

from depfleet.core.models import InstallParams, SearchHit, UninstallParams


class LogSink(Protocol):
    def append(self, line: str, stream: str = "stdout") -> None:
        ...


class PackageManagerAdapter(Protocol):
    name: str
    dependency_type: str

    def list_global_installed(self, command: str) -> List[Tuple[str, str]]:
        ...

    def build_install_args(self, params: InstallParams) -> List[str]:
        ...

    def build_uninstall_args(self, params: UninstallParams) -> List[str]:
        ...

    def execute(
        self,
        command: str,
        args: Sequence[str],
        log_sink: LogSink,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        ...


class RegistryClient(Protocol):
    def search(self, query: str, offset: int, limit: int) -> Tuple[List[SearchHit], int]:
        ...

    def fetch_latest_version(self, name: str) -> str:
        ...
