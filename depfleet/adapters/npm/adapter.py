from __future__ import annotations

import json
import logging
import subprocess
import threading
from typing import IO, List, Optional, Sequence, Tuple

from depfleet.adapters.base import LogSink, PackageManagerAdapter
from depfleet.core.errors import ManagerExecutionError, TaskCancelled
from depfleet.core.models import DEPENDENCY_TYPE_NODE, InstallParams, UninstallParams

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.2
TERMINATE_GRACE_SEC = 5.0


def build_install_args(params: InstallParams, proxy_with_default_config: bool = True) -> List[str]:
    args = ["install", "-g"]
    if params.proxy and (proxy_with_default_config or not params.use_manager_default_config):
        args.extend(["--registry", params.proxy])
    if params.use_manager_default_config:
        # npm reads the package set from its own config
        return args
    for name in params.package_names:
        args.append(f"{name}@latest" if params.upgrade_to_latest else name)
    return args


def build_uninstall_args(params: UninstallParams) -> List[str]:
    return ["uninstall", "-g", *params.package_names]


def parse_list_output(raw: str) -> List[Tuple[str, str]]:
    """Parse ``npm list -g --json --depth 0`` output into ``(name, version)`` pairs.

    Any entry that does not carry a version makes the whole listing invalid.
    """
    if not raw or not raw.strip():
        raise ManagerExecutionError("npm list produced no output")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManagerExecutionError(f"npm list output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ManagerExecutionError("npm list output is not a JSON object")
    deps = data.get("dependencies") or {}
    if not isinstance(deps, dict):
        raise ManagerExecutionError("npm list 'dependencies' is not an object")

    packages: List[Tuple[str, str]] = []
    for name, info in deps.items():
        version = info.get("version") if isinstance(info, dict) else None
        if not isinstance(version, str) or not version:
            raise ManagerExecutionError(f"npm list entry '{name}' has no version")
        packages.append((name, version))
    return packages


class NpmAdapter:
    name = "npm"
    dependency_type = DEPENDENCY_TYPE_NODE

    def __init__(self, proxy_with_default_config: bool = True) -> None:
        self.proxy_with_default_config = proxy_with_default_config

    def list_global_installed(self, command: str) -> List[Tuple[str, str]]:
        argv = [command, "list", "-g", "--json", "--depth", "0"]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ManagerExecutionError(f"cannot start {command}: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ManagerExecutionError(
                f"{' '.join(argv)} exited with code {result.returncode}: {stderr[:500]}",
                returncode=result.returncode,
            )
        return parse_list_output(result.stdout)

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
        argv = [command, *args]
        logger.info("running %s", " ".join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise ManagerExecutionError(f"cannot start {command}: {exc}") from exc

        sink_errors: List[Exception] = []
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, "stdout", log_sink, sink_errors), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, "stderr", log_sink, sink_errors), daemon=True),
        ]
        for pump in pumps:
            pump.start()

        cancelled = False
        if cancel_event is None:
            proc.wait()
        else:
            while True:
                try:
                    proc.wait(timeout=POLL_INTERVAL_SEC)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_event.is_set():
                        cancelled = True
                        _terminate(proc)
                        break

        for pump in pumps:
            pump.join()

        if cancelled:
            raise TaskCancelled(f"{command} {args[0] if args else ''} cancelled".strip(), returncode=proc.returncode)
        if sink_errors:
            raise sink_errors[0]
        if proc.returncode != 0:
            raise ManagerExecutionError(
                f"{' '.join(argv)} exited with code {proc.returncode}",
                returncode=proc.returncode,
            )


def _pump(stream: IO[str], name: str, log_sink: LogSink, errors: List[Exception]) -> None:
    # keep draining after a sink failure so the child never blocks on a full pipe
    with stream:
        for line in stream:
            if errors:
                continue
            try:
                log_sink.append(line.rstrip("\r\n"), stream=name)
            except Exception as exc:
                errors.append(exc)


def _terminate(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def create_adapter(proxy_with_default_config: bool = True) -> PackageManagerAdapter:
    return NpmAdapter(proxy_with_default_config=proxy_with_default_config)
