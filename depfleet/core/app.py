from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from flask import Flask, jsonify, request

from depfleet.adapters.base import PackageManagerAdapter, RegistryClient
from depfleet.adapters.none.adapter import create_adapter as create_none_adapter
from depfleet.adapters.npm.adapter import create_adapter as create_npm_adapter
from depfleet.adapters.npm.registry import create_client as create_npms_client
from depfleet.core.config import AppConfig, load_config
from depfleet.core.errors import (
    DepFleetError,
    InvalidArgument,
    ManagerExecutionError,
    TaskNotFound,
    UpstreamError,
)
from depfleet.core.inventory import InventoryStore
from depfleet.core.models import Dependency, InstallParams, UninstallParams
from depfleet.core.orchestrator import OrchestrationService, new_task_id
from depfleet.core.reconcile import ReconciliationEngine
from depfleet.core.tasks import TaskRegistry


ADAPTER_FACTORIES = {
    "none": create_none_adapter,
    "npm": create_npm_adapter,
}

ERROR_STATUS = {
    InvalidArgument: 400,
    TaskNotFound: 404,
    UpstreamError: 502,
    ManagerExecutionError: 500,
}


@dataclass
class Services:
    inventory: InventoryStore
    engine: ReconciliationEngine
    orchestrator: OrchestrationService


def build_services(
    config: AppConfig,
    registry: Optional[RegistryClient] = None,
    manager: Optional[PackageManagerAdapter] = None,
) -> Services:
    if registry is None:
        registry = create_npms_client(
            search_url=config.registry_search_url,
            detail_url=config.registry_detail_url,
            search_timeout_sec=config.search_timeout_sec,
            detail_timeout_sec=config.detail_timeout_sec,
            user_agent=config.user_agent,
        )
    if manager is None:
        name = (config.package_manager or "npm").lower().strip()
        factory = ADAPTER_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"unknown package manager adapter '{config.package_manager}'")
        manager = factory(proxy_with_default_config=config.proxy_with_default_config)

    inventory = InventoryStore(config.db_path)
    tasks = TaskRegistry(config.db_path)
    engine = ReconciliationEngine(registry, inventory, dependency_type=manager.dependency_type)
    orchestrator = OrchestrationService(manager, inventory, registry, tasks, max_workers=config.max_workers)
    return Services(inventory=inventory, engine=engine, orchestrator=orchestrator)


def create_app(
    config: Optional[AppConfig] = None,
    registry: Optional[RegistryClient] = None,
    manager: Optional[PackageManagerAdapter] = None,
) -> Flask:
    config = config or load_config()
    services = build_services(config, registry=registry, manager=manager)
    dep_type = services.orchestrator.manager.dependency_type

    app = Flask(__name__)
    app.config.update(
        HOST=config.host,
        PORT=config.port,
        DEBUG=config.debug,
        DB_PATH=config.db_path,
        NODE_ID=config.node_id,
        PACKAGE_MANAGER=config.package_manager,
        PACKAGE_MANAGER_CMD=config.package_manager_cmd,
        PAGE_SIZE=config.page_size,
    )
    app.extensions["depfleet"] = services

    @app.errorhandler(DepFleetError)
    def handle_error(exc: DepFleetError):
        status = 500
        for cls, code in ERROR_STATUS.items():
            if isinstance(exc, cls):
                status = code
                break
        payload = {"error": exc.message, "code": exc.code}
        if isinstance(exc, UpstreamError) and exc.body:
            payload["upstream_body"] = exc.body
        if isinstance(exc, ManagerExecutionError) and exc.task_id:
            payload["task_id"] = exc.task_id
        return jsonify(payload), status

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "node_id": app.config["NODE_ID"], "ts": int(time.time())})

    @app.get("/api/dependencies/search")
    def api_search():
        query = request.args.get("query", "")
        page = _int_arg("page", 1)
        size = _int_arg("size", app.config["PAGE_SIZE"])
        result = services.engine.search(query, page, size)
        return jsonify({"data": [dep.to_dict() for dep in result.items], "total": result.total})

    @app.get("/api/dependencies/<path:name>/latest")
    def api_latest_version(name: str):
        dep = Dependency(name=name, type=dep_type)
        version = services.orchestrator.get_latest_version(dep)
        return jsonify({"name": name, "latest_version": version})

    @app.get("/api/nodes/<node_id>/dependencies")
    def api_node_dependencies(node_id: str):
        records = services.inventory.list_node_inventory(node_id, dep_type)
        return jsonify({"node_id": node_id, "dependencies": [r.to_dict() for r in records]})

    @app.put("/api/nodes/<node_id>/dependencies")
    def api_report_node_dependencies(node_id: str):
        payload = request.get_json(silent=True) or {}
        items = payload.get("dependencies")
        if not isinstance(items, list):
            raise InvalidArgument("dependencies list required")
        records = []
        for item in items:
            if not isinstance(item, dict) or not item.get("name") or not item.get("version"):
                raise InvalidArgument("each dependency needs a name and a version")
            records.append((str(item["name"]), str(item["version"])))
        count = services.inventory.upsert_node_inventory(node_id, dep_type, records)
        return jsonify({"node_id": node_id, "updated": count})

    @app.post("/api/node/update")
    def api_update():
        payload = request.get_json(silent=True) or {}
        command = payload.get("cmd") or app.config["PACKAGE_MANAGER_CMD"]
        count = services.orchestrator.refresh_inventory(app.config["NODE_ID"], command)
        return jsonify({"ok": True, "node_id": app.config["NODE_ID"], "updated": count})

    @app.post("/api/node/install")
    def api_install():
        payload = request.get_json(silent=True) or {}
        params = InstallParams(
            command=payload.get("cmd") or app.config["PACKAGE_MANAGER_CMD"],
            package_names=_names(payload),
            task_id=new_task_id(),
            node_id=app.config["NODE_ID"],
            proxy=payload.get("proxy") or None,
            upgrade_to_latest=bool(payload.get("upgrade")),
            use_manager_default_config=bool(payload.get("use_config")),
        )
        task_id = services.orchestrator.submit_install(params)
        return jsonify({"task_id": task_id}), 202

    @app.post("/api/node/uninstall")
    def api_uninstall():
        payload = request.get_json(silent=True) or {}
        params = UninstallParams(
            command=payload.get("cmd") or app.config["PACKAGE_MANAGER_CMD"],
            package_names=_names(payload),
            task_id=new_task_id(),
            node_id=app.config["NODE_ID"],
        )
        task_id = services.orchestrator.submit_uninstall(params)
        return jsonify({"task_id": task_id}), 202

    @app.get("/api/tasks/<task_id>")
    def api_task(task_id: str):
        return jsonify({"task": services.orchestrator.get_task(task_id).to_dict()})

    @app.get("/api/tasks/<task_id>/logs")
    def api_task_logs(task_id: str):
        logs = services.orchestrator.get_task_logs(task_id, _int_arg("tail", None))
        return jsonify({"task_id": task_id, "logs": logs})

    @app.post("/api/tasks/<task_id>/cancel")
    def api_task_cancel(task_id: str):
        cancelled = services.orchestrator.cancel(task_id)
        return jsonify({"task_id": task_id, "cancelled": cancelled})

    return app


def _int_arg(name: str, default: Optional[int]) -> Optional[int]:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidArgument(f"'{name}' must be an integer") from exc


def _names(payload: dict) -> tuple:
    names = payload.get("names") or []
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise InvalidArgument("names must be a list of strings")
    return tuple(names)
