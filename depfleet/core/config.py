from __future__ import annotations

from dataclasses import dataclass
import os
import socket
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass(frozen=True)
class AppConfig:
    host: str
    port: int
    debug: bool
    db_path: str
    node_id: str
    package_manager: str
    package_manager_cmd: str
    registry_search_url: str
    registry_detail_url: str
    search_timeout_sec: float
    detail_timeout_sec: float
    page_size: int
    max_workers: int
    proxy_with_default_config: bool
    user_agent: str
    log_level: str
    log_json: bool


DEFAULT_CONFIG = {
    "host": "0.0.0.0",
    "port": 8080,
    "debug": False,
    "db_path": "./data/depfleet.db",
    "node_id": None,
    "package_manager": "npm",
    "package_manager_cmd": "npm",
    "registry_search_url": "https://api.npms.io/v2/search",
    "registry_detail_url": "https://api.npms.io/v2/package",
    "search_timeout_sec": 15,
    "detail_timeout_sec": 60,
    "page_size": 20,
    "max_workers": 4,
    "proxy_with_default_config": True,
    "user_agent": "depfleet/0.1",
    "log_level": "INFO",
    "log_json": False,
}


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return bool(default)
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_config() -> AppConfig:
    config_path = Path(os.environ.get("DEPFLEET_CONFIG", "./config.yaml"))
    file_config = _load_yaml(config_path)

    merged = {**DEFAULT_CONFIG, **file_config}
    env = os.environ.get

    return AppConfig(
        host=env("DEPFLEET_HOST", merged["host"]),
        port=int(env("DEPFLEET_PORT", merged["port"])),
        debug=_env_bool("DEPFLEET_DEBUG", merged["debug"]),
        db_path=env("DEPFLEET_DB_PATH", merged["db_path"]),
        node_id=env("DEPFLEET_NODE_ID", merged["node_id"] or socket.gethostname()),
        package_manager=env("DEPFLEET_PACKAGE_MANAGER", merged["package_manager"]),
        package_manager_cmd=env("DEPFLEET_PACKAGE_MANAGER_CMD", merged["package_manager_cmd"]),
        registry_search_url=env("DEPFLEET_REGISTRY_SEARCH_URL", merged["registry_search_url"]),
        registry_detail_url=env("DEPFLEET_REGISTRY_DETAIL_URL", merged["registry_detail_url"]),
        search_timeout_sec=float(env("DEPFLEET_SEARCH_TIMEOUT", merged["search_timeout_sec"])),
        detail_timeout_sec=float(env("DEPFLEET_DETAIL_TIMEOUT", merged["detail_timeout_sec"])),
        page_size=int(env("DEPFLEET_PAGE_SIZE", merged["page_size"])),
        max_workers=int(env("DEPFLEET_MAX_WORKERS", merged["max_workers"])),
        proxy_with_default_config=_env_bool(
            "DEPFLEET_PROXY_WITH_DEFAULT_CONFIG", merged["proxy_with_default_config"]
        ),
        user_agent=env("DEPFLEET_USER_AGENT", merged["user_agent"]),
        log_level=env("DEPFLEET_LOG_LEVEL", merged["log_level"]),
        log_json=_env_bool("DEPFLEET_LOG_JSON", merged["log_json"]),
    )
