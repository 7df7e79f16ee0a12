from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

DEPENDENCY_TYPE_NODE = "node"


@dataclass(frozen=True)
class FleetResult:
    package_name: str
    node_ids: FrozenSet[str] = frozenset()
    versions: FrozenSet[str] = frozenset()

    def to_dict(self) -> dict:
        return {
            "name": self.package_name,
            "node_ids": sorted(self.node_ids),
            "versions": sorted(self.versions),
        }


@dataclass
class Dependency:
    name: str
    type: str = DEPENDENCY_TYPE_NODE
    installed_version: Optional[str] = None
    latest_version: Optional[str] = None
    result: Optional[FleetResult] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.type)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "version": self.installed_version,
            "latest_version": self.latest_version,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass(frozen=True)
class InventoryRecord:
    node_id: str
    package_name: str
    type: str
    version: str
    observed_at: int = 0

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "name": self.package_name,
            "type": self.type,
            "version": self.version,
            "observed_at": self.observed_at,
        }


@dataclass(frozen=True)
class SearchHit:
    name: str
    latest_version: Optional[str]


@dataclass
class SearchPage:
    items: List[Dependency] = field(default_factory=list)
    total: int = 0


@dataclass(frozen=True)
class InstallParams:
    command: str
    package_names: Tuple[str, ...]
    task_id: str
    node_id: str
    proxy: Optional[str] = None
    upgrade_to_latest: bool = False
    use_manager_default_config: bool = False


@dataclass(frozen=True)
class UninstallParams:
    command: str
    package_names: Tuple[str, ...]
    task_id: str
    node_id: str


class TaskState(str, enum.Enum):
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


@dataclass(frozen=True)
class TaskRecord:
    id: str
    node_id: str
    action: str
    status: TaskState
    cause: Optional[str] = None
    log_closed: bool = False
    created_ts: int = 0
    finished_ts: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "action": self.action,
            "status": self.status.value,
            "cause": self.cause,
            "log_closed": self.log_closed,
            "created_ts": self.created_ts,
            "finished_ts": self.finished_ts,
        }
