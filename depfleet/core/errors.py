from __future__ import annotations

from typing import Optional


class DepFleetError(Exception):
    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(DepFleetError):
    code = "INVALID_ARGUMENT"


class TaskNotFound(DepFleetError):
    code = "TASK_NOT_FOUND"


class UpstreamError(DepFleetError):
    """Registry unreachable, timed out, or answered with a non-2xx status.

    ``body`` keeps whatever the registry sent back so callers can show it.
    """

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ManagerExecutionError(DepFleetError):
    code = "MANAGER_EXECUTION_ERROR"
    cause = "exit"

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        task_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.task_id = task_id


class TaskCancelled(ManagerExecutionError):
    code = "TASK_CANCELLED"
    cause = "cancelled"


class StoreError(DepFleetError):
    code = "STORE_ERROR"
