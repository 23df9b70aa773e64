"""Server client capability consumed by the worker core."""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from ..models import Task, TaskResult


@runtime_checkable
class TaskServerClient(Protocol):
    """Stateless request/response access to the orchestration server.

    Implementations must be safe to call from several threads at once.
    Both operations raise ``TransientServerError`` on network or server
    trouble; ``report_result`` raises ``PermanentError`` when the server
    rejects the result as invalid.
    """

    def poll_task(
        self,
        task_type: str,
        domain: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[Task]:
        """Return at most one task of ``task_type``, or None."""
        ...

    def report_result(self, result: TaskResult) -> Any:
        """Send a task result; returns the server's acknowledgement."""
        ...
