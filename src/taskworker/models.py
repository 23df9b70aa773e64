"""Task and task result models exchanged with the server."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    """Outcome reported back for a polled task."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_WITH_TERMINAL_ERROR = "FAILED_WITH_TERMINAL_ERROR"


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Task(_WireModel):
    """A unit of work handed out by the server."""

    task_id: str
    task_type: str
    workflow_instance_id: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    poll_count: int = 0
    domain: Optional[str] = None
    callback_after_seconds: int = 0
    worker_id: Optional[str] = None


class TaskResult(_WireModel):
    """Result of executing a task, sent back to the server."""

    task_id: str
    workflow_instance_id: Optional[str] = None
    status: TaskStatus = TaskStatus.IN_PROGRESS
    output_data: Dict[str, Any] = Field(default_factory=dict)
    reason_for_incompletion: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    worker_id: Optional[str] = None
    callback_after_seconds: int = 0

    @classmethod
    def for_task(cls, task: Task, **fields: Any) -> "TaskResult":
        """Create a result bound to ``task``."""
        return cls(
            task_id=task.task_id,
            workflow_instance_id=task.workflow_instance_id,
            **fields,
        )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize using the server's camelCase field names."""
        return self.model_dump(mode="json", by_alias=True)


__all__ = ["TaskStatus", "Task", "TaskResult"]
