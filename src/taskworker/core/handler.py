"""
Task handlers.

A handler is bound to exactly one task type and turns a polled task into a
result. Subclass ``TaskHandler`` or wrap a plain function with
``FunctionHandler``:

    class Echo(TaskHandler):
        task_type = "echo"
        polling_interval_ms = 50

        def execute(self, task):
            return {"echo": task.input_data}
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Union

from ..models import Task, TaskResult

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL_MS = 1000

HandlerOutput = Union[TaskResult, Dict[str, Any], None]


class TaskHandler:
    """
    Base class for task handlers.

    Subclasses must set:
    - task_type: str - the task type this handler processes
    - execute(task) - produce a TaskResult, an output mapping, or None
    """

    task_type: str = ""
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS

    def execute(self, task: Task) -> HandlerOutput:
        """Process one task - override in subclass."""
        raise NotImplementedError

    def paused(self) -> bool:
        """Return True to skip polling for this handler."""
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(task_type={self.task_type!r})"


class FunctionHandler(TaskHandler):
    """Adapts a plain callable ``fn(task)`` into a handler."""

    def __init__(
        self,
        task_type: str,
        fn: Callable[[Task], HandlerOutput],
        polling_interval_ms: Optional[int] = None,
    ):
        if not task_type:
            raise ValueError("task_type is required")
        self.task_type = task_type
        self.fn = fn
        if polling_interval_ms is not None:
            self.polling_interval_ms = polling_interval_ms

    def execute(self, task: Task) -> HandlerOutput:
        return self.fn(task)

    def __repr__(self) -> str:
        name = getattr(self.fn, "__name__", repr(self.fn))
        return f"FunctionHandler(task_type={self.task_type!r}, fn={name})"


class _IntervalOverride(TaskHandler):
    """Delegates to another handler with a different polling interval."""

    def __init__(self, inner: TaskHandler, polling_interval_ms: int):
        self.inner = inner
        self.task_type = inner.task_type
        self.polling_interval_ms = polling_interval_ms

    def execute(self, task: Task) -> HandlerOutput:
        return self.inner.execute(task)

    def paused(self) -> bool:
        return self.inner.paused()

    def __repr__(self) -> str:
        return f"{self.inner!r}@{self.polling_interval_ms}ms"


def with_polling_interval(handler: TaskHandler, polling_interval_ms: int) -> TaskHandler:
    """Return ``handler`` polled every ``polling_interval_ms`` without mutating it."""
    if polling_interval_ms == handler.polling_interval_ms:
        return handler
    logger.debug(
        f"Polling interval for {handler.task_type} overridden: "
        f"{handler.polling_interval_ms} -> {polling_interval_ms} ms"
    )
    return _IntervalOverride(handler, polling_interval_ms)


__all__ = [
    "DEFAULT_POLLING_INTERVAL_MS",
    "HandlerOutput",
    "TaskHandler",
    "FunctionHandler",
    "with_polling_interval",
]
