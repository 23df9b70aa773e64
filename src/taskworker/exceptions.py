"""Error taxonomy for the task worker."""

from __future__ import annotations


class TaskWorkerError(Exception):
    """Base class for all task worker errors."""


class ConfigurationError(TaskWorkerError, ValueError):
    """Invalid or contradictory host configuration.

    Raised synchronously while building a host; the host is never created.
    """


class HostStateError(TaskWorkerError, RuntimeError):
    """Lifecycle operation called in the wrong host state."""


class TransientServerError(TaskWorkerError):
    """Poll or report failed because the server was unreachable or unavailable."""


class PermanentError(TaskWorkerError):
    """Server rejected a request as invalid. Never retried."""


class HandlerExecutionError(TaskWorkerError):
    """Raised by a task handler to fail the task with an explicit reason.

    Any exception escaping a handler is converted into a FAILED result;
    this class only lets a handler attach output data to the failure.
    """

    def __init__(self, message: str, output_data: dict | None = None):
        super().__init__(message)
        self.output_data = output_data or {}


class TerminalTaskError(HandlerExecutionError):
    """Handler failure the server should not retry (FAILED_WITH_TERMINAL_ERROR)."""


__all__ = [
    "TaskWorkerError",
    "ConfigurationError",
    "HostStateError",
    "TransientServerError",
    "PermanentError",
    "HandlerExecutionError",
    "TerminalTaskError",
]
