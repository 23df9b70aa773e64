"""
TaskWorker - task polling and execution for workflow orchestration servers.

Provides utilities for running task handlers:
- WorkerRegistry: Handler registration
- WorkerHost: Periodic polling, bounded execution, graceful shutdown
- HttpTaskClient: REST client for the server's task API

Usage:
    from taskworker import HttpTaskClient, WorkerRegistry

    registry = WorkerRegistry()

    @registry.handler("echo", polling_interval_ms=100)
    def echo(task):
        return {"echo": task.input_data}

    host = registry.build_host(HttpTaskClient("http://localhost:8080/api"))
    host.init()
    ...
    host.shutdown()
"""

__version__ = "0.1.0"

from .client import HttpTaskClient, TaskServerClient
from .config import HandlerOverrides, WorkerHostConfig, load_config
from .core import (
    FunctionHandler,
    HostState,
    PollExecuteLoop,
    RetryPolicy,
    Task,
    TaskHandler,
    TaskResult,
    TaskStatus,
    ThreadPlan,
    WorkerHost,
    WorkerRegistry,
    plan_thread_allocation,
)
from .exceptions import (
    ConfigurationError,
    HandlerExecutionError,
    HostStateError,
    PermanentError,
    TaskWorkerError,
    TerminalTaskError,
    TransientServerError,
)

__all__ = [
    "__version__",
    # Core
    "WorkerRegistry",
    "WorkerHost",
    "HostState",
    "PollExecuteLoop",
    "RetryPolicy",
    "ThreadPlan",
    "plan_thread_allocation",
    "TaskHandler",
    "FunctionHandler",
    "Task",
    "TaskResult",
    "TaskStatus",
    # Clients
    "TaskServerClient",
    "HttpTaskClient",
    # Config
    "WorkerHostConfig",
    "HandlerOverrides",
    "load_config",
    # Errors
    "TaskWorkerError",
    "ConfigurationError",
    "HostStateError",
    "TransientServerError",
    "PermanentError",
    "HandlerExecutionError",
    "TerminalTaskError",
]
