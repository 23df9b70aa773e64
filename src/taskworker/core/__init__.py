"""
TaskWorker Core - polling and execution infrastructure.

Provides:
- WorkerRegistry: Handler registration with per-type overrides
- WorkerHost: Scheduling and shutdown of poll ticks
- PollExecuteLoop: Poll / execute / report for one tick
- plan_thread_allocation: Per task type thread budgets
"""

from ..models import Task, TaskResult, TaskStatus
from .handler import FunctionHandler, TaskHandler
from .host import HostState, WorkerHost
from .loop import PollExecuteLoop, RetryPolicy
from .planner import ThreadPlan, plan_thread_allocation
from .registry import Registration, WorkerRegistry

__all__ = [
    "FunctionHandler",
    "TaskHandler",
    "HostState",
    "WorkerHost",
    "PollExecuteLoop",
    "RetryPolicy",
    "ThreadPlan",
    "plan_thread_allocation",
    "Registration",
    "WorkerRegistry",
    "Task",
    "TaskResult",
    "TaskStatus",
]
