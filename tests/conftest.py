"""Shared fixtures: an in-memory task server client."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, List, Optional

import pytest

from taskworker.models import Task, TaskResult


class FakeTaskClient:
    """Thread-safe stand-in for the orchestration server.

    ``poll_errors`` / ``report_errors`` are consumed one per call before
    falling back to normal behavior.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.queues: Dict[str, Deque[Task]] = {}
        self.polls: List[tuple] = []
        self.reports: List[TaskResult] = []
        self.report_attempts = 0
        self.poll_errors: Deque[Exception] = deque()
        self.report_errors: Deque[Exception] = deque()
        self.reported = threading.Event()

    def add_task(self, task_type: str, task_id: str, **input_data) -> Task:
        task = Task(
            task_id=task_id,
            task_type=task_type,
            workflow_instance_id=f"wf-{task_id}",
            input_data=input_data,
        )
        with self._lock:
            self.queues.setdefault(task_type, deque()).append(task)
        return task

    def poll_task(self, task_type: str, domain: Optional[str] = None, worker_id: Optional[str] = None):
        with self._lock:
            self.polls.append((task_type, domain, worker_id))
            if self.poll_errors:
                raise self.poll_errors.popleft()
            queue = self.queues.get(task_type)
            if queue:
                return queue.popleft()
            return None

    def report_result(self, result: TaskResult):
        with self._lock:
            self.report_attempts += 1
            if self.report_errors:
                raise self.report_errors.popleft()
            self.reports.append(result)
        self.reported.set()
        return "ok"

    def poll_count(self, task_type: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for p in self.polls if task_type is None or p[0] == task_type)


@pytest.fixture
def client():
    return FakeTaskClient()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep TASKWORKER_* variables from the developer's shell out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("TASKWORKER_"):
            monkeypatch.delenv(key, raising=False)
