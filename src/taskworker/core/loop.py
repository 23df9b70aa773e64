"""
Poll / execute / report cycle.

One ``poll_and_execute`` call is one poll tick for one handler:

1. Poll at most one task of the handler's type (scoped to its domain)
2. Execute the handler on a thread of that type's pool
3. Report the result, retrying transient failures with a fixed delay

No error from any stage escapes a tick.
"""

from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from ..client.base import TaskServerClient
from ..exceptions import (
    HandlerExecutionError,
    PermanentError,
    TerminalTaskError,
    TransientServerError,
)
from ..models import Task, TaskResult, TaskStatus
from .handler import TaskHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for the report step. Polling is never retried."""

    update_retry_count: int = 3
    sleep_when_retry_ms: int = 500

    @property
    def attempts(self) -> int:
        return self.update_retry_count + 1

    @property
    def sleep_seconds(self) -> float:
        return self.sleep_when_retry_ms / 1000.0


class PollExecuteLoop:
    """Runs poll ticks for a set of handlers against a shared server client.

    Execution concurrency per task type is capped by ``thread_allocation``:
    a tick only polls when a thread of its type is free.
    """

    def __init__(
        self,
        client: TaskServerClient,
        thread_allocation: Mapping[str, int],
        *,
        retry_policy: Optional[RetryPolicy] = None,
        task_to_domain: Optional[Mapping[str, str]] = None,
        worker_id: Optional[str] = None,
        worker_name_prefix: str = "task-worker",
        health_check: Optional[Callable[[], bool]] = None,
    ):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.task_to_domain = dict(task_to_domain or {})
        self.worker_id = worker_id
        self.health_check = health_check

        self._permits: Dict[str, threading.BoundedSemaphore] = {}
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        for task_type, threads in thread_allocation.items():
            if threads < 1:
                continue
            self._permits[task_type] = threading.BoundedSemaphore(threads)
            self._executors[task_type] = ThreadPoolExecutor(
                max_workers=threads,
                thread_name_prefix=f"{worker_name_prefix}-{task_type}",
            )

        # Counts ticks still polling plus cycles submitted but not finished
        self._active = 0
        self._idle = threading.Condition()
        self._accepting = True
        self._abandoned = threading.Event()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def poll_and_execute(self, handler: TaskHandler) -> None:
        """Run one poll tick for ``handler``."""
        task_type = handler.task_type

        if not self._enter():
            return

        submitted = False
        permit = self._permits.get(task_type)
        try:
            if permit is None:
                logger.debug(f"No threads allocated for {task_type}, skipping poll")
                return
            if self._should_skip(handler):
                return
            if not permit.acquire(blocking=False):
                logger.debug(f"All threads busy for {task_type}, skipping poll")
                return

            task = self.poll(handler)
            if task is None:
                permit.release()
                return

            try:
                future = self._executors[task_type].submit(
                    self.execute_and_report, handler, task
                )
            except RuntimeError:
                # executor already shut down
                permit.release()
                logger.warning(
                    f"Task {task.task_id} ({task_type}) polled during shutdown, "
                    "not executed; server will requeue it"
                )
                return

            future.add_done_callback(lambda f: self._cycle_done(f, permit))
            submitted = True
        except Exception:
            # Never let a tick kill the scheduler thread
            logger.exception(f"Unexpected error in poll tick for {task_type}")
        finally:
            if not submitted:
                self._exit()

    def _should_skip(self, handler: TaskHandler) -> bool:
        try:
            if handler.paused():
                logger.debug(f"Handler {handler!r} is paused")
                return True
        except Exception:
            logger.exception(f"paused() failed for {handler!r}, skipping tick")
            return True

        if self.health_check is not None:
            try:
                healthy = self.health_check()
            except Exception:
                logger.exception("Health check failed, skipping tick")
                return True
            if not healthy:
                logger.debug(f"Health check is down, not polling {handler.task_type}")
                return True
        return False

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def poll(self, handler: TaskHandler) -> Optional[Task]:
        """Poll one task; None when there is no task or the poll failed."""
        task_type = handler.task_type
        domain = self.task_to_domain.get(task_type)
        try:
            task = self.client.poll_task(task_type, domain=domain, worker_id=self.worker_id)
        except TransientServerError as e:
            logger.warning(f"Poll for {task_type} failed: {e}")
            return None
        except Exception:
            logger.exception(f"Poll for {task_type} failed")
            return None

        if task is None:
            return None
        logger.debug(f"Polled task {task.task_id} of type {task_type} (domain={domain})")
        return task

    def execute(self, handler: TaskHandler, task: Task) -> TaskResult:
        """Run the handler, converting any error into a failed result."""
        try:
            output = handler.execute(task)
        except TerminalTaskError as e:
            logger.error(f"Task {task.task_id} failed terminally: {e}")
            return self._failure(task, e, TaskStatus.FAILED_WITH_TERMINAL_ERROR)
        except Exception as e:
            logger.exception(f"Handler {handler!r} failed on task {task.task_id}")
            return self._failure(task, e, TaskStatus.FAILED)

        if isinstance(output, TaskResult):
            result = output
            if not result.task_id:
                result.task_id = task.task_id
            if result.workflow_instance_id is None:
                result.workflow_instance_id = task.workflow_instance_id
        elif output is None:
            result = TaskResult.for_task(task, status=TaskStatus.COMPLETED)
        elif isinstance(output, Mapping):
            result = TaskResult.for_task(
                task, status=TaskStatus.COMPLETED, output_data=dict(output)
            )
        else:
            error = TypeError(
                f"Handler returned {type(output).__name__}; "
                "expected TaskResult, mapping or None"
            )
            logger.error(f"Task {task.task_id}: {error}")
            return self._failure(task, error, TaskStatus.FAILED)

        if result.worker_id is None:
            result.worker_id = self.worker_id
        return result

    def _failure(self, task: Task, error: BaseException, status: TaskStatus) -> TaskResult:
        output_data = {}
        if isinstance(error, HandlerExecutionError):
            output_data = dict(error.output_data)
        return TaskResult.for_task(
            task,
            status=status,
            reason_for_incompletion=str(error) or type(error).__name__,
            output_data=output_data,
            logs=["".join(traceback.format_exception(type(error), error, error.__traceback__))],
            worker_id=self.worker_id,
        )

    def report(self, result: TaskResult) -> bool:
        """Send ``result``; retry transient failures. Returns True when acknowledged."""
        policy = self.retry_policy
        for attempt in range(1, policy.attempts + 1):
            try:
                self.client.report_result(result)
                if attempt > 1:
                    logger.info(f"Reported task {result.task_id} on attempt {attempt}")
                return True
            except PermanentError as e:
                logger.error(f"Server rejected result for task {result.task_id}: {e}")
                return False
            except Exception as e:
                if attempt == policy.attempts:
                    logger.error(
                        f"Dropping result for task {result.task_id} ({result.status.value}) "
                        f"after {attempt} attempt(s): {e}"
                    )
                    return False
                logger.warning(
                    f"Report for task {result.task_id} failed "
                    f"(attempt {attempt}/{policy.attempts}): {e}"
                )
                if self._sleep(policy.sleep_seconds):
                    logger.warning(
                        f"Shutdown forced, abandoning report retries for task {result.task_id}"
                    )
                    return False
        return False

    def _sleep(self, seconds: float) -> bool:
        """Wait between retries; True when the loop was abandoned meanwhile."""
        return self._abandoned.wait(seconds)

    def execute_and_report(self, handler: TaskHandler, task: Task) -> bool:
        result = self.execute(handler, task)
        if self._abandoned.is_set():
            logger.warning(
                f"Shutdown forced while task {task.task_id} was executing, result not reported"
            )
            return False
        return self.report(result)

    # ------------------------------------------------------------------
    # Bookkeeping & shutdown
    # ------------------------------------------------------------------

    def _enter(self) -> bool:
        with self._idle:
            if not self._accepting:
                return False
            self._active += 1
            return True

    def _exit(self) -> None:
        with self._idle:
            self._active -= 1
            if self._active == 0:
                self._idle.notify_all()

    def _cycle_done(self, future: Future, permit: threading.BoundedSemaphore) -> None:
        permit.release()
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                "Execute/report cycle crashed", exc_info=future.exception()
            )
        self._exit()

    @property
    def active(self) -> int:
        """Ticks and cycles currently in flight."""
        with self._idle:
            return self._active

    def stop_accepting(self) -> None:
        """Make every later tick a no-op."""
        with self._idle:
            self._accepting = False

    def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for in-flight work.

        On timeout, queued cycles are cancelled and running ones are
        abandoned: they finish their handler call but report nothing.
        Returns True when everything finished in time.
        """
        self.stop_accepting()
        with self._idle:
            drained = self._idle.wait_for(lambda: self._active == 0, timeout=timeout)

        if not drained:
            self._abandoned.set()
            logger.warning(
                f"{self.active} task cycle(s) still running after {timeout}s, forcing shutdown"
            )

        for task_type, executor in self._executors.items():
            try:
                executor.shutdown(wait=drained, cancel_futures=not drained)
            except Exception:
                logger.exception(f"Failed to shut down executor for {task_type}")
        return drained


__all__ = ["RetryPolicy", "PollExecuteLoop"]
