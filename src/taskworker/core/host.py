"""
Worker host.

Runs one chain of poll ticks per handler, each tick starting one polling
interval after the previous one ended, and owns the shutdown protocol.
Typical use:

    host = WorkerHost.build(client, [EchoHandler()], {"shared_thread_count": 4})
    host.init()
    ...
    host.shutdown()
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from apscheduler.executors.pool import ThreadPoolExecutor as SchedulerPool
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from ..client.base import TaskServerClient
from ..config import WorkerHostConfig, load_config
from ..exceptions import ConfigurationError, HostStateError
from .handler import TaskHandler
from .loop import PollExecuteLoop, RetryPolicy
from .planner import ThreadPlan, plan_thread_allocation

logger = logging.getLogger(__name__)


class HostState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


ConfigInput = Union[WorkerHostConfig, Mapping[str, Any], None]


class WorkerHost:
    """Polls the server for every registered handler and executes tasks.

    Lifecycle: CREATED --init()--> RUNNING --shutdown()--> STOPPED.

    ``init()`` is strict: calling it on a host that is not CREATED raises
    ``HostStateError``. ``shutdown()`` is tolerant: on a host that is not
    RUNNING it does nothing.
    """

    def __init__(
        self,
        client: TaskServerClient,
        handlers: Iterable[TaskHandler],
        config: ConfigInput = None,
        *,
        health_check: Optional[Callable[[], bool]] = None,
    ):
        if client is None:
            raise ConfigurationError("TaskServerClient cannot be None")
        if handlers is None:
            raise ConfigurationError("Handlers cannot be None")

        self.client = client
        self.config = _coerce_config(config)
        self.health_check = health_check

        # one handler per task type, last registration wins
        by_type: Dict[str, TaskHandler] = {}
        for handler in handlers:
            if not handler.task_type:
                raise ConfigurationError(f"Handler {handler!r} has no task type")
            if handler.polling_interval_ms < 1:
                raise ConfigurationError(
                    f"Polling interval for {handler.task_type} must be at least 1 ms"
                )
            if handler.task_type in by_type:
                logger.warning(f"Handler for {handler.task_type} replaced by {handler!r}")
            by_type[handler.task_type] = handler
        self.handlers: List[TaskHandler] = list(by_type.values())

        self.plan: ThreadPlan = plan_thread_allocation(
            by_type,
            per_type=self.config.per_type_thread_count,
            shared_total=self.config.shared_thread_count,
        )
        self.task_to_domain: Mapping[str, str] = MappingProxyType(
            dict(self.config.task_to_domain)
        )
        self.retry_policy = RetryPolicy(
            update_retry_count=self.config.update_retry_count,
            sleep_when_retry_ms=self.config.sleep_when_retry_ms,
        )

        self._lock = threading.Lock()
        self._state = HostState.CREATED
        self._scheduler: Optional[BackgroundScheduler] = None
        self._loop: Optional[PollExecuteLoop] = None

    @classmethod
    def build(
        cls,
        client: TaskServerClient,
        handlers: Iterable[TaskHandler],
        config: ConfigInput = None,
        **kwargs: Any,
    ) -> "WorkerHost":
        """Validate configuration and create a host. No threads, no network.

        Raises:
            ConfigurationError: invalid or contradictory configuration
        """
        return cls(client, handlers, config, **kwargs)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> HostState:
        with self._lock:
            return self._state

    @property
    def thread_allocation(self) -> Mapping[str, int]:
        return self.plan.allocation

    @property
    def shutdown_grace_period_seconds(self) -> int:
        return self.config.shutdown_grace_period_seconds

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        """Start polling. Returns once every handler is scheduled.

        Raises:
            HostStateError: the host was already started
        """
        with self._lock:
            if self._state is not HostState.CREATED:
                raise HostStateError(f"Cannot init a host in state {self._state.value}")

            self._loop = PollExecuteLoop(
                self.client,
                self.plan.allocation,
                retry_policy=self.retry_policy,
                task_to_domain=self.task_to_domain,
                worker_id=self.config.worker_id,
                worker_name_prefix=self.config.worker_name_prefix,
                health_check=self.health_check,
            )
            self._state = HostState.RUNNING

            if not self.handlers:
                logger.warning("No handlers registered, nothing to poll")
                return

            for task_type in self.plan.starved:
                logger.warning(f"Task type {task_type} has no threads and will not be polled")

            # A late tick still runs; a skipped one would end its chain
            self._scheduler = BackgroundScheduler(
                executors={"default": SchedulerPool(max_workers=len(self.handlers))},
                job_defaults={"coalesce": True, "misfire_grace_time": None},
            )
            for handler in self.handlers:
                self._schedule_tick(handler)
            self._scheduler.start()

        logger.info(f"Starting workers with thread count {dict(self.plan.allocation)}")
        if self.task_to_domain:
            logger.info(f"Worker domains {dict(self.task_to_domain)}")

    def _schedule_tick(self, handler: TaskHandler) -> None:
        """Queue the next tick for ``handler`` one polling interval from now.

        Each tick is a one-shot job that schedules its successor when it
        ends, so the interval is a delay between ticks, never a rate.
        Job ids must stay unique: the scheduler removes a finished job by id
        after it was submitted, which may be after its successor was added.
        """
        run_date = datetime.now(timezone.utc) + timedelta(
            milliseconds=handler.polling_interval_ms
        )
        self._scheduler.add_job(
            self._tick,
            trigger=DateTrigger(run_date=run_date),
            args=[handler],
            name=f"Poll {handler.task_type}",
        )

    def _tick(self, handler: TaskHandler) -> None:
        try:
            self._loop.poll_and_execute(handler)
        finally:
            with self._lock:
                if self._state is HostState.RUNNING:
                    self._schedule_tick(handler)

    def shutdown(self) -> bool:
        """Stop polling and drain in-flight work within the grace period.

        Safe to call from any thread. Calling it on a host that is not
        running is a no-op that returns True unless another shutdown is
        still in progress.
        Returns True when all in-flight work finished before the grace
        period elapsed; False after a forced shutdown, in which case
        tasks may be left unreported on the server.
        """
        with self._lock:
            if self._state is not HostState.RUNNING:
                logger.debug(f"Shutdown ignored in state {self._state.value}")
                return self._state is not HostState.SHUTTING_DOWN
            self._state = HostState.SHUTTING_DOWN

        grace = self.config.shutdown_grace_period_seconds
        drained = False
        try:
            self._loop.stop_accepting()
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)
            drained = self._loop.drain(timeout=grace)
            if drained:
                logger.info("Worker host stopped")
            else:
                logger.warning(f"Worker host forced to stop after {grace}s grace period")
        except Exception:
            logger.exception("Error during worker host shutdown")
        finally:
            with self._lock:
                self._state = HostState.STOPPED
        return drained


def _coerce_config(config: ConfigInput) -> WorkerHostConfig:
    if isinstance(config, WorkerHostConfig):
        return config
    return load_config(**dict(config or {}))


__all__ = ["HostState", "WorkerHost"]
