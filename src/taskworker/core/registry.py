"""
Handler Registry.

Collects task handlers and their per-type overrides before a host is built.
A registry is owned by the caller; nothing is shared between instances.

    registry = WorkerRegistry()
    registry.register(EchoHandler(), thread_count=2)

    @registry.handler("resize", polling_interval_ms=200, domain="staging")
    def resize(task):
        return {"size": task.input_data["size"] // 2}

    host = registry.build_host(client)
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..client.base import TaskServerClient
from ..config import WorkerHostConfig, load_config
from ..exceptions import ConfigurationError
from ..models import Task
from .handler import FunctionHandler, HandlerOutput, TaskHandler, with_polling_interval
from .host import ConfigInput, WorkerHost

logger = logging.getLogger(__name__)


@dataclass
class HandlerRegistration:
    """A handler plus the overrides it was registered with."""

    handler: TaskHandler
    thread_count: Optional[int] = None
    polling_interval_ms: Optional[int] = None
    domain: Optional[str] = None

    @property
    def task_type(self) -> str:
        return self.handler.task_type


@dataclass(frozen=True)
class Registration:
    """Finalized registry contents, ready to build a host from."""

    handlers: Tuple[TaskHandler, ...] = ()
    per_type_thread_count: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType({})
    )
    task_to_domain: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def task_types(self) -> List[str]:
        return [h.task_type for h in self.handlers]


class WorkerRegistry:
    """Registry for task handlers.

    Handlers register with:
    - handler: a TaskHandler bound to one task type
    - thread_count: execution threads for that type
    - polling_interval_ms: delay between poll ticks
    - domain: queue partition to poll

    Registering a task type twice replaces the earlier handler.
    """

    def __init__(self):
        self._registrations: Dict[str, HandlerRegistration] = {}

    def register(
        self,
        handler: TaskHandler,
        *,
        thread_count: Optional[int] = None,
        polling_interval_ms: Optional[int] = None,
        domain: Optional[str] = None,
    ) -> TaskHandler:
        """Register a handler. Returns it unchanged."""
        task_type = handler.task_type
        if not task_type:
            raise ConfigurationError(f"Handler {handler!r} has no task type")
        if thread_count is not None and thread_count < 1:
            raise ConfigurationError(f"Thread count for {task_type} must be at least 1")
        if polling_interval_ms is not None and polling_interval_ms < 1:
            raise ConfigurationError(f"Polling interval for {task_type} must be at least 1 ms")

        if task_type in self._registrations:
            logger.warning(f"Handler for {task_type} already registered, replacing")

        self._registrations[task_type] = HandlerRegistration(
            handler=handler,
            thread_count=thread_count,
            polling_interval_ms=polling_interval_ms,
            domain=domain or None,
        )
        logger.info(
            f"Registered handler {handler!r} (threads={thread_count}, "
            f"interval={polling_interval_ms or handler.polling_interval_ms}ms, domain={domain})"
        )
        return handler

    def handler(
        self,
        task_type: str,
        *,
        thread_count: Optional[int] = None,
        polling_interval_ms: Optional[int] = None,
        domain: Optional[str] = None,
    ) -> Callable[[Callable[[Task], HandlerOutput]], Callable[[Task], HandlerOutput]]:
        """Decorator to register a plain function as the handler for ``task_type``."""

        def decorator(fn):
            self.register(
                FunctionHandler(task_type, fn),
                thread_count=thread_count,
                polling_interval_ms=polling_interval_ms,
                domain=domain,
            )
            return fn

        return decorator

    def unregister(self, task_type: str) -> None:
        """Remove the handler for a task type, if any."""
        self._registrations.pop(task_type, None)

    def get_registration(self, task_type: str) -> Optional[HandlerRegistration]:
        """Get a registration by task type."""
        return self._registrations.get(task_type)

    def get_all_registrations(self) -> List[HandlerRegistration]:
        """Get all registrations in registration order."""
        return list(self._registrations.values())

    def __len__(self) -> int:
        return len(self._registrations)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._registrations

    def load_module(self, module_name: str) -> None:
        """Import ``module_name`` and call its ``register_all(registry)``."""
        module = importlib.import_module(module_name)
        register_all = getattr(module, "register_all", None)
        if register_all is None:
            raise ConfigurationError(f"Module {module_name} has no register_all(registry)")
        before = len(self)
        register_all(self)
        logger.info(f"Loaded {len(self) - before} handler(s) from {module_name}")

    def finalize(self, config: Optional[WorkerHostConfig] = None) -> Registration:
        """Resolve overrides into an immutable snapshot.

        Precedence for each setting: ``config.handler_overrides`` (and
        ``config.task_to_domain`` / ``config.per_type_thread_count``),
        then the registration, then the handler itself.
        """
        config = config or load_config()
        handlers: List[TaskHandler] = []
        thread_counts: Dict[str, int] = {}
        domains: Dict[str, str] = {}

        for task_type, reg in self._registrations.items():
            overrides = config.handler_overrides.get(task_type)

            handler = reg.handler
            interval = (overrides and overrides.polling_interval_ms) or reg.polling_interval_ms
            if interval:
                handler = with_polling_interval(handler, interval)
            handlers.append(handler)

            threads = (overrides and overrides.thread_count) or reg.thread_count
            if threads:
                thread_counts[task_type] = threads

            domain = (overrides and overrides.domain) or reg.domain
            if domain:
                domains[task_type] = domain

        thread_counts.update(config.per_type_thread_count)
        domains.update(config.task_to_domain)

        return Registration(
            handlers=tuple(handlers),
            per_type_thread_count=MappingProxyType(thread_counts),
            task_to_domain=MappingProxyType(domains),
        )

    def build_host(
        self,
        client: TaskServerClient,
        config: ConfigInput = None,
        **kwargs: Any,
    ) -> WorkerHost:
        """Finalize the registry and build a WorkerHost from it.

        Raises:
            ConfigurationError: registration thread counts combined with a
                shared thread pool, or any other invalid setting
        """
        if isinstance(config, WorkerHostConfig):
            base = config
        else:
            base = load_config(**dict(config or {}))

        registration = self.finalize(base)
        host_config = base.model_copy(
            update={
                "per_type_thread_count": dict(registration.per_type_thread_count),
                "task_to_domain": dict(registration.task_to_domain),
            }
        )
        if not registration.handlers:
            logger.warning("No handlers registered. Host will have nothing to poll.")
        return WorkerHost.build(client, registration.handlers, host_config, **kwargs)


__all__ = [
    "HandlerRegistration",
    "Registration",
    "WorkerRegistry",
]
