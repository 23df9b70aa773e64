"""
Per-task-type thread allocation.

Two mutually exclusive strategies:
- explicit: a thread count per task type; unlisted types get 1 thread
- shared: one pool split evenly across distinct task types
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

INVALID_THREAD_COUNT = (
    "Invalid worker thread count specified, use either shared thread pool "
    "or config thread count per task"
)


@dataclass(frozen=True)
class ThreadPlan:
    """Validated thread allocation plus the warnings raised while planning."""

    allocation: Mapping[str, int]
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    shared: bool = False

    @property
    def starved(self) -> List[str]:
        """Task types that were allocated zero threads."""
        return sorted(t for t, n in self.allocation.items() if n == 0)


def plan_thread_allocation(
    task_types: Iterable[str],
    per_type: Optional[Mapping[str, int]] = None,
    shared_total: Optional[int] = None,
) -> ThreadPlan:
    """Compute the thread count for every registered task type.

    Args:
        task_types: Task types of the registered handlers (duplicates allowed)
        per_type: Explicit thread count per task type
        shared_total: Size of a pool shared by all task types

    Raises:
        ConfigurationError: both strategies supplied, or a count below 1
    """
    distinct = sorted(set(task_types))
    per_type = dict(per_type or {})
    warnings: List[str] = []

    if per_type and shared_total is not None:
        logger.error(INVALID_THREAD_COUNT)
        raise ConfigurationError(INVALID_THREAD_COUNT)

    if per_type:
        invalid = {t: n for t, n in per_type.items() if n < 1}
        if invalid:
            raise ConfigurationError(f"Thread count must be at least 1: {invalid}")

        allocation = {}
        for task_type in distinct:
            if task_type not in per_type:
                msg = f"No thread count specified for task type {task_type}, default to 1 thread"
                logger.info(msg)
                warnings.append(msg)
                allocation[task_type] = 1
            else:
                allocation[task_type] = per_type[task_type]

        for task_type in sorted(set(per_type) - set(distinct)):
            msg = f"Thread count given for unregistered task type {task_type}, ignored"
            logger.warning(msg)
            warnings.append(msg)

        return ThreadPlan(MappingProxyType(allocation), tuple(warnings), shared=False)

    if shared_total is not None and shared_total < 1:
        raise ConfigurationError("No. of threads cannot be less than 1")

    if not distinct:
        return ThreadPlan(MappingProxyType({}), (), shared=True)

    total = shared_total if shared_total is not None else len(distinct)
    split = total // len(distinct)
    allocation = {task_type: split for task_type in distinct}

    if split == 0:
        # More task types than threads: every type is starved. Kept as-is
        # rather than rounded up so the pool size stays an upper bound.
        msg = (
            f"Shared pool of {total} thread(s) is smaller than the {len(distinct)} "
            f"task types; task types {distinct} get no threads and will not be polled"
        )
        logger.warning(msg)
        warnings.append(msg)

    return ThreadPlan(MappingProxyType(allocation), tuple(warnings), shared=True)


__all__ = ["ThreadPlan", "plan_thread_allocation", "INVALID_THREAD_COUNT"]
