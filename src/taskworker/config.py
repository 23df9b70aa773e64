"""
Configuration for the task worker host.

Uses pydantic-settings for validation and environment loading.
Every field can be set with a TASKWORKER_ prefixed environment variable;
mapping fields take JSON, e.g.

    TASKWORKER_PER_TYPE_THREAD_COUNT='{"echo": 4}'
"""

from __future__ import annotations

import socket
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class HandlerOverrides(BaseModel):
    """Per task type settings that win over what the handler declares."""

    thread_count: Optional[int] = Field(default=None, ge=1)
    polling_interval_ms: Optional[int] = Field(default=None, ge=1)
    domain: Optional[str] = None


class WorkerHostConfig(BaseSettings):
    """Master configuration for a WorkerHost.

    ``shared_thread_count`` and ``per_type_thread_count`` are mutually
    exclusive; the conflict is reported when the host is built.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKWORKER_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    # Server
    server_url: str = Field(default="http://localhost:8080/api")
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    worker_id: str = Field(
        default_factory=socket.gethostname,
        description="Identity sent with polls and stamped on results",
    )
    log_level: str = Field(default="INFO")

    # Thread budget
    shared_thread_count: Optional[int] = Field(
        default=None, ge=1, description="Pool split evenly across task types"
    )
    per_type_thread_count: Dict[str, int] = Field(default_factory=dict)

    # Report retry
    sleep_when_retry_ms: int = Field(
        default=500, ge=0, description="Delay between report retries"
    )
    update_retry_count: int = Field(
        default=3, ge=0, description="Additional report attempts after a failure"
    )

    shutdown_grace_period_seconds: int = Field(default=10, ge=1)
    task_to_domain: Dict[str, str] = Field(default_factory=dict)
    worker_name_prefix: str = Field(default="task-worker")
    handler_overrides: Dict[str, HandlerOverrides] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, **overrides: Any) -> "WorkerHostConfig":
        """Load configuration from environment variables."""
        return load_config(**overrides)


def load_config(**options: Any) -> WorkerHostConfig:
    """Build a validated config; explicit ``options`` win over the environment.

    Raises:
        ConfigurationError: any option is out of range or malformed
    """
    try:
        return WorkerHostConfig(**options)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid worker host configuration: {e}") from e


__all__ = ["HandlerOverrides", "WorkerHostConfig", "load_config"]
