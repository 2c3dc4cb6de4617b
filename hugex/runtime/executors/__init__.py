"""Execution backends.

Both variants share the `start` / `poll` / `cancel` surface from `base`, so the
processor never branches on which one is configured.
"""

from __future__ import annotations

from hugex.config.load_config import AppConfig, ConfigError
from hugex.runtime.executors.base import (
    BackendError,
    BackendUnavailableError,
    ExecutionBackend,
    ExecutionContext,
    ExecutionHandle,
    ExecutionOutcome,
    HealthStatus,
    PollResult,
    build_execution_context,
)
from hugex.runtime.executors.container import ContainerExecutor
from hugex.runtime.executors.remote import RemoteExecutor


def create_backend(config: AppConfig) -> ExecutionBackend:
    mode = config.execution.mode
    if mode == "docker":
        return ContainerExecutor(config.docker)
    if mode == "api":
        return RemoteExecutor(config.remote_api)
    raise ConfigError(f"Unknown execution mode: {mode!r}")


__all__ = [
    "BackendError",
    "BackendUnavailableError",
    "ContainerExecutor",
    "ExecutionBackend",
    "ExecutionContext",
    "ExecutionHandle",
    "ExecutionOutcome",
    "HealthStatus",
    "PollResult",
    "RemoteExecutor",
    "build_execution_context",
    "create_backend",
]
