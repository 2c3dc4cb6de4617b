from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from hugex.runtime.executors import ExecutionBackend, HealthStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    healthy: bool
    execution_mode: str
    backend: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "unhealthy"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "execution_mode": self.execution_mode}
        if self.backend:
            out["backend"] = dict(self.backend)
        return out


class HealthMonitor:
    """Liveness of the configured execution backend.

    The remote jobs API is assumed available (it is monitored upstream), so `api`
    mode is always healthy. `docker` mode asks the container runtime directly.
    """

    def __init__(self, mode: str, backend: ExecutionBackend) -> None:
        self._mode = mode
        self._backend = backend

    @property
    def execution_mode(self) -> str:
        return self._mode

    def check(self) -> HealthReport:
        if self._mode != "docker":
            return HealthReport(healthy=True, execution_mode=self._mode)

        try:
            status = self._backend.health_check()
        except Exception as e:
            logger.exception("Backend health check raised")
            status = HealthStatus(available=False, error=str(e))
        if not status.available:
            logger.warning("Execution backend unhealthy: %s", status.error)
        return HealthReport(healthy=status.available, execution_mode=self._mode, backend=status.to_dict())
