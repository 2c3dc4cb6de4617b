from __future__ import annotations

import dataclasses
import sys
import threading
from pathlib import Path

import pytest


# Ensure `import hugex...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from hugex.config.load_config import AppConfig, ExecutionConfig, load_app_config  # noqa: E402
from hugex.runtime.credentials import Credentials  # noqa: E402
from hugex.runtime.executors.base import (  # noqa: E402
    ExecutionBackend,
    ExecutionContext,
    ExecutionHandle,
    ExecutionOutcome,
    HealthStatus,
    PollResult,
)
from hugex.storage.job_store import JobRecord  # noqa: E402


class ScriptedBackend(ExecutionBackend):
    """In-memory backend: emits `chunks` one per poll, then reports `outcome`.

    When `gate` is given, polls report "still running" until the gate is set.
    """

    name = "scripted"

    def __init__(
        self,
        *,
        chunks: list[str] | None = None,
        outcome: ExecutionOutcome | None = None,
        start_error: Exception | None = None,
        poll_error: Exception | None = None,
        gate: threading.Event | None = None,
        health: HealthStatus | None = None,
    ) -> None:
        self.chunks = list(chunks if chunks is not None else ["hello\n"])
        self.outcome = outcome or ExecutionOutcome(success=True)
        self.start_error = start_error
        self.poll_error = poll_error
        self.gate = gate
        self.health = health or HealthStatus(available=True)
        self.lock = threading.Lock()
        self.started: list[str] = []
        self.contexts: list[tuple[dict[str, str], dict[str, str]]] = []
        self.cancelled: list[str] = []
        self.images: list[str | None] = []
        self.polls = 0

    @property
    def poll_interval_s(self) -> float:
        return 0.01

    def start(self, job: JobRecord, context: ExecutionContext, credentials: Credentials) -> ExecutionHandle:
        with self.lock:
            self.started.append(job.job_id)
            self.contexts.append((dict(context.environment), dict(context.secrets)))
            self.images.append(context.image)
        if self.start_error is not None:
            raise self.start_error
        return ExecutionHandle(
            job_id=job.job_id,
            environment=dict(context.environment),
            secrets=dict(context.secrets),
            api_job_id=f"remote-{job.job_id[:8]}",
        )

    def poll(self, handle: ExecutionHandle) -> PollResult:
        with self.lock:
            self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        if self.gate is not None and not self.gate.is_set():
            return PollResult()
        if self.chunks:
            return PollResult(output=self.chunks.pop(0))
        return PollResult(done=True, outcome=self.outcome)

    def cancel(self, handle: ExecutionHandle) -> None:
        with self.lock:
            self.cancelled.append(handle.job_id)

    def health_check(self) -> HealthStatus:
        return self.health


@pytest.fixture
def scripted_backend() -> type[ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture
def app_config(monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    for name in (
        "HUGEX_CONFIG_PATH",
        "HUGEX_EXECUTION_MODE",
        "HUGEX_DOCKER_IMAGE",
        "HUGEX_DOCKER_TIMEOUT_S",
        "HUGEX_REPO_URL",
        "HUGEX_REPO_BRANCH",
    ):
        monkeypatch.delenv(name, raising=False)
    return load_app_config()


def with_mode(config: AppConfig, mode: str) -> AppConfig:
    return dataclasses.replace(config, execution=ExecutionConfig(mode=mode))


@pytest.fixture
def docker_config(app_config: AppConfig) -> AppConfig:
    return with_mode(app_config, "docker")
