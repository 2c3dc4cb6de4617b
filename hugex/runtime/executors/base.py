from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from hugex.config.load_config import AppConfig
from hugex.runtime.credentials import Credentials
from hugex.runtime.diff import JobDiff
from hugex.runtime.docker_settings import DockerSettings
from hugex.runtime.repository import is_github_repo_url
from hugex.storage.job_store import JobRecord


class BackendError(RuntimeError):
    """Execution failed; the job should be marked failed with this message."""


class BackendUnavailableError(BackendError):
    """The backend cannot be reached or cannot launch the job at all."""


@dataclass(frozen=True)
class HealthStatus:
    available: bool
    error: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"available": self.available}
        if self.error:
            out["error"] = self.error
        if self.version:
            out["version"] = self.version
        return out


@dataclass(frozen=True)
class ExecutionOutcome:
    success: bool
    error: str | None = None
    diff: JobDiff | None = None


@dataclass(frozen=True)
class PollResult:
    output: str = ""
    done: bool = False
    # Only set when done.
    outcome: ExecutionOutcome | None = None


@dataclass
class ExecutionHandle:
    """Per-run state owned by the backend that created it."""

    job_id: str
    environment: dict[str, str]
    secrets: dict[str, str] = field(repr=False)
    started_at: float = field(default_factory=time.time)
    api_job_id: str | None = None


@dataclass(frozen=True)
class ExecutionContext:
    environment: dict[str, str]
    secrets: dict[str, str]
    image: str | None = None


def build_execution_context(
    job: JobRecord,
    *,
    job_secrets: dict[str, str],
    credentials: Credentials,
    config: AppConfig,
    docker_settings: DockerSettings | None = None,
) -> ExecutionContext:
    """Merge base variables, configured defaults, runtime docker settings and job-level values (job wins)."""
    repo = job.repository or {}
    repo_url = str(repo.get("url") or config.repository.default_url)
    repo_branch = str(job.branch or repo.get("branch") or config.repository.default_branch)

    environment: dict[str, str] = {
        "JOB_ID": job.job_id,
        "REPO_URL": repo_url,
        "REPO_BRANCH": repo_branch,
        "PROMPT": job.description or job.title,
    }
    environment.update(config.defaults.environment)
    if docker_settings is not None:
        environment.update(docker_settings.environment)
    environment.update(job.environment)

    secrets: dict[str, str] = {}
    if credentials.openai_api_key:
        secrets["OPENAI_API_KEY"] = credentials.openai_api_key
    if credentials.github_token and is_github_repo_url(repo_url):
        secrets["GITHUB_TOKEN"] = credentials.github_token
    secrets.update(config.defaults.secrets)
    if docker_settings is not None:
        secrets.update(docker_settings.secrets)
    secrets.update(job_secrets)

    return ExecutionContext(
        environment=environment,
        secrets=secrets,
        image=docker_settings.image if docker_settings is not None else None,
    )


class ExecutionBackend(ABC):
    """Capability surface shared by every execution backend.

    `start` only initiates work; progress is observed through repeated `poll`
    calls made by the processor, `poll_interval_s` apart.
    """

    name: str = ""

    @property
    @abstractmethod
    def poll_interval_s(self) -> float: ...

    @abstractmethod
    def start(self, job: JobRecord, context: ExecutionContext, credentials: Credentials) -> ExecutionHandle: ...

    @abstractmethod
    def poll(self, handle: ExecutionHandle) -> PollResult: ...

    @abstractmethod
    def cancel(self, handle: ExecutionHandle) -> None: ...

    def health_check(self) -> HealthStatus:
        return HealthStatus(available=True)

    def cleanup_orphans(self) -> int:
        """Release resources left behind by a previous process. Returns how many."""
        return 0
