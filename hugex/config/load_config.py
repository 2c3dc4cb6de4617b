from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


EXECUTION_MODES = ("api", "docker")


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str_list(value: Any, *, key: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of strings, got {value!r}")
    return [str(v) for v in value]


def _as_str_map(value: Any, *, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid {key}: expected a table, got {value!r}")
    return {str(k): str(v) for k, v in value.items()}


def _require_mode(value: Any, *, key: str) -> str:
    s = _as_str(value, key=key).strip().lower()
    if s not in EXECUTION_MODES:
        raise ConfigError(f"Invalid {key}: must be one of {list(EXECUTION_MODES)}, got {s!r}")
    return s


def _env_override(raw: dict[str, Any], key: str, env_name: str) -> None:
    value = os.getenv(env_name)
    if value is not None and value.strip():
        raw[key] = value.strip()


@dataclass(frozen=True)
class ExecutionConfig:
    mode: str


@dataclass(frozen=True)
class DockerConfig:
    image: str
    command: list[str]
    workdir: str
    memory_limit_bytes: int
    cpu_shares: int
    timeout_s: float
    poll_interval_s: float
    docker_bin: str
    # Parent directory for per-job workspaces; empty means the system temp dir.
    workspace_root: str = ""


@dataclass(frozen=True)
class RemoteApiConfig:
    base_url: str
    flavor: str
    image: str
    command: list[str]
    timeout_seconds: int
    poll_interval_s: float
    max_poll_attempts: int
    # Consecutive failed status checks tolerated before the job is failed.
    max_poll_errors: int
    request_timeout_s: float
    whoami_url: str = "https://huggingface.co/api/whoami-v2"


@dataclass(frozen=True)
class RepositoryConfig:
    default_url: str
    default_branch: str


@dataclass(frozen=True)
class GitConfig:
    git_bin: str = "git"
    timeout_s: float = 300.0
    author_name: str = "HugeX Bot"
    author_email: str = "hugex@users.noreply.github.com"


@dataclass(frozen=True)
class LimitsConfig:
    title_max_chars: int
    description_max_chars: int
    list_limit_max: int


@dataclass(frozen=True)
class StreamConfig:
    interval_s: float


@dataclass(frozen=True)
class DefaultsConfig:
    """Variables merged into every job before job-level values."""

    environment: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AppConfig:
    execution: ExecutionConfig
    docker: DockerConfig
    remote_api: RemoteApiConfig
    repository: RepositoryConfig
    limits: LimitsConfig
    stream: StreamConfig
    defaults: DefaultsConfig
    git: GitConfig = field(default_factory=GitConfig)


def default_config_path() -> Path:
    raw = os.getenv("HUGEX_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    # Repo layout: <repo>/hugex/config/load_config.py -> <repo>/config/default.toml
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    execution = dict(raw.get("execution", {}))
    docker = dict(raw.get("docker", {}))
    remote_api = dict(raw.get("remote_api", {}))
    repository = dict(raw.get("repository", {}))
    limits = raw.get("limits", {})
    stream = raw.get("stream", {})
    defaults = raw.get("defaults", {})
    git = raw.get("git", {})

    _env_override(execution, "mode", "HUGEX_EXECUTION_MODE")
    _env_override(docker, "image", "HUGEX_DOCKER_IMAGE")
    _env_override(docker, "timeout_s", "HUGEX_DOCKER_TIMEOUT_S")
    _env_override(repository, "default_url", "HUGEX_REPO_URL")
    _env_override(repository, "default_branch", "HUGEX_REPO_BRANCH")

    return AppConfig(
        execution=ExecutionConfig(mode=_require_mode(execution.get("mode"), key="execution.mode")),
        docker=DockerConfig(
            image=_as_str(docker.get("image"), key="docker.image"),
            command=_as_str_list(docker.get("command"), key="docker.command"),
            workdir=_as_str(docker.get("workdir", "/workspace"), key="docker.workdir"),
            memory_limit_bytes=_as_int(docker.get("memory_limit_bytes"), key="docker.memory_limit_bytes"),
            cpu_shares=_as_int(docker.get("cpu_shares"), key="docker.cpu_shares"),
            timeout_s=_as_float(docker.get("timeout_s"), key="docker.timeout_s"),
            poll_interval_s=_as_float(docker.get("poll_interval_s", 1.0), key="docker.poll_interval_s"),
            docker_bin=_as_str(docker.get("docker_bin", "docker"), key="docker.docker_bin"),
            workspace_root=_as_str(docker.get("workspace_root", ""), key="docker.workspace_root"),
        ),
        remote_api=RemoteApiConfig(
            base_url=_as_str(remote_api.get("base_url"), key="remote_api.base_url").rstrip("/"),
            flavor=_as_str(remote_api.get("flavor"), key="remote_api.flavor"),
            image=_as_str(remote_api.get("image", docker.get("image")), key="remote_api.image"),
            command=_as_str_list(remote_api.get("command"), key="remote_api.command"),
            timeout_seconds=_as_int(remote_api.get("timeout_seconds"), key="remote_api.timeout_seconds"),
            poll_interval_s=_as_float(remote_api.get("poll_interval_s"), key="remote_api.poll_interval_s"),
            max_poll_attempts=_as_int(remote_api.get("max_poll_attempts"), key="remote_api.max_poll_attempts"),
            max_poll_errors=_as_int(remote_api.get("max_poll_errors"), key="remote_api.max_poll_errors"),
            request_timeout_s=_as_float(
                remote_api.get("request_timeout_s", 30.0), key="remote_api.request_timeout_s"
            ),
            whoami_url=_as_str(
                remote_api.get("whoami_url", "https://huggingface.co/api/whoami-v2"), key="remote_api.whoami_url"
            ),
        ),
        repository=RepositoryConfig(
            default_url=_as_str(repository.get("default_url"), key="repository.default_url"),
            default_branch=_as_str(repository.get("default_branch"), key="repository.default_branch"),
        ),
        limits=LimitsConfig(
            title_max_chars=_as_int(limits.get("title_max_chars"), key="limits.title_max_chars"),
            description_max_chars=_as_int(
                limits.get("description_max_chars"), key="limits.description_max_chars"
            ),
            list_limit_max=_as_int(limits.get("list_limit_max"), key="limits.list_limit_max"),
        ),
        stream=StreamConfig(interval_s=_as_float(stream.get("interval_s"), key="stream.interval_s")),
        defaults=DefaultsConfig(
            environment=_as_str_map(defaults.get("environment"), key="defaults.environment"),
            secrets=_as_str_map(defaults.get("secrets"), key="defaults.secrets"),
        ),
        git=GitConfig(
            git_bin=_as_str(git.get("git_bin", "git"), key="git.git_bin"),
            timeout_s=_as_float(git.get("timeout_s", 300.0), key="git.timeout_s"),
            author_name=_as_str(git.get("author_name", "HugeX Bot"), key="git.author_name"),
            author_email=_as_str(
                git.get("author_email", "hugex@users.noreply.github.com"), key="git.author_email"
            ),
        ),
    )
