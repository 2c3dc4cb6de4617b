"""Local container backend: runs each job in its own `docker run` child process.

Secrets are handed to the container as bare `-e KEY` flags whose values come
from the child process environment, so they never appear in the docker
command line, in logs, or in poll output.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from hugex.config.load_config import DockerConfig
from hugex.runtime.credentials import Credentials
from hugex.runtime.diff import diff_from_output
from hugex.runtime.executors.base import (
    BackendError,
    BackendUnavailableError,
    ExecutionBackend,
    ExecutionContext,
    ExecutionHandle,
    ExecutionOutcome,
    HealthStatus,
    PollResult,
)
from hugex.storage.job_store import JobRecord


logger = logging.getLogger(__name__)

MANAGED_LABEL = "hugex.managed=1"
WORKSPACE_PREFIX = "hugex-ws-"


@dataclass
class ContainerHandle(ExecutionHandle):
    container_name: str = ""
    workspace: str = ""
    process: Any = field(default=None, repr=False)
    reader: threading.Thread | None = field(default=None, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    pending: list[str] = field(default_factory=list, repr=False)
    output: list[str] = field(default_factory=list, repr=False)
    torn_down: bool = False

    def push(self, chunk: str) -> None:
        with self.lock:
            self.pending.append(chunk)
            self.output.append(chunk)

    def drain(self) -> str:
        with self.lock:
            text = "".join(self.pending)
            self.pending.clear()
        return text

    def full_output(self) -> str:
        with self.lock:
            return "".join(self.output)


def _pump_output(handle: ContainerHandle) -> None:
    stream = handle.process.stdout
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            handle.push(line)
    finally:
        stream.close()


class ContainerExecutor(ExecutionBackend):
    name = "docker"

    def __init__(self, config: DockerConfig) -> None:
        self._config = config

    @property
    def poll_interval_s(self) -> float:
        return float(self._config.poll_interval_s)

    # --- docker CLI plumbing
    def _run_docker(self, args: list[str], *, timeout_s: float = 30.0) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self._config.docker_bin, *args],
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )

    def _spawn(self, cmd: list[str], env: dict[str, str]) -> subprocess.Popen[str]:
        return subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=env,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    def build_run_command(self, *, container_name: str, workspace: str, context: ExecutionContext) -> list[str]:
        cfg = self._config
        cmd = [
            cfg.docker_bin,
            "run",
            "--name",
            container_name,
            "--label",
            MANAGED_LABEL,
            "--memory",
            str(cfg.memory_limit_bytes),
            "--cpu-shares",
            str(cfg.cpu_shares),
            "-v",
            f"{workspace}:{cfg.workdir}",
            "-w",
            cfg.workdir,
        ]
        for key, value in context.environment.items():
            cmd.extend(["-e", f"{key}={value}"])
        for key in context.secrets:
            cmd.extend(["-e", key])
        cmd.append(context.image or cfg.image)
        cmd.extend(cfg.command)
        return cmd

    # --- ExecutionBackend
    def health_check(self) -> HealthStatus:
        try:
            proc = self._run_docker(["version", "--format", "{{.Server.Version}}"], timeout_s=10.0)
        except FileNotFoundError:
            return HealthStatus(available=False, error=f"docker CLI not found: {self._config.docker_bin}")
        except subprocess.TimeoutExpired:
            return HealthStatus(available=False, error="docker daemon did not respond in time")
        except OSError as e:
            return HealthStatus(available=False, error=str(e))
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            return HealthStatus(available=False, error=detail or "docker unavailable")
        return HealthStatus(available=True, version=(proc.stdout or "").strip() or None)

    def _workspace_root(self) -> str:
        return self._config.workspace_root or tempfile.gettempdir()

    def start(self, job: JobRecord, context: ExecutionContext, credentials: Credentials) -> ContainerHandle:
        health = self.health_check()
        if not health.available:
            raise BackendUnavailableError(f"Docker daemon not available: {health.error}")

        image = context.image or self._config.image
        inspect = self._run_docker(["image", "inspect", image])
        if inspect.returncode != 0:
            raise BackendError(
                f"Docker image '{image}' not found. Please check the image name or pull/build the image."
            )

        root = self._workspace_root()
        os.makedirs(root, exist_ok=True)
        workspace = tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{job.job_id[:8]}-", dir=root)
        handle = ContainerHandle(
            job_id=job.job_id,
            environment=dict(context.environment),
            secrets=dict(context.secrets),
            container_name=f"hugex-{job.job_id}",
            workspace=workspace,
        )
        cmd = self.build_run_command(container_name=handle.container_name, workspace=workspace, context=context)
        env = {**os.environ, **context.secrets}

        logger.info(
            "Starting container %s for job %s (image=%s, secret keys=%s)",
            handle.container_name,
            job.job_id,
            image,
            sorted(context.secrets),
        )
        try:
            handle.process = self._spawn(cmd, env)
        except OSError as e:
            self._teardown(handle)
            raise BackendUnavailableError(f"Could not launch container: {e}") from e

        handle.reader = threading.Thread(
            target=_pump_output, args=(handle,), name=f"hugex-logs-{job.job_id[:8]}", daemon=True
        )
        handle.reader.start()
        return handle

    def poll(self, handle: ExecutionHandle) -> PollResult:
        assert isinstance(handle, ContainerHandle)
        elapsed = time.time() - handle.started_at

        if handle.process.poll() is None:
            if elapsed > self._config.timeout_s:
                self.cancel(handle)
                return PollResult(
                    output=handle.drain(),
                    done=True,
                    outcome=ExecutionOutcome(
                        success=False,
                        error=f"Container execution timeout after {int(self._config.timeout_s)}s",
                    ),
                )
            return PollResult(output=handle.drain())

        if handle.reader is not None:
            handle.reader.join(timeout=5.0)
        output = handle.drain()
        returncode = handle.process.returncode
        self._teardown(handle)

        if returncode == 0:
            return PollResult(
                output=output,
                done=True,
                outcome=ExecutionOutcome(success=True, diff=diff_from_output(handle.full_output(), handle.job_id)),
            )
        return PollResult(
            output=output,
            done=True,
            outcome=ExecutionOutcome(success=False, error=f"Container exited with code {returncode}"),
        )

    def cancel(self, handle: ExecutionHandle) -> None:
        assert isinstance(handle, ContainerHandle)
        if handle.torn_down:
            return
        if handle.process is not None and handle.process.poll() is None:
            try:
                self._run_docker(["kill", handle.container_name], timeout_s=15.0)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("docker kill failed for %s: %s", handle.container_name, e)
            try:
                handle.process.kill()
                handle.process.wait(timeout=10.0)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("Could not reap docker client for %s: %s", handle.container_name, e)
        self._teardown(handle)

    def _teardown(self, handle: ContainerHandle) -> None:
        """Remove the container and its workspace. Safe to call more than once."""
        if handle.torn_down:
            return
        handle.torn_down = True
        if handle.process is not None:
            try:
                self._run_docker(["rm", "-f", handle.container_name], timeout_s=30.0)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("docker rm failed for %s: %s", handle.container_name, e)
        if handle.workspace:
            shutil.rmtree(handle.workspace, ignore_errors=True)

    def _sweep_workspaces(self) -> int:
        root = self._workspace_root()
        try:
            names = os.listdir(root)
        except OSError as e:
            logger.warning("Could not list workspace root %s: %s", root, e)
            return 0
        swept = 0
        for name in names:
            path = os.path.join(root, name)
            if name.startswith(WORKSPACE_PREFIX) and os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
                swept += 1
        if swept:
            logger.info("Removed %d leftover job workspace(s) under %s", swept, root)
        return swept

    def cleanup_orphans(self) -> int:
        """Remove labelled containers and workspaces left by a previous process.

        Returns the number of containers removed.
        """
        self._sweep_workspaces()
        try:
            listed = self._run_docker(["ps", "-aq", "--filter", f"label={MANAGED_LABEL}"])
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not list leftover containers: %s", e)
            return 0
        if listed.returncode != 0:
            return 0
        ids = [line.strip() for line in (listed.stdout or "").splitlines() if line.strip()]
        if not ids:
            return 0
        removed = self._run_docker(["rm", "-f", *ids], timeout_s=60.0)
        if removed.returncode != 0:
            logger.warning("Could not remove leftover containers: %s", (removed.stderr or "").strip())
            return 0
        logger.info("Removed %d leftover job container(s)", len(ids))
        return len(ids)
