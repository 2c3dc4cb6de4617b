"""Remote execution backend: submits jobs to the compute jobs API and polls them."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from hugex.config.load_config import RemoteApiConfig
from hugex.runtime.credentials import Credentials, effective_username
from hugex.runtime.diff import diff_from_output
from hugex.runtime.executors.base import (
    BackendError,
    BackendUnavailableError,
    ExecutionBackend,
    ExecutionContext,
    ExecutionHandle,
    ExecutionOutcome,
    PollResult,
)
from hugex.storage.job_store import JobRecord


logger = logging.getLogger(__name__)

COMPLETED_STAGES = frozenset({"completed", "succeeded", "success", "finished", "done"})
FAILED_STAGES = frozenset({"failed", "error", "cancelled", "canceled", "timeout", "aborted"})


class RemoteHTTPError(BackendError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _http_request(
    method: str,
    url: str,
    *,
    token: str,
    payload: dict[str, Any] | None = None,
    timeout_s: float,
) -> str:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
    if data is not None:
        headers["Content-Type"] = "application/json"
    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            return resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        body = ""
        try:
            body = e.read().decode("utf-8", errors="replace")
        except Exception:
            body = ""
        raise RemoteHTTPError(f"HTTP {e.code} for {url}. {body[:200]}".strip(), status=e.code) from e
    except urllib.error.URLError as e:
        raise RemoteHTTPError(f"Network error for {url}: {e}") from e
    except TimeoutError as e:
        raise RemoteHTTPError(f"Timed out calling {url}") from e


def _http_json(
    method: str,
    url: str,
    *,
    token: str,
    payload: dict[str, Any] | None = None,
    timeout_s: float,
) -> dict[str, Any]:
    raw = _http_request(method, url, token=token, payload=payload, timeout_s=timeout_s)
    try:
        obj = json.loads(raw) if raw.strip() else {}
    except Exception as e:
        raise RemoteHTTPError(f"Invalid JSON from {url}: {e}") from e
    return obj if isinstance(obj, dict) else {}


def parse_sse_log_lines(raw: str) -> str:
    """Join the `data` fields of `data: {...}` event lines into plain log text."""
    out: list[str] = []
    for line in raw.split("\n"):
        if not line.startswith("data: "):
            continue
        try:
            parsed = json.loads(line[len("data: ") :])
        except Exception:
            continue
        if isinstance(parsed, dict) and parsed.get("data"):
            out.append(str(parsed["data"]))
    return "\n".join(out)


def fetch_username(token: str, *, config: RemoteApiConfig) -> str | None:
    """Resolve the account name behind an API token (None if the lookup fails)."""
    try:
        info = _http_json("GET", config.whoami_url, token=token, timeout_s=config.request_timeout_s)
    except RemoteHTTPError as e:
        logger.warning("Could not resolve username for API token: %s", e)
        return None
    name = info.get("name") or info.get("username")
    return str(name) if name else None


def job_stage(status: dict[str, Any]) -> str:
    raw = status.get("status")
    if isinstance(raw, dict):
        raw = raw.get("stage")
    return str(raw or status.get("state") or "").strip().lower()


@dataclass
class RemoteHandle(ExecutionHandle):
    token: str = field(default="", repr=False)
    username: str = ""
    attempts: int = 0
    consecutive_errors: int = 0


class RemoteExecutor(ExecutionBackend):
    name = "api"

    def __init__(self, config: RemoteApiConfig) -> None:
        self._config = config

    @property
    def poll_interval_s(self) -> float:
        return float(self._config.poll_interval_s)

    def _jobs_url(self, username: str) -> str:
        return f"{self._config.base_url}/{quote(username, safe='')}"

    def start(self, job: JobRecord, context: ExecutionContext, credentials: Credentials) -> RemoteHandle:
        token = credentials.huggingface_token
        if not token:
            raise BackendError("Hugging Face token is required but not provided in credentials")
        username = effective_username(credentials)
        if not username:
            raise BackendError("Cannot submit remote job: no username in credentials")

        payload = {
            "command": list(self._config.command),
            "arguments": [],
            "environment": dict(context.environment),
            "flavor": self._config.flavor,
            "dockerImage": self._config.image,
            "secrets": dict(context.secrets),
            "timeoutSeconds": int(self._config.timeout_seconds),
        }
        logger.info(
            "Submitting job %s to %s (env keys=%s, secret keys=%s)",
            job.job_id,
            self._jobs_url(username),
            sorted(context.environment),
            sorted(context.secrets),
        )
        try:
            result = _http_json(
                "POST",
                self._jobs_url(username),
                token=token,
                payload=payload,
                timeout_s=self._config.request_timeout_s,
            )
        except RemoteHTTPError as e:
            if e.status is None or e.status >= 500:
                raise BackendUnavailableError(f"Remote jobs API unavailable: {e}") from e
            raise

        api_job_id = result.get("id") or result.get("jobId") or result.get("_id")
        if not api_job_id:
            raise BackendError("Remote jobs API did not return a job id")

        return RemoteHandle(
            job_id=job.job_id,
            environment=dict(context.environment),
            secrets=dict(context.secrets),
            api_job_id=str(api_job_id),
            token=token,
            username=username,
        )

    def _fetch_output(self, handle: RemoteHandle) -> str:
        url = f"{self._jobs_url(handle.username)}/{handle.api_job_id}/logs"
        try:
            raw = _http_request("GET", url, token=handle.token, timeout_s=self._config.request_timeout_s)
        except RemoteHTTPError as e:
            logger.warning("Could not fetch output for remote job %s: %s", handle.api_job_id, e)
            return "Job completed but output not available"
        return parse_sse_log_lines(raw)

    def poll(self, handle: ExecutionHandle) -> PollResult:
        assert isinstance(handle, RemoteHandle)
        handle.attempts += 1
        if handle.attempts > self._config.max_poll_attempts:
            self.cancel(handle)
            return PollResult(
                done=True,
                outcome=ExecutionOutcome(
                    success=False,
                    error="Job polling timeout - job did not complete within expected time",
                ),
            )

        status_url = f"{self._jobs_url(handle.username)}/{handle.api_job_id}"
        try:
            status = _http_json("GET", status_url, token=handle.token, timeout_s=self._config.request_timeout_s)
        except RemoteHTTPError as e:
            handle.consecutive_errors += 1
            logger.warning(
                "Status check %d/%d failed for remote job %s: %s",
                handle.consecutive_errors,
                self._config.max_poll_errors,
                handle.api_job_id,
                e,
            )
            if handle.consecutive_errors > self._config.max_poll_errors:
                raise BackendError(f"Status check failed {handle.consecutive_errors} times in a row: {e}") from e
            return PollResult()

        handle.consecutive_errors = 0
        stage = job_stage(status)
        if stage in COMPLETED_STAGES:
            output = self._fetch_output(handle)
            return PollResult(
                output=output,
                done=True,
                outcome=ExecutionOutcome(success=True, diff=diff_from_output(output, handle.job_id)),
            )
        if stage in FAILED_STAGES:
            output = self._fetch_output(handle)
            return PollResult(
                output=output,
                done=True,
                outcome=ExecutionOutcome(success=False, error=f"Remote job ended with status: {stage}"),
            )
        return PollResult()

    def cancel(self, handle: ExecutionHandle) -> None:
        assert isinstance(handle, RemoteHandle)
        if not handle.api_job_id:
            return
        url = f"{self._jobs_url(handle.username)}/{handle.api_job_id}/cancel"
        try:
            _http_request("POST", url, token=handle.token, payload={}, timeout_s=self._config.request_timeout_s)
        except RemoteHTTPError as e:
            logger.warning("Best-effort cancel failed for remote job %s: %s", handle.api_job_id, e)
