from __future__ import annotations

import logging
import threading
import time
from typing import Any

from hugex.config.load_config import AppConfig
from hugex.runtime.credentials import Credentials
from hugex.runtime.docker_settings import load_docker_settings
from hugex.runtime.executors import (
    BackendError,
    BackendUnavailableError,
    ExecutionBackend,
    ExecutionContext,
    ExecutionHandle,
    PollResult,
    build_execution_context,
    create_backend,
)
from hugex.storage.job_store import JobStore, default_db_path


logger = logging.getLogger(__name__)


class JobProcessor:
    """Drives jobs through pending -> running -> completed|failed.

    Each job runs on its own daemon thread with its own store connection.
    At most one run per job id is active: an in-process registry rejects
    re-entry, and the store-level pending -> running claim rejects a second
    run from any other process sharing the database.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        backend: ExecutionBackend | None = None,
        db_path: str | None = None,
    ) -> None:
        self._config = config
        self._mode = config.execution.mode
        self._backend = backend or create_backend(config)
        self._db_path = db_path or default_db_path()
        self._lock = threading.Lock()
        self._active: dict[str, threading.Thread | None] = {}
        self._stop = threading.Event()

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    def get_execution_mode(self) -> str:
        return self._mode

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "execution_mode": self._mode,
            "backend": self._backend.name,
            "poll_interval_s": float(self._backend.poll_interval_s),
            "active_jobs": self.active_job_ids(),
            "stopping": self._stop.is_set(),
            "db_path": self._db_path,
        }

    def _reserve(self, job_id: str) -> bool:
        with self._lock:
            if self._stop.is_set() or job_id in self._active:
                return False
            self._active[job_id] = None
            return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._active.pop(job_id, None)

    def submit(self, job_id: str, credentials: Credentials) -> bool:
        """Fire-and-forget: process the job on a background thread.

        Returns False if a run for this job is already active (or the processor
        is shutting down); nothing is started in that case.
        """
        if not self._reserve(job_id):
            logger.info("Job %s already being processed; ignoring submit", job_id)
            return False
        thread = threading.Thread(
            target=self._run_reserved,
            args=(job_id, credentials),
            name=f"hugex-job-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._active[job_id] = thread
        thread.start()
        return True

    def process_job(self, job_id: str, credentials: Credentials) -> str | None:
        """Process a job synchronously on the calling thread.

        Returns the terminal status reached by this call, or None when the call
        was a no-op (missing job, not pending, or another run is active).
        Never raises for execution failures: they end up as `failed`.
        """
        if not self._reserve(job_id):
            logger.info("Job %s already being processed; skipping", job_id)
            return None
        with self._lock:
            self._active[job_id] = threading.current_thread()
        return self._run_reserved(job_id, credentials)

    def _run_reserved(self, job_id: str, credentials: Credentials) -> str | None:
        try:
            store = JobStore(self._db_path)
        except Exception:
            logger.exception("Could not open job store for job %s", job_id)
            self._release(job_id)
            return None
        try:
            return self._execute(store, job_id, credentials)
        except Exception as e:
            # Boundary of a detached run: convert anything unexpected into a failed job.
            logger.exception("Unhandled error while processing job %s", job_id)
            try:
                self._fail(store, job_id, f"internal error: {e}")
            except Exception:
                logger.exception("Could not record failure for job %s", job_id)
            return "failed"
        finally:
            store.close()
            self._release(job_id)

    def _execute(self, store: JobStore, job_id: str, credentials: Credentials) -> str | None:
        job = store.get_job(job_id)
        if job is None:
            logger.warning("Job %s not found; nothing to process", job_id)
            return None

        if not store.claim_job(job_id):
            logger.info("Job %s is %s, not pending; skipping", job_id, job.status)
            return None
        logger.info("Job %s running via %s", job_id, self._mode)

        context = build_execution_context(
            job,
            job_secrets=store.get_job_secrets(job_id),
            credentials=credentials,
            config=self._config,
            docker_settings=load_docker_settings(store, self._config) if self._mode == "docker" else None,
        )

        try:
            handle = self._backend.start(job, context, credentials)
        except BackendUnavailableError as e:
            self._fail(store, job_id, f"BACKEND_UNAVAILABLE: {e}")
            return "failed"
        except BackendError as e:
            self._fail(store, job_id, str(e))
            return "failed"

        # From here on the backend holds resources: every exit must cancel it.
        try:
            return self._follow(store, handle, context)
        except Exception as e:
            self._cancel_quietly(handle)
            if not isinstance(e, BackendError):
                logger.exception("Job %s crashed after backend start", job_id)
            self._fail(store, job_id, str(e))
            return "failed"

    def _follow(self, store: JobStore, handle: ExecutionHandle, context: ExecutionContext) -> str:
        job_id = handle.job_id
        store.update_job_environment(
            job_id,
            environment=context.environment,
            secret_keys=context.secrets.keys(),
            api_job_id=handle.api_job_id,
        )

        result = self._drive(store, handle)
        if result is None:
            self._cancel_quietly(handle)
            self._fail(store, job_id, "server_shutdown")
            return "failed"

        outcome = result.outcome
        if outcome is None or not outcome.success:
            reason = (outcome.error if outcome is not None else None) or "backend reported failure"
            self._fail(store, job_id, reason)
            return "failed"

        changes = None
        if outcome.diff is not None:
            store.set_job_diff(job_id, outcome.diff.to_dict())
            changes = outcome.diff.changes()
        store.update_job_status(job_id, "completed", changes=changes)
        logger.info("Job %s completed via %s (changes=%s)", job_id, self._mode, changes)
        return "completed"

    def _drive(self, store: JobStore, handle: ExecutionHandle) -> PollResult | None:
        """Poll until the backend reports done. Returns None if the processor is stopping."""
        while not self._stop.is_set():
            result = self._backend.poll(handle)
            if result.output:
                store.append_job_logs(handle.job_id, result.output)
            if result.done:
                return result
            self._stop.wait(self._backend.poll_interval_s)
        return None

    def _cancel_quietly(self, handle: ExecutionHandle) -> None:
        try:
            self._backend.cancel(handle)
        except Exception:
            logger.exception("Cancel failed for job %s", handle.job_id)

    def _fail(self, store: JobStore, job_id: str, reason: str) -> None:
        logger.error("Job %s failed: %s", job_id, reason)
        store.append_job_logs(job_id, f"\n[hugex] Job failed: {reason}\n")
        store.update_job_status(job_id, "failed")

    def shutdown(self, *, timeout_s: float = 10.0) -> None:
        """Stop accepting work and wind down active runs (their backends are cancelled)."""
        self._stop.set()
        deadline = time.time() + timeout_s
        with self._lock:
            threads = [t for t in self._active.values() if t is not None and t is not threading.current_thread()]
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.time()))
