"""Incremental log delivery for one observer.

The stream polls the store on a fixed interval and forwards only the log text
appended since its previous read. The cursor lives on the generator, so every
connection tracks its own position.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from hugex.storage.job_store import JobRecord, JobStore


logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class LogStreamer:
    def __init__(self, db_path: str | Path | None = None, *, interval_s: float = 2.0) -> None:
        self._db_path = db_path
        self._interval_s = max(0.0, float(interval_s))

    def _read(self, store: JobStore, job_id: str) -> JobRecord | None:
        # One row read: status and logs come from the same snapshot.
        return store.get_job(job_id)

    async def events(
        self, job_id: str, *, is_disconnected: DisconnectCheck | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        yield {"type": "connected", "job_id": job_id}

        store = await asyncio.to_thread(JobStore, self._db_path)
        last_log_length = 0
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    logger.debug("Log stream observer for job %s disconnected", job_id)
                    return

                try:
                    job = await asyncio.to_thread(self._read, store, job_id)
                except Exception:
                    logger.exception("Error reading job %s for log stream", job_id)
                    yield {"type": "error", "message": "Failed to fetch logs"}
                    await asyncio.sleep(self._interval_s)
                    continue

                if job is None:
                    yield {"type": "error", "message": "Job not found"}
                    return

                logs = job.logs
                if len(logs) > last_log_length:
                    yield {"type": "logs", "data": logs[last_log_length:], "ts": time.time()}
                    last_log_length = len(logs)

                yield {"type": "status", "status": job.status, "ts": time.time()}

                if job.terminal:
                    yield {"type": "finished", "status": job.status, "ts": time.time()}
                    return

                await asyncio.sleep(self._interval_s)
        finally:
            store.close()

    async def stream(self, job_id: str, *, is_disconnected: DisconnectCheck | None = None) -> AsyncIterator[str]:
        """Same as `events`, already framed as `data: <json>` SSE chunks."""
        async for event in self.events(job_id, is_disconnected=is_disconnected):
            yield format_sse(event)
