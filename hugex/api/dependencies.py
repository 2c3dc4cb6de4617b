from __future__ import annotations

from typing import Iterator

from fastapi import Request

from hugex.config.load_config import AppConfig
from hugex.runtime.branch_push import BranchPusher
from hugex.runtime.processor import JobProcessor
from hugex.storage.job_store import JobStore


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_store(request: Request) -> Iterator[JobStore]:
    """FastAPI dependency: one store connection per request, closed afterwards."""
    store = JobStore(request.app.state.db_path)
    try:
        yield store
    finally:
        store.close()


def get_job_processor(request: Request) -> JobProcessor | None:
    # None when the server was started with HUGEX_ENABLE_PROCESSOR=0: jobs are
    # recorded but stay pending.
    return getattr(request.app.state, "job_processor", None)


def get_branch_pusher(request: Request) -> BranchPusher:
    return request.app.state.branch_pusher

