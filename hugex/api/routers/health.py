from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from hugex.api.dependencies import get_job_processor, get_store
from hugex.runtime.processor import JobProcessor
from hugex.storage.job_store import SCHEMA_VERSION, JobStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/health")
def health(request: Request) -> JSONResponse:
    report = request.app.state.health_monitor.check()
    return JSONResponse(status_code=200 if report.healthy else 503, content=report.to_dict())


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "hugex",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
        },
        "ts": time.time(),
    }


@router.get("/system/processor")
def system_processor(
    request: Request,
    store: JobStore = Depends(get_store),
    processor: JobProcessor | None = Depends(get_job_processor),
) -> dict[str, Any]:
    snapshot: dict[str, Any] = {"enabled": processor is not None}
    if processor is not None:
        snapshot.update(processor.status_snapshot())
    return {
        "ts": time.time(),
        "processor": snapshot,
        "jobs_by_status": store.count_jobs_by_status(),
        "startup": {
            "reconciled_jobs": getattr(request.app.state, "reconciled_jobs", 0),
            "removed_containers": getattr(request.app.state, "removed_containers", 0),
        },
    }
