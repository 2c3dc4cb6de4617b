from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from hugex.api.auth import ensure_job_access, require_api_key, require_credentials
from hugex.api.dependencies import get_branch_pusher, get_config, get_job_processor, get_store
from hugex.api.errors import APIError, not_found
from hugex.config.load_config import AppConfig
from hugex.runtime.branch_push import BranchPusher, GitPushError
from hugex.runtime.credentials import Credentials, effective_username
from hugex.runtime.executors.remote import fetch_username
from hugex.runtime.log_stream import LogStreamer
from hugex.runtime.processor import JobProcessor
from hugex.runtime.repository import is_github_repo_url, is_valid_branch_name
from hugex.storage.job_store import JOB_STATUSES, JobConflictError, JobRecord, JobStore


logger = logging.getLogger(__name__)

router = APIRouter()


class RepositoryRef(BaseModel):
    url: str
    branch: str | None = None


class CreateJobRequest(BaseModel):
    title: str = ""
    description: str = ""
    branch: str | None = None
    author: str | None = None
    repository: RepositoryRef | None = None


class CreateJobWithKeyRequest(CreateJobRequest):
    environment: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)


class CreateBranchRequest(BaseModel):
    branch: str
    base_branch: str | None = None
    title: str | None = None
    description: str | None = None


def _validation_error(field: str, message: str) -> APIError:
    return APIError(
        status_code=400,
        code="VALIDATION_ERROR",
        message=message,
        details={"errors": [{"field": field, "message": message}]},
    )


def _validate_create(body: CreateJobRequest, cfg: AppConfig) -> None:
    title_max = cfg.limits.title_max_chars
    if not body.title or len(body.title) > title_max:
        raise _validation_error("title", f"Title is required and must be between 1-{title_max} characters")
    if len(body.description or "") > cfg.limits.description_max_chars:
        raise _validation_error(
            "description", f"Description must be less than {cfg.limits.description_max_chars} characters"
        )
    if body.repository is not None and body.repository.url and not is_github_repo_url(body.repository.url):
        raise _validation_error(
            "repository.url",
            "Repository URL must be a valid GitHub repository URL (e.g., https://github.com/username/repo)",
        )


def _create_and_submit(
    store: JobStore,
    processor: JobProcessor | None,
    *,
    body: CreateJobRequest,
    author: str | None,
    credentials: Credentials,
    environment: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> JobRecord:
    repository = body.repository.model_dump(exclude_none=True) if body.repository is not None else None
    try:
        job = store.create_job(
            title=body.title,
            description=body.description or "",
            author=author,
            branch=body.branch or None,
            repository=repository,
            environment=environment,
            secrets=secrets,
        )
    except JobConflictError as e:
        raise APIError(status_code=409, code="CONFLICT", message=str(e)) from e

    if processor is None:
        logger.warning("Job processor disabled; job %s stays pending", job.job_id)
    else:
        processor.submit(job.job_id, credentials)
    return job


def _load_job(store: JobStore, job_id: str, credentials: Credentials) -> JobRecord:
    job = store.get_job(job_id)
    if job is None:
        raise not_found()
    ensure_job_access(job, credentials)
    return job


@router.post("/jobs", status_code=201)
def create_job(
    body: CreateJobRequest,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
    processor: JobProcessor | None = Depends(get_job_processor),
) -> dict[str, Any]:
    _validate_create(body, cfg)
    job = _create_and_submit(
        store,
        processor,
        body=body,
        author=body.author or effective_username(credentials),
        credentials=credentials,
    )
    return job.to_dict()


@router.post("/jobs/create-with-key", status_code=201)
def create_job_with_key(
    body: CreateJobWithKeyRequest,
    credentials: Credentials = Depends(require_api_key),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
    processor: JobProcessor | None = Depends(get_job_processor),
) -> dict[str, Any]:
    _validate_create(body, cfg)
    username = fetch_username(credentials.huggingface_token or "", config=cfg.remote_api)
    if username:
        credentials = Credentials(huggingface_token=credentials.huggingface_token, hf_username=username)
    job = _create_and_submit(
        store,
        processor,
        body=body,
        author=username or body.author or "api-user",
        credentials=credentials,
        environment=body.environment,
        secrets=body.secrets,
    )
    return job.to_dict()


@router.get("/jobs")
def list_jobs(
    page: int = Query(default=1),
    limit: int = Query(default=20),
    status: str | None = Query(default=None),
    search: str | None = Query(default=None),
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
) -> dict[str, Any]:
    if status == "all" or not status:
        status = None
    elif status not in JOB_STATUSES:
        raise _validation_error("status", f"status must be one of: all, {', '.join(JOB_STATUSES)}")

    # Listing is always scoped to the caller's own jobs.
    return store.list_jobs_page(
        page=page,
        limit=limit,
        status=status,
        search=(search or "").strip() or None,
        author=effective_username(credentials) or "",
        limit_max=cfg.limits.list_limit_max,
    )


@router.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    return _load_job(store, job_id, credentials).to_dict()


@router.get("/jobs/{job_id}/status")
def get_job_status(
    job_id: str,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    job = _load_job(store, job_id, credentials)
    return {
        "id": job.job_id,
        "status": job.status,
        "updated_at": job.updated_at,
        "changes": job.changes,
        "api_job_id": job.api_job_id,
    }


@router.get("/jobs/{job_id}/logs")
def get_job_logs(
    job_id: str,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    job = _load_job(store, job_id, credentials)
    return {"id": job.job_id, "status": job.status, "logs": job.logs}


@router.get("/jobs/{job_id}/environment")
def get_job_environment(
    job_id: str,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    job = _load_job(store, job_id, credentials)
    data = job.to_dict()
    return {"id": job.job_id, "environment": data["environment"], "secrets": data["secrets"]}


@router.get("/jobs/{job_id}/diff")
def get_job_diff(
    job_id: str,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    job = _load_job(store, job_id, credentials)
    if job.status != "completed":
        raise APIError(
            status_code=400,
            code="JOB_NOT_COMPLETED",
            message="Job must be completed to view diff",
            details={"status": job.status},
        )
    diff = store.get_job_diff(job_id)
    if diff is None:
        raise not_found("No diff available for this job")
    return diff


@router.get("/jobs/{job_id}/logs/stream")
def stream_job_logs(
    job_id: str,
    request: Request,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
) -> StreamingResponse:
    _load_job(store, job_id, credentials)

    streamer = LogStreamer(request.app.state.db_path, interval_s=cfg.stream.interval_s)
    return StreamingResponse(
        streamer.stream(job_id, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/jobs/{job_id}/branch", status_code=201)
def create_branch_and_push(
    job_id: str,
    body: CreateBranchRequest,
    credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
    pusher: BranchPusher = Depends(get_branch_pusher),
) -> dict[str, Any]:
    """Commit a completed job's diff to a new branch and push it."""
    job = _load_job(store, job_id, credentials)
    if not credentials.github_token:
        raise APIError(status_code=401, code="UNAUTHORIZED", message="A GitHub token is required to push branches")

    repo = job.repository or {}
    base_branch = body.base_branch or job.branch or repo.get("branch") or cfg.repository.default_branch
    for field, name in (("branch", body.branch), ("base_branch", base_branch)):
        if not is_valid_branch_name(name):
            raise _validation_error(field, f"Invalid branch name: {name!r}")

    if job.status != "completed":
        raise APIError(
            status_code=400,
            code="JOB_NOT_COMPLETED",
            message="Job must be completed to create a branch",
            details={"status": job.status},
        )
    diff = store.get_job_diff(job_id)
    if diff is None:
        raise not_found("No diff available for this job")
    files = diff.get("files") or []
    if not files:
        raise APIError(status_code=400, code="NO_CHANGES", message="No changes to commit")

    try:
        result = pusher.push(
            repository_url=str(repo.get("url") or cfg.repository.default_url),
            branch=body.branch,
            base_branch=str(base_branch),
            title=body.title or job.title,
            description=job.description if body.description is None else body.description,
            files=files,
            github_token=credentials.github_token,
        )
    except GitPushError as e:
        logger.warning("Branch push for job %s failed: %s", job_id, e)
        raise APIError(status_code=502, code="GIT_OPERATION_FAILED", message=str(e)) from e
    return {"job_id": job.job_id, **result.to_dict()}
