from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from hugex.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from hugex.config.load_config import AppConfig, load_app_config
from hugex.runtime.branch_push import BranchPusher
from hugex.runtime.executors import ExecutionBackend, create_backend
from hugex.runtime.health import HealthMonitor
from hugex.runtime.processor import JobProcessor
from hugex.storage.job_store import JobStore, default_db_path
from hugex.utils.logging_setup import configure_logging

from .routers.config import router as config_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("HUGEX_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(
    config: AppConfig | None = None,
    *,
    backend: ExecutionBackend | None = None,
    db_path: str | None = None,
    branch_pusher: BranchPusher | None = None,
) -> FastAPI:
    configure_logging()
    cfg = config or load_app_config()
    backend = backend or create_backend(cfg)
    db_path = db_path or default_db_path()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Jobs left pending/running by a previous process lost their credentials.
        app.state.reconciled_jobs = 0
        app.state.removed_containers = 0
        if _env_bool("HUGEX_RECONCILE_ON_STARTUP", True):
            store = JobStore(db_path)
            try:
                app.state.reconciled_jobs = store.reconcile_unfinished_jobs(reason="server_restarted")
            finally:
                store.close()
            app.state.removed_containers = backend.cleanup_orphans()
            if app.state.reconciled_jobs:
                logger.warning("Marked %d unfinished job(s) failed on startup", app.state.reconciled_jobs)

        if _env_bool("HUGEX_ENABLE_PROCESSOR", True):
            app.state.job_processor = JobProcessor(config=cfg, backend=backend, db_path=db_path)
            logger.info("Job processor started (execution mode: %s)", cfg.execution.mode)
        try:
            yield
        finally:
            processor = getattr(app.state, "job_processor", None)
            if processor is not None:
                processor.shutdown()
                app.state.job_processor = None

    app = FastAPI(title="hugex API", version="0.1.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.db_path = db_path
    app.state.backend = backend
    app.state.health_monitor = HealthMonitor(cfg.execution.mode, backend)
    app.state.job_processor = None
    app.state.branch_pusher = branch_pusher or BranchPusher(cfg.git)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(config_router, prefix="/api/v1", tags=["config"])

    return app


app = create_app()
