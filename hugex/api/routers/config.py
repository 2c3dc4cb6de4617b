from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from hugex.api.auth import require_credentials
from hugex.api.dependencies import get_config, get_store
from hugex.api.errors import APIError
from hugex.config.load_config import EXECUTION_MODES, AppConfig
from hugex.runtime.credentials import Credentials
from hugex.runtime.docker_settings import DockerSettings, is_valid_image, load_docker_settings, save_docker_settings
from hugex.storage.job_store import JobStore


router = APIRouter()


class DockerSettingsRequest(BaseModel):
    image: str
    environment: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)


@router.get("/config/execution-mode")
def execution_mode(cfg: AppConfig = Depends(get_config)) -> dict[str, Any]:
    return {"mode": cfg.execution.mode, "available": list(EXECUTION_MODES)}


@router.get("/config/docker")
def get_docker_settings(
    _credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
    cfg: AppConfig = Depends(get_config),
) -> dict[str, Any]:
    return load_docker_settings(store, cfg).to_public_dict()


@router.put("/config/docker")
def put_docker_settings(
    body: DockerSettingsRequest,
    _credentials: Credentials = Depends(require_credentials),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    image = body.image.strip()
    if not image:
        raise APIError(status_code=400, code="INVALID_IMAGE", message="Docker image is required and must be a string")
    if not is_valid_image(image):
        raise APIError(
            status_code=400,
            code="INVALID_IMAGE_FORMAT",
            message="Docker image must be in valid format (e.g., registry/image:tag)",
        )

    settings = save_docker_settings(
        store,
        DockerSettings(image=image, environment=dict(body.environment), secrets=dict(body.secrets)),
    )
    return {**settings.to_public_dict(), "message": "Docker configuration updated successfully"}
