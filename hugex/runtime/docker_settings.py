"""Runtime-adjustable container settings (image, environment, secrets).

Configured `[docker]` values are the baseline; an operator can replace the
image and add environment/secrets through the API. The override is kept in the
job store so every process sharing the database sees it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from hugex.config.load_config import AppConfig
from hugex.storage.job_store import JobStore, mask_secrets


logger = logging.getLogger(__name__)

SETTINGS_KEY = "docker"

# registry/namespace/image:tag
DOCKER_IMAGE = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*(?:/[a-zA-Z0-9][a-zA-Z0-9_.-]*)*(?::[a-zA-Z0-9][a-zA-Z0-9_.-]*)?$"
)


def is_valid_image(image: str) -> bool:
    return bool(DOCKER_IMAGE.match(image or ""))


@dataclass(frozen=True)
class DockerSettings:
    image: str
    environment: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict, repr=False)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "environment": dict(self.environment),
            "secrets": mask_secrets(self.secrets),
        }


def load_docker_settings(store: JobStore, config: AppConfig) -> DockerSettings:
    raw = store.get_setting(SETTINGS_KEY)
    if raw is None:
        return DockerSettings(image=config.docker.image)
    env = raw.get("environment")
    secrets = raw.get("secrets")
    return DockerSettings(
        image=str(raw.get("image") or config.docker.image),
        environment={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
        secrets={str(k): str(v) for k, v in secrets.items()} if isinstance(secrets, dict) else {},
    )


def save_docker_settings(store: JobStore, settings: DockerSettings) -> DockerSettings:
    if not is_valid_image(settings.image):
        raise ValueError(f"Invalid docker image reference: {settings.image!r}")
    store.set_setting(
        SETTINGS_KEY,
        {"image": settings.image, "environment": dict(settings.environment), "secrets": dict(settings.secrets)},
    )
    logger.info(
        "Docker settings updated: image=%s, %d environment variable(s), %d secret(s)",
        settings.image,
        len(settings.environment),
        len(settings.secrets),
    )
    return settings
