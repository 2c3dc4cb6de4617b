from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Credentials:
    """Principal context for one request, trusted as given by the login layer."""

    huggingface_token: str | None = None
    github_token: str | None = None
    openai_api_key: str | None = None
    hf_username: str | None = None
    github_username: str | None = None


def has_valid_credentials(credentials: Credentials, execution_mode: str) -> bool:
    # Container jobs only need an identity; remote jobs need a HF token to submit with.
    if execution_mode == "docker":
        return bool(credentials.huggingface_token or credentials.github_token)
    return bool(credentials.huggingface_token)


def effective_username(credentials: Credentials) -> str | None:
    return credentials.hf_username or credentials.github_username
