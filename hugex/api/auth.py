"""Session cookie decoding and request-level auth dependencies.

The cookie is produced by the OAuth login flow (outside this service); here
we only decode it into `Credentials` and gate the job endpoints on it.
"""

from __future__ import annotations

import base64
import json
from typing import Any
from urllib.parse import unquote

from fastapi import Request

from hugex.api.errors import APIError
from hugex.runtime.credentials import Credentials, effective_username, has_valid_credentials
from hugex.storage.job_store import JobRecord


COOKIE_NAME = "hugex_auth"


def _b64_json(value: Any) -> dict[str, Any]:
    s = str(value).strip().rstrip("=")
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    raw = base64.b64decode((s + pad).encode("ascii")).decode("utf-8")
    obj = json.loads(raw)
    return obj if isinstance(obj, dict) else {}


def _b64_encode_json(obj: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(obj).encode("utf-8")).decode("ascii")


def parse_cookies(cookie_header: str) -> dict[str, str]:
    cookies: dict[str, str] = {}
    for part in cookie_header.split(";"):
        name, sep, value = part.partition("=")
        if sep and name.strip() and value.strip():
            cookies[name.strip()] = value.strip()
    return cookies


def extract_credentials_from_cookie(cookie_header: str | None) -> Credentials:
    """Decode the auth cookie; malformed or missing cookies yield empty credentials."""
    if not cookie_header:
        return Credentials()

    auth_cookie = parse_cookies(cookie_header).get(COOKIE_NAME)
    if not auth_cookie:
        return Credentials()

    try:
        data = _b64_json(unquote(auth_cookie))
    except Exception:
        return Credentials()

    hf_token = gh_token = openai_key = None
    if data.get("enc"):
        try:
            enc = _b64_json(data["enc"])
            hf_token = enc.get("hf") or None
            gh_token = enc.get("gh") or None
            openai_key = enc.get("openai") or None
        except Exception:
            pass

    hf_username = gh_username = None
    if data.get("hfUserInfo"):
        try:
            hf_username = _b64_json(data["hfUserInfo"]).get("username") or None
        except Exception:
            pass
    if data.get("githubUserInfo"):
        try:
            gh_username = _b64_json(data["githubUserInfo"]).get("username") or None
        except Exception:
            pass

    return Credentials(
        huggingface_token=hf_token,
        github_token=gh_token,
        openai_api_key=openai_key,
        hf_username=hf_username,
        github_username=gh_username,
    )


def encode_auth_cookie(
    *,
    hf_token: str | None = None,
    gh_token: str | None = None,
    openai_key: str | None = None,
    hf_username: str | None = None,
    github_username: str | None = None,
) -> str:
    """Inverse of `extract_credentials_from_cookie` (used by tests and local tooling)."""
    data: dict[str, Any] = {"enc": _b64_encode_json({"hf": hf_token, "gh": gh_token, "openai": openai_key})}
    if hf_username:
        data["hfUserInfo"] = _b64_encode_json({"username": hf_username})
    if github_username:
        data["githubUserInfo"] = _b64_encode_json({"username": github_username})
    return _b64_encode_json(data)


def _unauthorized() -> APIError:
    return APIError(
        status_code=401,
        code="UNAUTHORIZED",
        message="Authentication required - please provide API credentials through the UI",
    )


def require_credentials(request: Request) -> Credentials:
    """FastAPI dependency: credentials from the session cookie, or 401."""
    credentials = extract_credentials_from_cookie(request.headers.get("cookie"))
    mode = request.app.state.config.execution.mode
    if not has_valid_credentials(credentials, mode):
        raise _unauthorized()
    return credentials


def require_api_key(request: Request) -> Credentials:
    """FastAPI dependency: credentials from `Authorization: Bearer <hf token>`, or 401."""
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise APIError(
            status_code=401,
            code="UNAUTHORIZED",
            message="API key required in Authorization header (Bearer token)",
        )
    if not token.startswith("hf_") or len(token) < 10:
        raise APIError(
            status_code=401,
            code="UNAUTHORIZED",
            message="Invalid API key format. Expected a valid Hugging Face token.",
        )
    return Credentials(huggingface_token=token)


def ensure_job_access(job: JobRecord, credentials: Credentials) -> None:
    # Jobs without an author are visible to any authenticated principal.
    if job.author and job.author != effective_username(credentials):
        raise APIError(status_code=403, code="FORBIDDEN", message="You do not have access to this job")
