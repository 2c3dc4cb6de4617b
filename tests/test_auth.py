from __future__ import annotations

from urllib.parse import quote

import pytest

from hugex.api.auth import COOKIE_NAME, encode_auth_cookie, ensure_job_access, extract_credentials_from_cookie
from hugex.api.errors import APIError
from hugex.runtime.credentials import Credentials, effective_username, has_valid_credentials
from hugex.storage.job_store import JobRecord


def _job(author: str | None) -> JobRecord:
    return JobRecord(
        job_id="j", title="t", description="", status="pending", created_at=1.0, updated_at=1.0, author=author
    )


def test_cookie_round_trip_with_other_cookies_and_url_encoding() -> None:
    value = encode_auth_cookie(
        hf_token="hf_abc1234567",
        gh_token="ghp_x",
        openai_key="sk-1",
        hf_username="alice",
        github_username="alice-gh",
    )
    header = f"theme=dark; {COOKIE_NAME}={quote(value)}; other=1"
    creds = extract_credentials_from_cookie(header)
    assert creds == Credentials(
        huggingface_token="hf_abc1234567",
        github_token="ghp_x",
        openai_api_key="sk-1",
        hf_username="alice",
        github_username="alice-gh",
    )
    assert effective_username(creds) == "alice"


@pytest.mark.parametrize("header", [None, "", "theme=dark", f"{COOKIE_NAME}=%%%", f"{COOKIE_NAME}=bm90IGpzb24="])
def test_malformed_or_missing_cookie_yields_empty_credentials(header: str | None) -> None:
    assert extract_credentials_from_cookie(header) == Credentials()


def test_credential_requirements_depend_on_mode() -> None:
    github_only = Credentials(github_token="ghp_x", github_username="gh-user")
    hf = Credentials(huggingface_token="hf_abc1234567")
    assert has_valid_credentials(github_only, "docker") is True
    assert has_valid_credentials(github_only, "api") is False
    assert has_valid_credentials(hf, "api") is True
    assert has_valid_credentials(Credentials(), "docker") is False
    assert effective_username(github_only) == "gh-user"


def test_job_access_checks_author() -> None:
    alice = Credentials(huggingface_token="hf_abc1234567", hf_username="alice")
    ensure_job_access(_job("alice"), alice)
    ensure_job_access(_job(None), alice)
    with pytest.raises(APIError) as exc:
        ensure_job_access(_job("bob"), alice)
    assert exc.value.status_code == 403
    assert exc.value.code == "FORBIDDEN"
