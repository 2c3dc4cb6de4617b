from __future__ import annotations

import re
from urllib.parse import quote, urlsplit, urlunsplit


GITHUB_REPO_URL = re.compile(r"^https://github\.com/[\w\-\.]+/[\w\-\.]+(?:\.git)?/?$")

# Conservative subset of git-check-ref-format.
BRANCH_NAME = re.compile(r"^(?!.*\.\.)(?!.*//)(?!/)(?!.*/$)(?!.*\.lock$)[A-Za-z0-9._/-]{1,200}$")


def is_github_repo_url(url: str) -> bool:
    return bool(GITHUB_REPO_URL.match(url or ""))


def is_valid_branch_name(name: str) -> bool:
    return bool(BRANCH_NAME.match(name or "")) and not name.startswith("-")


def authenticated_repo_url(url: str, github_token: str | None) -> str:
    """Embed a GitHub token into an https clone URL; other hosts are returned unchanged."""
    if not github_token:
        return url
    parts = urlsplit(url)
    if parts.scheme != "https" or parts.hostname != "github.com":
        return url
    netloc = f"x-access-token:{quote(github_token, safe='')}@{parts.hostname}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
