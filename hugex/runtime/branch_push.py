"""Publish a completed job's diff as a new branch on its repository.

The work happens in a throwaway shallow clone: check out the base branch,
create the new branch, apply the stored per-file patches with `git apply`,
commit and push. The clone is removed on every path.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Any

from hugex.config.load_config import GitConfig
from hugex.runtime.repository import authenticated_repo_url


logger = logging.getLogger(__name__)

CLONE_PREFIX = "hugex-git-"
MARKER_FILE = ".hugex-branch-marker"


class GitPushError(RuntimeError):
    pass


@dataclass(frozen=True)
class BranchPushResult:
    branch: str
    base_branch: str
    commit_hash: str
    files: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "base_branch": self.base_branch,
            "commit_hash": self.commit_hash,
            "files": self.files,
        }


def build_patch(files: list[dict[str, Any]]) -> str:
    """Concatenate stored per-file patches into one `git apply` input."""
    chunks: list[str] = []
    for f in files:
        patch = str(f.get("patch") or "").rstrip("\n")
        if patch:
            chunks.append(patch)
    if not chunks:
        return ""
    return "\n".join(chunks) + "\n"


class BranchPusher:
    def __init__(self, config: GitConfig) -> None:
        self._config = config

    def _git(self, args: list[str], *, cwd: str) -> subprocess.CompletedProcess[str]:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        return subprocess.run(
            [self._config.git_bin, *args],
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=self._config.timeout_s,
            check=False,
        )

    def _run(self, args: list[str], *, cwd: str, secret: str | None) -> str:
        try:
            proc = self._git(args, cwd=cwd)
        except FileNotFoundError as e:
            raise GitPushError(f"git not found: {self._config.git_bin}") from e
        except subprocess.TimeoutExpired as e:
            raise GitPushError(f"git {args[0]} timed out after {int(self._config.timeout_s)}s") from e
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            if secret:
                detail = detail.replace(secret, "***")
            raise GitPushError(f"git {args[0]} failed: {detail or f'exit code {proc.returncode}'}")
        return proc.stdout or ""

    def push(
        self,
        *,
        repository_url: str,
        branch: str,
        base_branch: str,
        title: str,
        description: str,
        files: list[dict[str, Any]],
        github_token: str | None = None,
    ) -> BranchPushResult:
        patch = build_patch(files)
        if not patch:
            raise GitPushError("No changes to commit")

        tmp = tempfile.mkdtemp(prefix=CLONE_PREFIX)
        repo = os.path.join(tmp, "repo")
        logger.info("Pushing %d file change(s) to %s as branch %s", len(files), repository_url, branch)
        try:
            clone_url = authenticated_repo_url(repository_url, github_token)
            self._run(["clone", "--depth=1", "--branch", base_branch, clone_url, repo], cwd=tmp, secret=github_token)
            self._run(["checkout", "-b", branch], cwd=repo, secret=github_token)

            patch_path = os.path.join(tmp, "changes.patch")
            with open(patch_path, "w", encoding="utf-8") as fh:
                fh.write(patch)
            self._run(["apply", "--recount", "--whitespace=nowarn", patch_path], cwd=repo, secret=github_token)

            self._run(["add", "-A"], cwd=repo, secret=github_token)
            if not self._run(["status", "--porcelain"], cwd=repo, secret=github_token).strip():
                with open(os.path.join(repo, MARKER_FILE), "w", encoding="utf-8") as fh:
                    fh.write(
                        f"Branch created by hugex\nTimestamp: {time.time():.0f}\n"
                        f"Branch: {branch}\nRepository: {repository_url}\n"
                    )
                self._run(["add", MARKER_FILE], cwd=repo, secret=github_token)

            self._run(["config", "user.name", self._config.author_name], cwd=repo, secret=github_token)
            self._run(["config", "user.email", self._config.author_email], cwd=repo, secret=github_token)
            message = title if not description else f"{title}\n\n{description}"
            self._run(["commit", "-m", message], cwd=repo, secret=github_token)
            commit_hash = self._run(["rev-parse", "HEAD"], cwd=repo, secret=github_token).strip()
            self._run(["push", "origin", branch], cwd=repo, secret=github_token)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

        logger.info("Pushed branch %s (%s)", branch, commit_hash)
        return BranchPushResult(branch=branch, base_branch=base_branch, commit_hash=commit_hash, files=len(files))
