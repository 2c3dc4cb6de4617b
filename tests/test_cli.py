from __future__ import annotations

import os
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from hugex.cli.run_job import main
from hugex.storage.job_store import JobStore


REPO_ROOT = Path(__file__).resolve().parents[1]


def test_cli_does_not_load_the_web_stack() -> None:
    code = "import sys, hugex.cli.run_job; print(sorted(m for m in ('fastapi', 'starlette') if m in sys.modules))"
    proc = subprocess.run(
        [sys.executable, "-c", code],
        cwd=str(REPO_ROOT),
        capture_output=True,
        text=True,
        check=True,
    )
    assert proc.stdout.strip() == "[]"


def test_cli_rejects_non_github_repo_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HUGEX_CONFIG_PATH", raising=False)
    with pytest.raises(SystemExit, match="GitHub repository URL"):
        main(["--title", "t", "--repo-url", "https://gitlab.com/acme/repo"])


def test_cli_without_credentials_creates_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HUGEX_CONFIG_PATH", raising=False)
    for name in ("HF_TOKEN", "HF_USERNAME", "GITHUB_TOKEN", "GITHUB_USERNAME", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "hugex.db")
        assert main(["--title", "t", "--mode", "api", "--db-path", db_path]) == 2
        assert not os.path.exists(db_path)

        store = JobStore(db_path)
        try:
            assert store.count_jobs_by_status() == {}
        finally:
            store.close()
