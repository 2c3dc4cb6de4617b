from __future__ import annotations

import json
import os
import tempfile
import time
from typing import TYPE_CHECKING, Any

import pytest
from fastapi.testclient import TestClient

from hugex.api.app import create_app
from hugex.api.auth import COOKIE_NAME, encode_auth_cookie
from hugex.runtime.branch_push import BranchPushResult, GitPushError
from hugex.runtime.diff import DIFF_DELIMITER, diff_from_output
from hugex.runtime.executors.base import ExecutionOutcome, HealthStatus
from hugex.storage.job_store import JobStore

if TYPE_CHECKING:
    from conftest import ScriptedBackend


ALICE = {"Cookie": f"{COOKIE_NAME}={encode_auth_cookie(hf_token='hf_alice_token', hf_username='alice')}"}
BOB = {"Cookie": f"{COOKIE_NAME}={encode_auth_cookie(hf_token='hf_bob_token', hf_username='bob')}"}
ALICE_GITHUB_COOKIE = encode_auth_cookie(hf_token="hf_alice_token", hf_username="alice", gh_token="ghp_alice")
ALICE_WITH_GITHUB = {"Cookie": f"{COOKIE_NAME}={ALICE_GITHUB_COOKIE}"}

PATCH = "\n".join(
    [
        DIFF_DELIMITER,
        "diff --git a/README.md b/README.md",
        "--- a/README.md",
        "+++ b/README.md",
        "@@ -1 +1,2 @@",
        " # repo",
        "+fixed",
        DIFF_DELIMITER,
    ]
)


def _env(monkeypatch: pytest.MonkeyPatch, td: str, *, processor: bool, mode: str = "api") -> str:
    db_path = os.path.join(td, "hugex.db")
    monkeypatch.delenv("HUGEX_CONFIG_PATH", raising=False)
    monkeypatch.setenv("HUGEX_SQLITE_PATH", db_path)
    monkeypatch.setenv("HUGEX_EXECUTION_MODE", mode)
    monkeypatch.setenv("HUGEX_ENABLE_PROCESSOR", "1" if processor else "0")
    monkeypatch.delenv("HUGEX_RECONCILE_ON_STARTUP", raising=False)
    return db_path


def _wait_for_status(client: TestClient, job_id: str, status: str, timeout_s: float = 5.0) -> dict[str, Any]:
    deadline = time.time() + timeout_s
    while True:
        body = client.get(f"/api/v1/jobs/{job_id}", headers=ALICE).json()
        if body["status"] == status or time.time() > deadline:
            return body
        time.sleep(0.02)


def _sse_events(text: str) -> list[dict[str, Any]]:
    return [json.loads(frame[len("data: ") :]) for frame in text.split("\n\n") if frame.startswith("data: ")]


def test_create_job_as_authenticated_user(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            resp = client.post(
                "/api/v1/jobs",
                json={"title": "Fix bug", "repository": {"url": "https://github.com/acme/repo"}},
                headers=ALICE,
            )
            assert resp.status_code == 201
            body = resp.json()
            assert body["status"] == "pending"
            assert body["author"] == "alice"
            assert body["repository"] == {"url": "https://github.com/acme/repo"}
            assert body["changes"] is None

            override = client.post("/api/v1/jobs", json={"title": "On behalf", "author": "team-bot"}, headers=ALICE)
            assert override.status_code == 201
            assert override.json()["author"] == "team-bot"


@pytest.mark.parametrize(
    "payload",
    [
        {"title": ""},
        {},
        {"title": "x" * 201},
        {"title": "ok", "description": "d" * 1001},
        {"title": "ok", "repository": {"url": "https://gitlab.com/acme/repo"}},
        {"title": "ok", "repository": {"url": "https://github.com/acme"}},
        {"title": 123},
    ],
)
def test_create_job_validation_errors(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
    payload: dict[str, Any],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            resp = client.post("/api/v1/jobs", json=payload, headers=ALICE)
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

        store = JobStore(db_path)
        try:
            assert store.count_jobs_by_status() == {}
        finally:
            store.close()


def test_job_runs_to_completion_and_streams_logs(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=True)
        backend = scripted_backend(
            chunks=["working\n", PATCH + "\n"],
            outcome=ExecutionOutcome(success=True, diff=diff_from_output(PATCH, "x")),
        )
        app = create_app(backend=backend)
        with TestClient(app) as client:
            created = client.post(
                "/api/v1/jobs",
                json={"title": "Fix readme", "description": "add a line"},
                headers=ALICE,
            ).json()
            assert created["status"] in {"pending", "running"}

            done = _wait_for_status(client, created["id"], "completed")
            assert done["status"] == "completed"
            assert done["changes"] == {"additions": 1, "deletions": 0, "files": 1}

            status = client.get(f"/api/v1/jobs/{created['id']}/status", headers=ALICE).json()
            assert status["status"] == "completed"

            logs = client.get(f"/api/v1/jobs/{created['id']}/logs", headers=ALICE).json()
            assert logs["logs"].startswith("working\n")

            diff = client.get(f"/api/v1/jobs/{created['id']}/diff", headers=ALICE)
            assert diff.status_code == 200
            assert diff.json()["files"][0]["filename"] == "README.md"

            stream = client.get(f"/api/v1/jobs/{created['id']}/logs/stream", headers=ALICE)
            assert stream.status_code == 200
            assert stream.headers["content-type"].startswith("text/event-stream")
            events = _sse_events(stream.text)
            assert [e["type"] for e in events] == ["connected", "logs", "status", "finished"]
            assert events[1]["data"].startswith("working\n")
            assert events[2]["status"] == "completed"
            assert events[3]["status"] == "completed"

            env = client.get(f"/api/v1/jobs/{created['id']}/environment", headers=ALICE).json()
            assert env["environment"]["PROMPT"] == "add a line"
            assert env["environment"]["REPO_URL"]


def test_diff_before_completion_is_rejected(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            job_id = client.post("/api/v1/jobs", json={"title": "t"}, headers=ALICE).json()["id"]
            resp = client.get(f"/api/v1/jobs/{job_id}/diff", headers=ALICE)
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "JOB_NOT_COMPLETED"


def test_other_users_job_is_forbidden(monkeypatch: pytest.MonkeyPatch, scripted_backend: type[ScriptedBackend]) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            bob_job = client.post("/api/v1/jobs", json={"title": "bob's"}, headers=BOB).json()

            for suffix in ("", "/status", "/logs", "/environment", "/diff", "/logs/stream"):
                resp = client.get(f"/api/v1/jobs/{bob_job['id']}{suffix}", headers=ALICE)
                assert resp.status_code == 403, suffix
                assert resp.json()["error"]["code"] == "FORBIDDEN"

            assert client.get(f"/api/v1/jobs/{bob_job['id']}/environment", headers=BOB).status_code == 200
            assert client.get("/api/v1/jobs/missing", headers=ALICE).status_code == 404


def test_requests_without_credentials_are_unauthorized(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            job_id = client.post("/api/v1/jobs", json={"title": "t"}, headers=ALICE).json()["id"]

            garbage = {"Cookie": f"{COOKIE_NAME}=not-base64!!"}
            # A GitHub-only session is not enough to submit remote jobs.
            github_only = {"Cookie": f"{COOKIE_NAME}={encode_auth_cookie(gh_token='ghp_x', github_username='alice')}"}
            for headers in ({}, garbage, github_only):
                assert client.post("/api/v1/jobs", json={"title": "t"}, headers=headers).status_code == 401
                assert client.get("/api/v1/jobs", headers=headers).status_code == 401
                for suffix in ("", "/status", "/logs", "/environment", "/diff", "/logs/stream"):
                    resp = client.get(f"/api/v1/jobs/{job_id}{suffix}", headers=headers)
                    assert resp.status_code == 401, suffix
                    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


def test_list_is_scoped_to_caller(monkeypatch: pytest.MonkeyPatch, scripted_backend: type[ScriptedBackend]) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False)
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            for title in ("alpha fix", "beta", "gamma fix"):
                client.post("/api/v1/jobs", json={"title": title}, headers=ALICE)
            client.post("/api/v1/jobs", json={"title": "bob fix"}, headers=BOB)

            page = client.get("/api/v1/jobs", params={"limit": 2}, headers=ALICE).json()
            assert {j["author"] for j in page["jobs"]} == {"alice"}
            assert page["pagination"]["total"] == 3
            assert page["pagination"]["has_next"] is True

            found = client.get("/api/v1/jobs", params={"search": "fix", "status": "all"}, headers=ALICE).json()
            assert sorted(j["title"] for j in found["jobs"]) == ["alpha fix", "gamma fix"]

            none_running = client.get("/api/v1/jobs", params={"status": "running"}, headers=ALICE).json()
            assert none_running["jobs"] == []

            capped = client.get("/api/v1/jobs", params={"limit": 500}, headers=ALICE).json()
            assert capped["pagination"]["limit"] == 100

            far = client.get("/api/v1/jobs", params={"page": 10**19}, headers=ALICE)
            assert far.status_code == 200
            assert far.json()["jobs"] == []
            assert far.json()["pagination"]["total"] == 3

            bad = client.get("/api/v1/jobs", params={"status": "exploded"}, headers=ALICE)
            assert bad.status_code == 400
            assert bad.json()["error"]["code"] == "VALIDATION_ERROR"


def test_create_with_api_key(monkeypatch: pytest.MonkeyPatch, scripted_backend: type[ScriptedBackend]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False)
        monkeypatch.setattr("hugex.api.routers.jobs.fetch_username", lambda token, *, config: "carol")
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            resp = client.post(
                "/api/v1/jobs/create-with-key",
                json={"title": "Scripted", "environment": {"MODE": "fast"}, "secrets": {"DB_PASSWORD": "hunter2"}},
                headers={"Authorization": "Bearer hf_carol_token"},
            )
            assert resp.status_code == 201
            body = resp.json()
            assert body["author"] == "carol"
            assert body["environment"] == {"MODE": "fast"}
            assert body["secrets"] == {"DB_PASSWORD": "***"}
            assert "hunter2" not in resp.text

            assert client.post(
                "/api/v1/jobs/create-with-key", json={"title": "x"}, headers={"Authorization": "Bearer nope"}
            ).status_code == 401
            assert client.post("/api/v1/jobs/create-with-key", json={"title": "x"}).status_code == 401

        store = JobStore(db_path)
        try:
            assert store.get_job_secrets(body["id"]) == {"DB_PASSWORD": "hunter2"}
        finally:
            store.close()


def test_health_and_system_endpoints(monkeypatch: pytest.MonkeyPatch, scripted_backend: type[ScriptedBackend]) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=True)
        app = create_app(backend=scripted_backend(health=HealthStatus(available=False, error="down")))
        with TestClient(app) as client:
            health = client.get("/api/v1/health")
            assert health.status_code == 200
            assert health.json() == {"status": "healthy", "execution_mode": "api"}

            mode = client.get("/api/v1/config/execution-mode").json()
            assert mode == {"mode": "api", "available": ["api", "docker"]}

            system = client.get("/api/v1/system/processor").json()
            assert system["processor"]["enabled"] is True
            assert system["processor"]["execution_mode"] == "api"
            assert system["jobs_by_status"] == {}

    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td, processor=False, mode="docker")
        app = create_app(backend=scripted_backend(health=HealthStatus(available=False, error="daemon down")))
        with TestClient(app) as client:
            health = client.get("/api/v1/health")
            assert health.status_code == 503
            assert health.json()["status"] == "unhealthy"
            assert health.json()["execution_mode"] == "docker"
            assert health.json()["backend"]["error"] == "daemon down"
            assert client.get("/api/v1/system/processor").json()["processor"] == {"enabled": False}


def test_startup_fails_jobs_left_by_previous_process(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False)
        store = JobStore(db_path)
        try:
            stuck = store.create_job(title="stuck", author="alice")
            store.claim_job(stuck.job_id)
        finally:
            store.close()

        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            job = client.get(f"/api/v1/jobs/{stuck.job_id}", headers=ALICE).json()
            assert job["status"] == "failed"
            logs = client.get(f"/api/v1/jobs/{stuck.job_id}/logs", headers=ALICE).json()["logs"]
            assert "server_restarted" in logs
            assert client.get("/api/v1/system/processor").json()["startup"]["reconciled_jobs"] == 1


class FakePusher:
    def __init__(self, error: str | None = None) -> None:
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def push(self, **kwargs: Any) -> BranchPushResult:
        self.calls.append(kwargs)
        if self.error:
            raise GitPushError(self.error)
        return BranchPushResult(
            branch=kwargs["branch"],
            base_branch=kwargs["base_branch"],
            commit_hash="abc123",
            files=len(kwargs["files"]),
        )


def _completed_job(db_path: str, *, files: list[dict[str, Any]] | None) -> str:
    store = JobStore(db_path)
    try:
        job = store.create_job(
            title="Fix readme",
            description="add a line",
            author="alice",
            branch="develop",
            repository={"url": "https://github.com/acme/repo", "branch": "main"},
        )
        store.claim_job(job.job_id)
        store.update_job_status(job.job_id, "completed")
        if files is not None:
            store.set_job_diff(job.job_id, {"job_id": job.job_id, "files": files})
        return job.job_id
    finally:
        store.close()


def test_create_branch_pushes_completed_diff(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False)
        files = diff_from_output(PATCH, "x").to_dict()["files"]
        job_id = _completed_job(db_path, files=files)
        pusher = FakePusher()
        app = create_app(backend=scripted_backend(), branch_pusher=pusher)  # type: ignore[arg-type]
        with TestClient(app) as client:
            resp = client.post(f"/api/v1/jobs/{job_id}/branch", json={"branch": "hugex/fix"}, headers=ALICE_WITH_GITHUB)
            assert resp.status_code == 201
            assert resp.json() == {
                "job_id": job_id,
                "branch": "hugex/fix",
                "base_branch": "develop",
                "commit_hash": "abc123",
                "files": 1,
            }

        call = pusher.calls[0]
        assert call["repository_url"] == "https://github.com/acme/repo"
        assert call["title"] == "Fix readme"
        assert call["description"] == "add a line"
        assert call["github_token"] == "ghp_alice"
        assert call["files"][0]["filename"] == "README.md"


def test_create_branch_rejections(
    monkeypatch: pytest.MonkeyPatch,
    scripted_backend: type[ScriptedBackend],
) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False)
        files = diff_from_output(PATCH, "x").to_dict()["files"]
        done = _completed_job(db_path, files=files)
        no_diff = _completed_job(db_path, files=None)
        empty = _completed_job(db_path, files=[])
        pusher = FakePusher()
        app = create_app(backend=scripted_backend(), branch_pusher=pusher)  # type: ignore[arg-type]
        with TestClient(app) as client:
            pending = client.post("/api/v1/jobs", json={"title": "t"}, headers=ALICE).json()["id"]

            def push(job_id: str, body: dict[str, Any], headers: dict[str, str] = ALICE_WITH_GITHUB) -> Any:
                return client.post(f"/api/v1/jobs/{job_id}/branch", json=body, headers=headers)

            resp = push(done, {"branch": "hugex/fix"}, headers=ALICE)
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "UNAUTHORIZED"

            assert push(done, {"branch": "x"}, headers=BOB).status_code == 403
            assert push("missing", {"branch": "x"}).status_code == 404

            for body in ({"branch": "-rf"}, {"branch": "a..b"}, {"branch": "ok", "base_branch": "bad name"}, {}):
                resp = push(done, body)
                assert resp.status_code == 400, body
                assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

            resp = push(pending, {"branch": "hugex/fix"})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "JOB_NOT_COMPLETED"

            assert push(no_diff, {"branch": "hugex/fix"}).status_code == 404

            resp = push(empty, {"branch": "hugex/fix"})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "NO_CHANGES"

            assert pusher.calls == []

            client.app.state.branch_pusher = FakePusher(error="git push failed: rejected")
            resp = push(done, {"branch": "hugex/fix"})
            assert resp.status_code == 502
            assert resp.json()["error"] == {"code": "GIT_OPERATION_FAILED", "message": "git push failed: rejected"}


def test_docker_config_round_trip(monkeypatch: pytest.MonkeyPatch, scripted_backend: type[ScriptedBackend]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td, processor=False, mode="docker")
        app = create_app(backend=scripted_backend())
        with TestClient(app) as client:
            default_image = app.state.config.docker.image
            assert client.get("/api/v1/config/docker").status_code == 401
            assert client.put("/api/v1/config/docker", json={"image": "x"}).status_code == 401

            current = client.get("/api/v1/config/docker", headers=ALICE).json()
            assert current == {"image": default_image, "environment": {}, "secrets": {}}

            resp = client.put(
                "/api/v1/config/docker",
                json={
                    "image": "registry.local/agents/codex:2",
                    "environment": {"LOG_LEVEL": "debug"},
                    "secrets": {"API_KEY": "s3cret"},
                },
                headers=ALICE,
            )
            assert resp.status_code == 200
            assert resp.json()["message"] == "Docker configuration updated successfully"
            assert resp.json()["secrets"] == {"API_KEY": "***"}
            assert "s3cret" not in resp.text

            current = client.get("/api/v1/config/docker", headers=ALICE).json()
            assert current == {
                "image": "registry.local/agents/codex:2",
                "environment": {"LOG_LEVEL": "debug"},
                "secrets": {"API_KEY": "***"},
            }

            rejected = (
                ("   ", "INVALID_IMAGE"),
                ("bad image!", "INVALID_IMAGE_FORMAT"),
                ("/x:1", "INVALID_IMAGE_FORMAT"),
            )
            for image, code in rejected:
                resp = client.put("/api/v1/config/docker", json={"image": image}, headers=ALICE)
                assert resp.status_code == 400, image
                assert resp.json()["error"]["code"] == code

        store = JobStore(db_path)
        try:
            assert store.get_setting("docker")["secrets"] == {"API_KEY": "s3cret"}  # type: ignore[index]
        finally:
            store.close()
