from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 2

JOB_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})
SECRET_PLACEHOLDER = "***"

# status -> statuses it may be entered from. Anything else is a backward or
# post-terminal transition and is rejected.
_ALLOWED_PREVIOUS: dict[str, tuple[str, ...]] = {
    "running": ("pending",),
    "completed": ("running",),
    "failed": ("pending", "running"),
}


class JobStoreError(RuntimeError):
    pass


class JobConflictError(JobStoreError):
    """Raised when a job id is already taken."""


def _utc_ts() -> float:
    return time.time()


def _new_job_id() -> str:
    return str(uuid.uuid4())


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(str(raw))
    except Exception:
        return default


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def mask_secrets(secrets: dict[str, Any] | Iterable[str] | None) -> dict[str, str]:
    """Replace every secret value with a placeholder, keeping only the keys."""
    if not secrets:
        return {}
    return {str(k): SECRET_PLACEHOLDER for k in secrets}


def default_db_path() -> str:
    return os.getenv("HUGEX_SQLITE_PATH", "data/hugex.db")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    title: str
    description: str
    status: str
    created_at: float
    updated_at: float
    author: str | None = None
    branch: str | None = None
    repository: dict[str, Any] | None = None
    changes: dict[str, int] | None = None
    logs: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    # Always masked: values are SECRET_PLACEHOLDER.
    secrets: dict[str, str] = field(default_factory=dict)
    api_job_id: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, *, include_logs: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.job_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "author": self.author,
            "branch": self.branch,
            "repository": self.repository,
            "changes": self.changes,
            "environment": dict(self.environment),
            "secrets": mask_secrets(self.secrets),
            "api_job_id": self.api_job_id,
        }
        if include_logs:
            out["logs"] = self.logs
        return out


class JobStore:
    """SQLite-backed job store.

    - One connection per instance; request handlers and processing threads each
      open their own store.
    - Every mutation is a single committed statement (or explicit transaction)
      that also refreshes `updated_at`, so readers see either the previous or
      the fully-applied next state.
    - Raw secret values live in `job_secrets` and are only returned by
      `get_job_secrets`; every job read exposes masked placeholders.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connections may be closed from a different threadpool worker than the
        # one that opened them (FastAPI yield dependencies); use is sequential.
        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")
        # SQLite's LOWER() only folds ASCII; search matches on Python casefold.
        self._conn.create_function("hugex_casefold", 1, _casefold, deterministic=True)

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, which serializes
        competing claims on the same job across threads and processes.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              title TEXT NOT NULL,
              description TEXT NOT NULL,
              status TEXT NOT NULL,
              author TEXT,
              branch TEXT,
              repository_json TEXT,
              changes_json TEXT,
              logs TEXT NOT NULL DEFAULT '',
              environment_json TEXT NOT NULL DEFAULT '{}',
              secret_keys_json TEXT NOT NULL DEFAULT '[]',
              api_job_id TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_secrets (
              job_id TEXT NOT NULL,
              key TEXT NOT NULL,
              value TEXT NOT NULL,
              PRIMARY KEY (job_id, key),
              FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_diffs (
              job_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              diff_json TEXT NOT NULL,
              FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              updated_at REAL NOT NULL,
              value_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_author_created ON jobs(author, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);")
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

        current = self._get_schema_version()
        if current > SCHEMA_VERSION:
            raise JobStoreError(f"DB schema_version={current} is newer than code expects ({SCHEMA_VERSION}).")
        if current < SCHEMA_VERSION:
            # v1 -> v2 only added the `settings` table, created above.
            self._conn.execute(
                "UPDATE meta SET value = ? WHERE key = ?;",
                (str(SCHEMA_VERSION), "schema_version"),
            )
            self._conn.commit()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _row_to_record(self, row: sqlite3.Row) -> JobRecord:
        secret_keys = _json_loads(row["secret_keys_json"], [])
        return JobRecord(
            job_id=str(row["job_id"]),
            title=str(row["title"]),
            description=str(row["description"]),
            status=str(row["status"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
            author=row["author"],
            branch=row["branch"],
            repository=_json_loads(row["repository_json"], None),
            changes=_json_loads(row["changes_json"], None),
            logs=str(row["logs"] or ""),
            environment=_json_loads(row["environment_json"], {}),
            secrets=mask_secrets(secret_keys if isinstance(secret_keys, list) else []),
            api_job_id=row["api_job_id"],
        )

    # --- Create / read
    def create_job(
        self,
        *,
        title: str,
        description: str = "",
        author: str | None = None,
        branch: str | None = None,
        repository: dict[str, Any] | None = None,
        environment: dict[str, str] | None = None,
        secrets: dict[str, str] | None = None,
        job_id: str | None = None,
    ) -> JobRecord:
        job_id = job_id or _new_job_id()
        created_at = _utc_ts()
        secrets = dict(secrets or {})
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO jobs(
                      job_id, created_at, updated_at, title, description, status, author, branch,
                      repository_json, environment_json, secret_keys_json
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        job_id,
                        created_at,
                        created_at,
                        title,
                        description,
                        "pending",
                        author,
                        branch,
                        _json_dumps(repository) if repository is not None else None,
                        _json_dumps(dict(environment or {})),
                        _json_dumps(sorted(secrets)),
                    ),
                )
                self._conn.executemany(
                    "INSERT INTO job_secrets(job_id, key, value) VALUES(?, ?, ?);",
                    [(job_id, str(k), str(v)) for k, v in secrets.items()],
                )
        except sqlite3.IntegrityError as e:
            raise JobConflictError(f"Job already exists: {job_id}") from e

        record = self.get_job(job_id)
        assert record is not None
        return record

    def get_job(self, job_id: str) -> JobRecord | None:
        row = self._conn.execute("SELECT * FROM jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def get_job_logs(self, job_id: str) -> str:
        row = self._conn.execute("SELECT logs FROM jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        if row is None:
            return ""
        return str(row["logs"] or "")

    def get_job_secrets(self, job_id: str) -> dict[str, str]:
        """Raw secret values, for the execution path only."""
        rows = self._conn.execute(
            "SELECT key, value FROM job_secrets WHERE job_id = ? ORDER BY key;",
            (job_id,),
        ).fetchall()
        return {str(r["key"]): str(r["value"]) for r in rows}

    def list_jobs_page(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        status: str | None = None,
        search: str | None = None,
        author: str | None = None,
        limit_max: int = 100,
    ) -> dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), int(limit_max)))

        where = ["1=1"]
        params: list[Any] = []

        if author is not None:
            where.append("author = ?")
            params.append(author)

        if status:
            where.append("status = ?")
            params.append(status)

        if search:
            pattern = f"%{_escape_like(_casefold(search))}%"
            where.append(
                "(hugex_casefold(title) LIKE ? ESCAPE '\\' OR hugex_casefold(description) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])

        where_sql = " AND ".join(where)
        offset = (page - 1) * limit

        with self.transaction(mode="DEFERRED"):
            total = int(
                self._conn.execute(f"SELECT COUNT(*) AS n FROM jobs WHERE {where_sql};", params).fetchone()["n"]
            )
            rows: list[sqlite3.Row] = []
            # Past-the-end pages are empty; the offset can exceed SQLite's INTEGER range.
            if offset < total:
                rows = self._conn.execute(
                    f"""
                    SELECT * FROM jobs
                    WHERE {where_sql}
                    ORDER BY created_at DESC, job_id DESC
                    LIMIT ? OFFSET ?;
                    """,
                    (*params, limit, offset),
                ).fetchall()

        total_pages = (total + limit - 1) // limit
        return {
            "jobs": [self._row_to_record(r).to_dict() for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Mutations
    def update_job_status(self, job_id: str, status: str, *, changes: dict[str, int] | None = None) -> bool:
        """Apply a forward status transition.

        Returns False when the job is missing or the transition is not allowed
        from its current status (never moves backward, never leaves a terminal
        state). Reaching a terminal state also purges raw secret values.
        """
        if status not in _ALLOWED_PREVIOUS:
            raise ValueError(f"Invalid target status: {status!r}")
        previous = _ALLOWED_PREVIOUS[status]
        ts = _utc_ts()

        with self.transaction():
            updated = self._conn.execute(
                f"""
                UPDATE jobs
                SET
                  status = ?,
                  updated_at = ?,
                  changes_json = COALESCE(?, changes_json)
                WHERE job_id = ? AND status IN ({",".join(["?"] * len(previous))});
                """,
                (status, ts, _json_dumps(changes) if changes is not None else None, job_id, *previous),
            )
            if updated.rowcount != 1:
                return False
            if status in TERMINAL_STATUSES:
                self._conn.execute("DELETE FROM job_secrets WHERE job_id = ?;", (job_id,))
        return True

    def claim_job(self, job_id: str) -> bool:
        """Atomically move a pending job to running. Only one caller can win."""
        return self.update_job_status(job_id, "running")

    def append_job_logs(self, job_id: str, text: str) -> bool:
        if not text:
            return False
        updated = self._conn.execute(
            """
            UPDATE jobs
            SET logs = logs || ?, updated_at = ?
            WHERE job_id = ?;
            """,
            (text, _utc_ts(), job_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def update_job_environment(
        self,
        job_id: str,
        *,
        environment: dict[str, str],
        secret_keys: Iterable[str],
        api_job_id: str | None = None,
    ) -> bool:
        """Record the effective execution environment. Only secret keys are stored here."""
        updated = self._conn.execute(
            """
            UPDATE jobs
            SET
              environment_json = ?,
              secret_keys_json = ?,
              api_job_id = COALESCE(?, api_job_id),
              updated_at = ?
            WHERE job_id = ?;
            """,
            (_json_dumps(dict(environment)), _json_dumps(sorted(set(secret_keys))), api_job_id, _utc_ts(), job_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def set_job_diff(self, job_id: str, diff: dict[str, Any]) -> None:
        ts = _utc_ts()
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO job_diffs(job_id, created_at, diff_json) VALUES(?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET created_at = excluded.created_at, diff_json = excluded.diff_json;
                """,
                (job_id, ts, _json_dumps(diff)),
            )
            self._conn.execute("UPDATE jobs SET updated_at = ? WHERE job_id = ?;", (ts, job_id))

    def get_job_diff(self, job_id: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT diff_json FROM job_diffs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        if row is None:
            return None
        return _json_loads(row["diff_json"], None)

    # --- Runtime settings
    def get_setting(self, key: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT value_json FROM settings WHERE key = ? LIMIT 1;", (key,)).fetchone()
        if row is None:
            return None
        value = _json_loads(row["value_json"], None)
        return value if isinstance(value, dict) else None

    def set_setting(self, key: str, value: dict[str, Any]) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO settings(key, updated_at, value_json) VALUES(?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET updated_at = excluded.updated_at, value_json = excluded.value_json;
                """,
                (key, _utc_ts(), _json_dumps(value)),
            )

    # --- Reconcile (startup safety)
    def reconcile_unfinished_jobs(self, *, reason: str = "server_restarted") -> int:
        """Mark any 'pending'/'running' jobs as failed.

        Their credentials lived in the previous process, so they can never run.
        Returns the number of jobs reconciled.
        """
        rows = self._conn.execute(
            "SELECT job_id FROM jobs WHERE status IN ('pending', 'running');",
        ).fetchall()
        count = 0
        for row in rows:
            job_id = str(row["job_id"])
            self.append_job_logs(job_id, f"\n[hugex] Job failed: {reason}\n")
            if self.update_job_status(job_id, "failed"):
                count += 1
        return count
