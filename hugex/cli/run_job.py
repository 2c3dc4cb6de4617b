from __future__ import annotations

import argparse
import dataclasses
import os
import sys
import time

from hugex.config.load_config import EXECUTION_MODES, ExecutionConfig, load_app_config
from hugex.runtime.credentials import Credentials, effective_username, has_valid_credentials
from hugex.runtime.processor import JobProcessor
from hugex.runtime.repository import is_github_repo_url
from hugex.storage.job_store import JobStore
from hugex.utils.logging_setup import configure_logging


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create one hugex job and run it to completion.")
    parser.add_argument("--title", required=True, help="Job title (1..200 characters).")
    parser.add_argument("--description", default="", help="Task prompt handed to the agent.")
    parser.add_argument(
        "--repo-url",
        default="",
        help="GitHub repository URL (default: config repository.default_url).",
    )
    parser.add_argument("--branch", default="", help="Branch override.")
    parser.add_argument(
        "--mode",
        default="",
        choices=["", *EXECUTION_MODES],
        help="Execution mode override (default: config / HUGEX_EXECUTION_MODE).",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env HUGEX_SQLITE_PATH or data/hugex.db).",
    )
    parser.add_argument("--poll-s", type=float, default=1.0, help="How often to print new log output.")
    return parser.parse_args(argv)


def _credentials_from_env() -> Credentials:
    return Credentials(
        huggingface_token=os.getenv("HF_TOKEN") or None,
        github_token=os.getenv("GITHUB_TOKEN") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        hf_username=os.getenv("HF_USERNAME") or None,
        github_username=os.getenv("GITHUB_USERNAME") or None,
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    configure_logging()

    app_config = load_app_config()
    if args.mode:
        app_config = dataclasses.replace(app_config, execution=ExecutionConfig(mode=args.mode))
    mode = app_config.execution.mode

    title = args.title.strip()
    if not title or len(title) > app_config.limits.title_max_chars:
        raise SystemExit(f"title must be 1..{app_config.limits.title_max_chars} characters")
    if len(args.description) > app_config.limits.description_max_chars:
        raise SystemExit(f"description must be at most {app_config.limits.description_max_chars} characters")
    if args.repo_url and not is_github_repo_url(args.repo_url):
        raise SystemExit(f"--repo-url must be a GitHub repository URL, got {args.repo_url!r}")

    credentials = _credentials_from_env()
    if not has_valid_credentials(credentials, mode):
        needed = "HF_TOKEN or GITHUB_TOKEN" if mode == "docker" else "HF_TOKEN (and HF_USERNAME)"
        print(f"Missing credentials for {mode} mode: set {needed}.", file=sys.stderr)
        return 2

    db_path = args.db_path or None
    store = JobStore(db_path)
    processor = JobProcessor(config=app_config, db_path=str(store.db_path))
    try:
        job = store.create_job(
            title=title,
            description=args.description,
            author=effective_username(credentials),
            branch=args.branch or None,
            repository={"url": args.repo_url} if args.repo_url else None,
        )
        print(f"job {job.job_id} created (mode={mode})", file=sys.stderr)
        processor.submit(job.job_id, credentials)

        printed = 0
        try:
            while True:
                time.sleep(max(0.05, float(args.poll_s)))
                logs = store.get_job_logs(job.job_id)
                if len(logs) > printed:
                    sys.stdout.write(logs[printed:])
                    sys.stdout.flush()
                    printed = len(logs)
                if not processor.is_active(job.job_id):
                    break
        except KeyboardInterrupt:
            print("\ninterrupted; cancelling job", file=sys.stderr)
            processor.shutdown()

        tail = store.get_job_logs(job.job_id)[printed:]
        if tail:
            sys.stdout.write(tail)
        final = store.get_job(job.job_id)
        status = final.status if final is not None else "unknown"
        print(f"\njob {job.job_id} {status}", file=sys.stderr)
        if final is not None and final.changes:
            print(f"changes: {final.changes}", file=sys.stderr)
        return 0 if status == "completed" else 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
