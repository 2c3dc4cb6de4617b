"""Runtime orchestration (job processing, execution backends, log streaming).

This layer is responsible for:
- claiming pending jobs from SQLite
- driving them through the configured execution backend
- recording logs, diffs and terminal statuses

It stays independent from the HTTP layer (`hugex.api`), so both the CLI and the
API reuse the same execution logic.
"""
