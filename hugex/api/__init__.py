"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface used by the web client to:
- create and list jobs
- read job status, logs, environment and diff
- follow job logs as a server-sent event stream

Core behavior lives in `hugex.runtime` and `hugex.storage`.
"""
