from __future__ import annotations

import logging
import os


_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Root logging for the server and CLI. Level defaults to env HUGEX_LOG_LEVEL (info)."""
    name = (level or os.getenv("HUGEX_LOG_LEVEL") or "info").strip().upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=_FORMAT)
    logging.getLogger("hugex").setLevel(resolved)
