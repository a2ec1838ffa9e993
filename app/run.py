"""Programmatic uvicorn entry point for Periscope.

Reads host and port from the loaded config (127.0.0.1:5000 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100  Max 100 concurrent connections; HTTP 503 when exceeded
  --backlog 50             OS connection queue depth
  --timeout-keep-alive 5   Short keep-alive window (Slow Loris exposure)

Usage:
    python -m app.run          # reads .periscope/config.yaml
    periscope                  # via pyproject.toml [project.scripts]

Binding proxy.host: "0.0.0.0" is allowed but logs a SECURITY WARNING: an
exposed Periscope is an open web proxy.
"""

from __future__ import annotations

import uvicorn

from app.config import load_config
from app.constants import POOL_MAX_CONNECTIONS

# ─── Uvicorn hardened defaults ────────────────────────────────────────────────

# Matches the httpx pool size so every in-flight request has an upstream slot.
UVICORN_LIMIT_CONCURRENCY: int = POOL_MAX_CONNECTIONS

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the Periscope proxy server with hardened uvicorn defaults.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "app.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
