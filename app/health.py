"""Health endpoint for Periscope.

  GET /health — 503 before ``app.state.ready`` (lifespan startup), 200 after.

Polled by container health probes and by the browser shell before it shows
the address bar.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from app.config import Config
from app.constants import POOL_MAX_CONNECTIONS
from app.utils.health import FetchLatencyTracker, OutcomeCounters

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok",
          "proxy": "running",
          "endpoint": "/api/proxy",
          "connection_pool_size": 100,
          "avg_fetch_ms": 0.0,
          "p99_fetch_ms": 0.0,
          "requests_total": 0,
          "outcomes": {"ok": 0, "ForbiddenError": 0, ...}
        }

    Response body (503):
        {"status": "starting", "message": "Periscope is starting up..."}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "Periscope is starting up...",
            },
        )

    config: Config = request.app.state.config
    latency_tracker: Optional[FetchLatencyTracker] = getattr(
        request.app.state, "latency_tracker", None
    )
    outcomes: Optional[OutcomeCounters] = getattr(request.app.state, "outcomes", None)

    return {
        "status": "ok",
        "proxy": "running",
        "endpoint": config.proxy.endpoint,
        "connection_pool_size": POOL_MAX_CONNECTIONS,
        "avg_fetch_ms": round(latency_tracker.avg_ms, 2) if latency_tracker else 0.0,
        "p99_fetch_ms": round(latency_tracker.p99_ms, 2) if latency_tracker else 0.0,
        "requests_total": outcomes.total if outcomes else 0,
        "outcomes": outcomes.snapshot() if outcomes else {},
    }
