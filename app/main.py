"""Periscope FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /health router — delegated to app/health.py
  - /        route  — service discovery root
  - proxy router    — app/proxy/engine.py, mounted at config.proxy.endpoint
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. app.state.config        (loaded by create_app(), or passed in)
  2. create_http_client()    → app.state.http_client
  3. FetchLatencyTracker()   → app.state.latency_tracker
     OutcomeCounters()       → app.state.outcomes
  4. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → close shared HTTP client

Uvicorn hardened defaults (see app/run.py):
  uvicorn app.main:app \\
    --host 127.0.0.1 \\
    --port 5000 \\
    --limit-concurrency 100 \\
    --backlog 50 \\
    --timeout-keep-alive 5
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.config import Config, load_config
from app.constants import POOL_MAX_CONNECTIONS, POOL_MAX_KEEPALIVE, REQUEST_ID_HEADER
from app.health import router as health_router
from app.proxy.engine import create_proxy_router
from app.proxy.fetcher import create_http_client
from app.proxy.limiter import limiter
from app.proxy.middleware import BodySizeLimitMiddleware
from app.utils.health import FetchLatencyTracker, OutcomeCounters
from app.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Routers ──────────────────────────────────────────────────────────────────

root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail="Periscope is starting up",
        )


# ─── Root Endpoint ────────────────────────────────────────────────────────────


@root_router.get("/")
async def root(request: Request) -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    config: Optional[Config] = getattr(request.app.state, "config", None)
    return {
        "service": "Periscope",
        "tagline": "Browse any site inside your own shell",
        "proxy": config.proxy.endpoint if config else "",
        "health": "/health",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("Periscope starting up...")

    config: Config = app.state.config

    # ── Shared HTTP client ────────────────────────────────────────────────────
    http_client: httpx.AsyncClient = create_http_client(config.fetch)
    app.state.http_client = http_client
    logger.info(
        "HTTP proxy client created",
        max_connections=POOL_MAX_CONNECTIONS,
        max_keepalive_connections=POOL_MAX_KEEPALIVE,
        timeout_s=config.fetch.timeout_s,
        max_redirects=config.fetch.max_redirects,
    )

    # ── Metrics for /health ───────────────────────────────────────────────────
    app.state.latency_tracker = FetchLatencyTracker()
    app.state.outcomes = OutcomeCounters()

    app.state.ready = True
    logger.info("Periscope ready", endpoint=config.proxy.endpoint)

    yield

    logger.info("Periscope shutting down...")
    app.state.ready = False

    try:
        await http_client.aclose()
        logger.info("HTTP proxy client closed")
    except Exception as exc:  # noqa: BLE001
        logger.warning("HTTP proxy client close error (non-fatal)", error=str(exc))

    logger.info("Periscope shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the Periscope FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(Config.defaults())

    Args:
        config: Explicit configuration. When omitted, load_config() runs here
                (the proxy route path and CORS origins come from it).

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    if config is None:
        config = load_config()

    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Periscope",
        description="Forward content-rewriting proxy for an in-browser shell",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.config = config
    application.state.ready = False

    # Rate limiter: slowapi reads it from app.state.
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS: only the shell origins may call the probe endpoint.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.proxy.cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    # Inbound body cap. In Starlette the LAST-added middleware is OUTERMOST.
    application.add_middleware(BodySizeLimitMiddleware)

    application.add_middleware(SlowAPIMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(
        create_proxy_router(config.proxy.endpoint),
        dependencies=[Depends(require_ready)],
    )

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        detail = exc.detail
        if isinstance(detail, dict):
            content = {"message": detail.get("message", "Error"), **detail}
        else:
            content = {"message": str(detail)}
        return JSONResponse(status_code=exc.status_code, content=content)

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"message": "Invalid request"})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()


# ─── Dev Entrypoint ───────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    _startup_config = app.state.config
    logger.info(
        "Starting Periscope (dev mode)",
        host=_startup_config.proxy.host,
        port=_startup_config.proxy.port,
    )

    uvicorn.run(
        "app.main:app",
        host=_startup_config.proxy.host,
        port=_startup_config.proxy.port,
        reload=DEBUG,
        log_level=LOG_LEVEL.lower(),
        limit_concurrency=100,
        backlog=50,
        timeout_keep_alive=5,
    )
