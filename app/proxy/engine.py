"""Proxy orchestrator for Periscope.

Single entry point (``/api/proxy`` by default, GET and POST) serving two
consumers:

  Probe mode — the browser shell asks "what is at this address?"
      POST application/json ``{"url": "<whatever the user typed>"}``, no
      ``url`` query parameter.
      validate → classify → guard → fetch (GET) → rewrite → JSON envelope
      ``{content, status, contentType, finalUrl}``.

  Passthrough mode — the frame loads a rewritten page, its subresources,
      links and form posts.
      ``?url=<absolute URL>`` (any content type).
      guard → fetch (inbound method and body) → rewrite → raw bytes with the
      rewritten content type.

Pipeline properties:
  - Shared httpx.AsyncClient at app.state.http_client — never per request.
  - Every failure is a ProxyError subclass raised by the failing stage and
    turned into a response HERE, once: JSON for probe, terse text/plain for
    passthrough. Anything else becomes InternalError (500) without details.
  - The upstream fetch runs as its own task; if the inbound client
    disconnects, the task is cancelled and no response is produced.
  - Each request gets a ULID request id, bound into every log line and
    returned in ``X-Periscope-Request-ID``.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Coroutine, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import pydantic
from fastapi import APIRouter, Request, Response

from app.config import Config
from app.constants import (
    DEFAULT_PROXY_ENDPOINT,
    DISCONNECT_POLL_INTERVAL_S,
    REQUEST_ID_HEADER,
)
from app.models.errors import (
    InternalError,
    ProxyError,
    UnsupportedContentType,
    ValidationError,
)
from app.models.proxy import ProbeRequest, RewriteContext, UpstreamResult
from app.models.responses import (
    build_passthrough_error_response,
    build_probe_error_response,
    build_probe_response,
)
from app.proxy.classifier import normalize, validate_raw_input
from app.proxy.fetcher import fetch_upstream
from app.proxy.headers import build_frame_response_headers
from app.proxy.limiter import PROXY_RATE_LIMIT, limiter
from app.rewrite.dispatch import (
    ContentCategory,
    classify_content_type,
    decode_text,
    parse_content_type,
    rewrite,
    rewritten_content_type,
)
from app.utils.health import FetchLatencyTracker, OutcomeCounters
from app.utils.logger import PerformanceLogger, clear_request_id, get_logger, set_request_id
from app.utils.ulid import generate_request_id

logger = get_logger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Non-standard "client closed request" status; never reaches the client.
CLIENT_CLOSED_REQUEST = 499


# ─── Mode selection ───────────────────────────────────────────────────────────


def is_probe_request(request: Request) -> bool:
    """Probe = JSON body and no ``url`` query parameter."""
    mime, _ = parse_content_type(request.headers.get("content-type"))
    return mime == "application/json" and "url" not in request.query_params


def fold_query_params(url: str, params: list[tuple[str, str]]) -> str:
    """Append ``params`` to the query string of ``url``.

    Used for GET form submissions that land on a routed ``action`` URL: the
    browser puts the form fields next to ``url=`` on the proxy request.
    """
    if not params:
        return url
    parts = urlsplit(url)
    extra = urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit(parts._replace(query=query))


def _parse_probe_body(body: bytes) -> ProbeRequest:
    try:
        data = json.loads(body or b"null")
    except ValueError as exc:
        raise ValidationError(details="Request body must be valid JSON") from exc
    try:
        return ProbeRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        message = str(first.get("msg", "Invalid request"))
        raise ValidationError(details=message.removeprefix("Value error, ")) from exc


# ─── Pipeline stages ──────────────────────────────────────────────────────────


async def _fetch(
    request: Request,
    url: str,
    *,
    method: str = "GET",
    body: Optional[bytes] = None,
    content_type: Optional[str] = None,
) -> UpstreamResult:
    config: Config = request.app.state.config
    http_client: httpx.AsyncClient = request.app.state.http_client
    tracker: Optional[FetchLatencyTracker] = getattr(request.app.state, "latency_tracker", None)

    with PerformanceLogger(
        "upstream_fetch",
        logger=logger,
        slow_ms=config.fetch.timeout_s * 1000 / 2,
        method=method,
    ) as perf:
        result = await fetch_upstream(
            http_client,
            url,
            method=method,
            body=body,
            content_type=content_type,
            config=config,
        )
    if tracker is not None:
        tracker.record(perf.duration_ms)
    return result


def _rewrite(result: UpstreamResult, config: Config) -> bytes:
    ctx = RewriteContext(base_url=result.final_url, proxy_endpoint=config.proxy.endpoint)
    with PerformanceLogger(
        "rewrite",
        logger=logger,
        content_type=result.content_type,
        size_bytes=len(result.body),
    ):
        return rewrite(result.body, result.content_type, ctx)


async def run_probe(request: Request, body: bytes, request_id: str) -> Response:
    """Probe pipeline: shell input → JSON envelope."""
    config: Config = request.app.state.config

    probe = _parse_probe_body(body)
    classified = normalize(probe.url, config.search.engine)
    logger.info("input_classified", kind=classified.kind.value, url=classified.url)

    result = await _fetch(request, classified.url)

    category = classify_content_type(result.content_type)
    if category is ContentCategory.BINARY or (
        config.probe.html_only and category is not ContentCategory.HTML
    ):
        raise UnsupportedContentType(
            details=f"Expected HTML but got {result.content_type or 'no content type'}"
        )

    rewritten = _rewrite(result, config)
    if category in (ContentCategory.HTML, ContentCategory.CSS):
        content = decode_text(rewritten, "utf-8")
    else:
        content = decode_text(rewritten, parse_content_type(result.content_type)[1])

    return build_probe_response(
        content=content,
        status=result.status_code,
        content_type=result.content_type,
        final_url=result.final_url,
        request_id=request_id,
    )


async def run_passthrough(request: Request, body: bytes, request_id: str) -> Response:
    """Passthrough pipeline: routed URL → raw (rewritten) bytes."""
    config: Config = request.app.state.config

    raw_url = validate_raw_input(request.query_params.get("url"))
    url = normalize(raw_url, config.search.engine).url

    method = request.method.upper()
    forward_body: Optional[bytes] = None
    content_type: Optional[str] = None

    if method == "GET":
        extra = [(k, v) for k, v in request.query_params.multi_items() if k != "url"]
        url = fold_query_params(url, extra)
    else:
        content_type = request.headers.get("content-type")
        forward_body = body
        if parse_content_type(content_type)[0] == FORM_CONTENT_TYPE:
            fields = parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)
            forward_body = urlencode(fields).encode("ascii")
            content_type = FORM_CONTENT_TYPE

    result = await _fetch(
        request,
        url,
        method=method,
        body=forward_body,
        content_type=content_type,
    )
    rewritten = _rewrite(result, config)

    headers = build_frame_response_headers(result.headers)
    headers[REQUEST_ID_HEADER] = request_id
    return Response(
        content=rewritten,
        status_code=result.status_code,
        headers=headers,
        media_type=rewritten_content_type(result.content_type) or None,
    )


# ─── Disconnect handling ──────────────────────────────────────────────────────


async def _watch_disconnect(request: Request, task: asyncio.Future) -> None:
    while not task.done():
        if await request.is_disconnected():
            request.state.client_disconnected = True
            logger.info("client_disconnected", path=request.url.path)
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL_S)


async def _run_until_disconnect(request: Request, pipeline: Coroutine[Any, Any, Response]) -> Response:
    """Run ``pipeline``, cancelling it if the inbound client goes away."""
    task = asyncio.ensure_future(pipeline)
    watcher = asyncio.ensure_future(_watch_disconnect(request, task))
    try:
        return await task
    finally:
        watcher.cancel()


# ─── Proxy handler ────────────────────────────────────────────────────────────


@limiter.limit(PROXY_RATE_LIMIT)
async def proxy_handler(request: Request) -> Response:
    """Single proxy entry point — probe and passthrough modes.

    The readiness gate (``require_ready``) is attached as a router dependency
    in create_app(); the inbound body cap is enforced by
    BodySizeLimitMiddleware before this handler runs.
    """
    request_id = generate_request_id()
    token = set_request_id(request_id)
    probe = is_probe_request(request)
    outcomes: Optional[OutcomeCounters] = getattr(request.app.state, "outcomes", None)

    logger.info(
        "proxy_request",
        mode="probe" if probe else "passthrough",
        method=request.method,
        url=request.query_params.get("url"),
    )

    try:
        # Read the body before watching for disconnects: is_disconnected()
        # consumes receive() messages.
        body = await request.body()
        pipeline = run_probe if probe else run_passthrough
        response = await _run_until_disconnect(request, pipeline(request, body, request_id))
        outcome = "ok"
    except ProxyError as exc:
        logger.info(
            "proxy_request_failed",
            kind=exc.kind.value,
            status=exc.status,
            details=exc.details,
        )
        outcome = exc.kind.value
        response = (
            build_probe_error_response(exc, request_id)
            if probe
            else build_passthrough_error_response(exc, request_id)
        )
    except asyncio.CancelledError:
        if not getattr(request.state, "client_disconnected", False):
            raise
        outcome = "client_disconnected"
        response = Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "proxy_internal_error",
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        internal = InternalError()
        outcome = internal.kind.value
        response = (
            build_probe_error_response(internal, request_id)
            if probe
            else build_passthrough_error_response(internal, request_id)
        )
    finally:
        clear_request_id(token)

    if outcomes is not None:
        outcomes.record(outcome)
    return response


# ─── Router factory ───────────────────────────────────────────────────────────


def create_proxy_router(endpoint: str = DEFAULT_PROXY_ENDPOINT) -> APIRouter:
    """Mount proxy_handler at the path component of ``endpoint``.

    ``endpoint`` may be an absolute URL (when the shell is served from another
    origin); only its path is used for routing.
    """
    path = urlsplit(endpoint).path or DEFAULT_PROXY_ENDPOINT
    router = APIRouter(tags=["proxy"])
    router.add_api_route(path, proxy_handler, methods=["GET", "POST"])
    return router
