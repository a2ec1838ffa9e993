"""Request body size limit middleware for Periscope.

Caps inbound bodies (form posts and JSON probes routed through the proxy) at
MAX_REQUEST_BODY_BYTES. HTTP 413 is returned BEFORE classification, guard or
upstream connection.

Two-phase check:
  1. Content-Length fast path: reject immediately on an oversized header value.
  2. Chunked/streaming slow path: accumulate the body with a rolling cap and
     reject as soon as the cap is exceeded.

Error bodies use the same ``{message, details, status}`` envelope as the
proxy's probe-mode errors.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.constants import MAX_REQUEST_BODY_BYTES
from app.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Error response bodies ────────────────────────────────────────────────────

_PAYLOAD_TOO_LARGE_BODY: dict = {
    "message": "Request body too large",
    "details": f"Maximum request body size is {MAX_REQUEST_BODY_BYTES} bytes",
    "status": 413,
}

_INVALID_CONTENT_LENGTH_BODY: dict = {
    "message": "Invalid Content-Length header",
    "status": 400,
}


# ─── Middleware ───────────────────────────────────────────────────────────────


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing the inbound body cap.

    Registration (in create_app() in app/main.py):
        application.add_middleware(BodySizeLimitMiddleware)

      - Content-Length > MAX_REQUEST_BODY_BYTES  → HTTP 413 (no body read)
      - Content-Length == MAX_REQUEST_BODY_BYTES → accepted
      - No Content-Length, accumulated body > cap → HTTP 413
      - No Content-Length, accumulated body ≤ cap → accepted, body cached on the request
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        # ── Phase 1: Content-Length fast path ─────────────────────────────────
        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning(
                    "invalid_content_length",
                    value=content_length_header,
                    path=request.url.path,
                )
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "request_body_too_large",
                    declared_size=declared_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)

            return await call_next(request)

        # ── Phase 2: Chunked / no Content-Length — rolling cap ────────────────
        if request.method in ("GET", "HEAD", "OPTIONS"):
            return await call_next(request)

        body_chunks: list[bytes] = []
        total_size: int = 0

        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "request_body_too_large",
                    accumulated_size=total_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            body_chunks.append(chunk)

        # Request.body() returns request._body when set, so the handler reads
        # the cached bytes instead of the consumed stream.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]

        return await call_next(request)
