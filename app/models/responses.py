"""HTTP response builders for the two proxy modes.

  build_probe_response():
      HTTP 200 — JSON envelope ``{content, status, contentType, finalUrl}``
      consumed by the browser shell's fetch logic before it commits to
      rendering.

  build_probe_error_response():
      JSON ``{message, details?, status}`` with the HTTP status mirroring the
      failure class.

  build_passthrough_error_response():
      Terse ``text/plain`` body for frame/asset loads. The consumer is a
      browser frame, so ``details`` (which may carry exception text) is never
      included.

Every response carries ``X-Periscope-Request-ID`` so shell-side error reports
can be matched to server logs.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse, PlainTextResponse

from app.constants import REQUEST_ID_HEADER
from app.models.errors import ProxyError


def build_probe_response(
    *,
    content: str,
    status: int,
    content_type: str,
    final_url: str,
    request_id: str,
) -> JSONResponse:
    """Build the probe-mode success envelope."""
    response = JSONResponse(
        status_code=200,
        content={
            "content": content,
            "status": status,
            "contentType": content_type,
            "finalUrl": final_url,
        },
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_probe_error_response(error: ProxyError, request_id: str) -> JSONResponse:
    """Build the probe-mode JSON error body for ``error``.

    Body: ``{"message": ..., "status": ..., "details": ...}`` — ``details`` is
    omitted when the error has none.
    """
    response = JSONResponse(status_code=error.status, content=error.to_dict())
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_passthrough_error_response(error: ProxyError, request_id: str) -> PlainTextResponse:
    """Build the passthrough-mode plain-text error body for ``error``.

    Only the human-readable message is sent; no details, no stack traces.
    """
    response = PlainTextResponse(status_code=error.status, content=error.message)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response
