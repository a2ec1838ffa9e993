"""HTTP header processing for the Periscope proxy.

Two directions, two rules:

  - build_upstream_headers(): the upstream sees a fixed, browser-like header
    set. Nothing from the caller is forwarded except the content type of a
    form/POST body; cookies, authorization and the caller's own user agent
    never leave the proxy.

  - build_frame_response_headers(): the frame sees only the rewritten body's
    content type plus cache validators from the upstream. Upstream
    Set-Cookie, CSP, X-Frame-Options, CORS and HSTS headers are dropped so
    the page renders inside the shell and no session state leaks between
    sites.

RFC 7230 §6.1 — hop-by-hop headers MUST NOT be forwarded by intermediaries.
"""

from __future__ import annotations

from typing import Mapping, Optional

from app.constants import BROWSER_HEADERS

# ─── Constants ────────────────────────────────────────────────────────────────

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",  # httpx computes it from content=
    }
)

# Upstream response headers worth handing to the frame.
FORWARDED_RESPONSE_HEADERS: frozenset[str] = frozenset(
    {
        "cache-control",
        "etag",
        "expires",
        "last-modified",
        "content-language",
    }
)

# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    content_type: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict[str, str]:
    """Build the header dict for an upstream request.

    Args:
        content_type: Content type of the forwarded body, if any.
        user_agent:   Replacement for the default browser User-Agent.

    Returns:
        A fresh copy of BROWSER_HEADERS, plus ``Content-Type`` when given.
    """
    headers = dict(BROWSER_HEADERS)
    if user_agent:
        headers["User-Agent"] = user_agent
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def build_frame_response_headers(upstream_headers: Mapping[str, str]) -> dict[str, str]:
    """Select the upstream response headers passed through to the frame.

    Only cache validators and content-language survive; everything else,
    hop-by-hop headers included, is dropped. The caller sets Content-Type.
    """
    headers: dict[str, str] = {}
    for name, value in upstream_headers.items():
        lower_name = name.lower()
        if lower_name in HOP_BY_HOP_HEADERS:
            continue
        if lower_name in FORWARDED_RESPONSE_HEADERS:
            headers[lower_name] = value
    return headers
