"""Shared constants for Periscope.

All size limits, timeouts and fixed header values used across modules are
defined here. No magic numbers in other modules — import from here.
"""

# ─── Request / Response Size Limits ──────────────────────────────────────────

# Maximum allowed inbound request body size (form posts routed through the
# proxy). HTTP 413 is returned for bodies exceeding this limit, BEFORE any
# classification or upstream connection.
MAX_REQUEST_BODY_BYTES: int = 1_048_576  # 1 MB

# Maximum buffered upstream response body. Larger responses are aborted with
# ResponseTooLargeError instead of being materialised in memory.
MAX_RESPONSE_BODY_BYTES: int = 10_485_760  # 10 MB

# ─── Upstream Fetch ──────────────────────────────────────────────────────────

# Pool size matches the uvicorn --limit-concurrency value in app/run.py.
POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 20
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds

# Total per-request upstream timeout (connect + read across the redirect chain).
FETCH_TIMEOUT_S: float = 20.0

# Redirect hops followed before giving up.
MAX_REDIRECTS: int = 10

# DNS resolution budget for the SSRF guard.
DNS_RESOLVE_TIMEOUT_S: float = 5.0

# How often the orchestrator checks whether the inbound client went away.
DISCONNECT_POLL_INTERVAL_S: float = 0.25

# Outbound headers presented to every upstream, independent of the inbound
# request. Content-Type is added separately when a body is forwarded.
BROWSER_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}

# ─── Routing ─────────────────────────────────────────────────────────────────

# Path of the single proxy entry point. Rewritten URLs point here.
DEFAULT_PROXY_ENDPOINT: str = "/api/proxy"

# Host used to build search URLs for non-URL input.
DEFAULT_SEARCH_ENGINE: str = "www.google.com"

# Response header carrying the per-request ULID.
REQUEST_ID_HEADER: str = "X-Periscope-Request-ID"
