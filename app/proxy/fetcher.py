"""Upstream fetcher for Periscope.

Performs the outbound request for one proxied navigation or asset:

  - Shared httpx.AsyncClient at app.state.http_client — created once by
    create_http_client() during lifespan startup, never per request.
  - Cookie-less: the client's jar refuses every cookie, so no session state
    carries over from one proxied site (or user) to the next.
  - Redirects are followed HERE, not by httpx. Every hop's target goes back
    through the SSRF guard before it is requested; a public page that
    redirects to 169.254.169.254 fails with 403 and no request is made.
  - DNS pinning: the request is sent to the address the guard validated, with
    the original Host header and TLS SNI, so a second resolution cannot swap
    in a private address.
    Requests to an IP are sent with ``Connection: close`` so a pooled
    connection is never shared between hostnames.
  - Bounded body: Content-Length fast path, then a rolling cap while
    streaming. Overflow raises ResponseTooLargeError.

Failure mapping (nothing is retried):
  - Guard rejection (any hop)                       → ForbiddenError      403
  - DNS / connect / TLS / timeout / protocol error   → NetworkError        502
  - Redirect chain longer than fetch.max_redirects   → NetworkError        502
  - Final status outside 2xx                         → UpstreamHttpError   <status>
  - Body larger than fetch.max_body_bytes            → ResponseTooLargeError 502
  - httpx.InvalidURL                                 → ValidationError     400
"""

from __future__ import annotations

from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from app.config import Config, FetchConfig, SecurityConfig
from app.constants import POOL_KEEPALIVE_EXPIRY, POOL_MAX_CONNECTIONS, POOL_MAX_KEEPALIVE
from app.models.errors import (
    ForbiddenError,
    NetworkError,
    ResponseTooLargeError,
    UpstreamHttpError,
    ValidationError,
)
from app.models.proxy import ResolvedTarget, UpstreamResult
from app.proxy.guard import resolve_target
from app.proxy.headers import build_upstream_headers
from app.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Constants ────────────────────────────────────────────────────────────────

REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308})

# Methods a 301/302 may keep; anything else is downgraded to GET like browsers do.
_SAFE_METHODS: frozenset[str] = frozenset({"GET", "HEAD"})

# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(
    fetch: Optional[FetchConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient used for all upstream fetches.

    This client is created once at lifespan startup and stored in
    app.state.http_client. ``transport`` replaces the network transport
    (tests pass an httpx.MockTransport).

    Returns:
        Pooled client with redirects disabled and a cookie jar that accepts
        nothing.
    """
    fetch = fetch or FetchConfig()
    no_cookies = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(fetch.timeout_s),
        follow_redirects=False,  # every hop is re-validated by fetch_upstream()
        cookies=no_cookies,  # a Cookies wrapper would be copied into a default-policy jar
        transport=transport,
    )


# ─── Request construction ─────────────────────────────────────────────────────


def _build_request(
    client: httpx.AsyncClient,
    target: ResolvedTarget,
    method: str,
    body: Optional[bytes],
    content_type: Optional[str],
    fetch: FetchConfig,
    security: SecurityConfig,
) -> httpx.Request:
    """Build the outbound request, pinned to the validated address when enabled."""
    headers = build_upstream_headers(content_type if body is not None else None, fetch.user_agent)
    url = httpx.URL(target.absolute_url)
    extensions: dict = {}

    if security.pin_resolved_address and target.addresses:
        address = target.addresses[0]
        if url.host != address:
            headers["Host"] = url.netloc.decode("ascii")
            url = url.copy_with(host=f"[{address}]" if ":" in address else address)
            if url.scheme == "https" and target.hostname not in target.addresses:
                extensions["sni_hostname"] = target.hostname

    # The pool keys connections by URL host only. A connection to an IP must not
    # be reused for another hostname whose certificate was never checked on it.
    if url.host in target.addresses:
        headers["Connection"] = "close"

    return client.build_request(
        method,
        url,
        headers=headers,
        content=body,
        timeout=httpx.Timeout(fetch.timeout_s),
        extensions=extensions,
    )


async def _read_bounded(response: httpx.Response, limit: int, url: str) -> bytes:
    """Read the (decoded) response body, refusing anything over ``limit`` bytes."""
    declared = response.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        logger.warning("response_too_large", url=url, declared_size=int(declared), limit=limit)
        raise ResponseTooLargeError(
            details=f"Declared size {declared} bytes exceeds limit of {limit} bytes"
        )

    chunks: list[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > limit:
            logger.warning("response_too_large", url=url, accumulated_size=total, limit=limit)
            raise ResponseTooLargeError(details=f"Response exceeded limit of {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _with_root_path(url: str) -> str:
    """"https://example.com" → "https://example.com/" (what a browser would show)."""
    parts = urlsplit(url)
    if parts.path or not parts.netloc:
        return url
    return urlunsplit(parts._replace(path="/"))


def _network_error(exc: Exception, url: str) -> NetworkError:
    logger.warning(
        "upstream_unavailable",
        url=url,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(details=f"Upstream timed out: {type(exc).__name__}")
    return NetworkError(details=f"{type(exc).__name__}: {exc}")


# ─── Fetch ────────────────────────────────────────────────────────────────────


async def fetch_upstream(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str = "GET",
    body: Optional[bytes] = None,
    content_type: Optional[str] = None,
    config: Optional[Config] = None,
) -> UpstreamResult:
    """Fetch ``url``, following redirects through the guard.

    Args:
        client:       Shared client from app.state.http_client.
        url:          Absolute http(s) URL; validated here (hop 0) like every
                      redirect target.
        method:       Inbound method (probe mode always passes GET).
        body:         Request body to forward, or None.
        content_type: Content type of ``body``.
        config:       Fetch and security settings.

    Returns:
        UpstreamResult for the final 2xx response of the chain.

    Raises:
        ProxyError subclasses as listed in the module docstring.
    """
    config = config or Config.defaults()
    fetch, security = config.fetch, config.security

    current_url = _with_root_path(url)
    current_method = method.upper()
    current_body = body
    current_content_type = content_type

    for hop in range(fetch.max_redirects + 1):
        try:
            target = await resolve_target(current_url, security)
        except ForbiddenError as exc:
            logger.warning("ssrf_blocked", url=current_url, hop=hop, reason=exc.details)
            raise

        request = _build_request(
            client,
            target,
            current_method,
            current_body,
            current_content_type,
            fetch,
            security,
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.InvalidURL as exc:
            raise ValidationError(details=str(exc)) from exc
        except httpx.RequestError as exc:
            raise _network_error(exc, current_url) from exc

        try:
            location = response.headers.get("location")
            if response.status_code in REDIRECT_STATUSES and location:
                next_url = urljoin(current_url, location.strip())
                logger.info(
                    "upstream_redirect",
                    hop=hop + 1,
                    status_code=response.status_code,
                    from_url=current_url,
                    to_url=next_url,
                )
                if response.status_code == 303 or (
                    response.status_code in (301, 302) and current_method not in _SAFE_METHODS
                ):
                    current_method = "GET"
                    current_body = None
                    current_content_type = None
                current_url = _with_root_path(next_url)
                continue

            if not 200 <= response.status_code < 300:
                logger.info(
                    "upstream_error",
                    url=current_url,
                    status_code=response.status_code,
                )
                raise UpstreamHttpError(
                    response.status_code,
                    details=f"Upstream returned HTTP {response.status_code} for {current_url}",
                )

            try:
                payload = await _read_bounded(response, fetch.max_body_bytes, current_url)
            except httpx.RequestError as exc:
                raise _network_error(exc, current_url) from exc

            return UpstreamResult(
                final_url=current_url,
                status_code=response.status_code,
                content_type=response.headers.get("content-type", ""),
                body=payload,
                headers=dict(response.headers),
            )
        finally:
            await response.aclose()

    logger.warning("upstream_unavailable", url=url, error_type="TooManyRedirects")
    raise NetworkError(details=f"Too many redirects (more than {fetch.max_redirects})")
