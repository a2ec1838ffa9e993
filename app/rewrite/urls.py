"""URL routing rule shared by the HTML and CSS rewriters.

  route_url("img/a.png", ctx)            → "/api/proxy?url=https%3A%2F%2Fsite%2Fimg%2Fa.png"
  route_url("#top", ctx)                 → "#top"
  route_url("javascript:go()", ctx)      → "javascript:void(0)"
  route_url("/api/proxy?url=...", ctx)   → unchanged (already routed)
"""

from __future__ import annotations

import re
from urllib.parse import quote, urljoin, urlsplit

from app.models.proxy import RewriteContext

# References the browser must keep as-is.
PASSTHROUGH_PREFIXES: tuple[str, ...] = ("#", "data:", "mailto:", "tel:", "about:", "blob:")

JAVASCRIPT_VOID = "javascript:void(0)"

# Browsers drop tab/CR/LF anywhere in a URL, so "java\tscript:" is still javascript:.
_URL_WHITESPACE = re.compile(r"[\t\n\r]")


def is_routed(value: str, ctx: RewriteContext) -> bool:
    """True when ``value`` already points at the proxy endpoint."""
    return value.startswith(ctx.proxy_endpoint + "?")


def route_url(value: str, ctx: RewriteContext) -> str:
    """Resolve ``value`` against the page base and route it through the proxy.

    Returns ``value`` unchanged when it should not (or cannot) be routed.
    """
    stripped = value.strip()
    if not stripped:
        return value

    compact = _URL_WHITESPACE.sub("", stripped).lower()
    if compact.startswith("javascript:"):
        return JAVASCRIPT_VOID
    if compact.startswith(PASSTHROUGH_PREFIXES):
        return value
    if is_routed(stripped, ctx):
        return value

    try:
        absolute = urljoin(ctx.base_url, stripped)
        scheme = urlsplit(absolute).scheme.lower()
    except ValueError:
        return value

    if scheme not in ("http", "https"):
        return value

    return f"{ctx.proxy_endpoint}?url={quote(absolute, safe='')}"


# ─── srcset ───────────────────────────────────────────────────────────────────


def parse_srcset(value: str) -> list[tuple[str, str]]:
    """Split a srcset attribute into ``(url, descriptors)`` candidates.

    The URL is a run of non-whitespace characters (so data: URIs with commas
    survive); descriptors run to the next comma outside parentheses.
    """
    candidates: list[tuple[str, str]] = []
    i, n = 0, len(value)

    while i < n:
        while i < n and (value[i].isspace() or value[i] == ","):
            i += 1
        if i >= n:
            break

        start = i
        while i < n and not value[i].isspace():
            i += 1
        url = value[start:i]

        if url.endswith(","):
            candidates.append((url.rstrip(","), ""))
            continue

        start, depth = i, 0
        while i < n:
            char = value[i]
            if char == "(":
                depth += 1
            elif char == ")" and depth:
                depth -= 1
            elif char == "," and depth == 0:
                break
            i += 1
        candidates.append((url, value[start:i].strip()))
        i += 1

    return candidates


def rewrite_srcset(value: str, ctx: RewriteContext) -> str:
    """Route every candidate URL of a srcset; descriptors are kept verbatim."""
    parts = []
    for url, descriptors in parse_srcset(value):
        routed = route_url(url, ctx)
        parts.append(f"{routed} {descriptors}" if descriptors else routed)
    return ", ".join(parts)
