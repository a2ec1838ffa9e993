"""Content-type routing for the rewriter.

  text/html, application/xhtml+xml                  → HTML rewrite
  text/css                                          → CSS rewrite
  JavaScript, */json, *+json                        → unmodified
  image/*, video/*, audio/*, font/*,
  application/octet-stream                          → unmodified (binary)
  anything else                                     → unmodified (text)

Rewritten HTML and CSS are re-encoded as UTF-8; rewritten_content_type()
reports the matching ``charset=utf-8`` content type.
"""

from __future__ import annotations

import codecs
from enum import Enum
from typing import Optional

from app.models.proxy import RewriteContext
from app.rewrite.css import rewrite_css
from app.rewrite.html import rewrite_html


class ContentCategory(str, Enum):
    HTML = "html"
    CSS = "css"
    SCRIPT = "script"
    BINARY = "binary"
    TEXT = "text"


_HTML_TYPES = frozenset({"text/html", "application/xhtml+xml"})
_SCRIPT_TYPES = frozenset(
    {
        "application/javascript",
        "application/x-javascript",
        "application/ecmascript",
        "text/javascript",
        "text/ecmascript",
    }
)
_BINARY_PREFIXES = ("image/", "video/", "audio/", "font/")


def parse_content_type(content_type: Optional[str]) -> tuple[str, Optional[str]]:
    """Split a Content-Type header into ``(mime, charset)``.

    ``mime`` is lower-cased; ``charset`` is None when absent or unknown to
    Python's codec registry.
    """
    if not content_type:
        return "", None

    mime, _, params = content_type.partition(";")
    charset: Optional[str] = None
    for param in params.split(";"):
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset":
            charset = value.strip().strip("\"'") or None
            break

    if charset is not None:
        try:
            codecs.lookup(charset)
        except LookupError:
            charset = None

    return mime.strip().lower(), charset


def classify_content_type(content_type: Optional[str]) -> ContentCategory:
    mime, _ = parse_content_type(content_type)
    if mime in _HTML_TYPES:
        return ContentCategory.HTML
    if mime == "text/css":
        return ContentCategory.CSS
    if mime in _SCRIPT_TYPES or mime.endswith("/json") or mime.endswith("+json"):
        return ContentCategory.SCRIPT
    if mime.startswith(_BINARY_PREFIXES) or mime == "application/octet-stream":
        return ContentCategory.BINARY
    return ContentCategory.TEXT


def decode_text(body: bytes, charset: Optional[str] = None) -> str:
    """Decode ``body`` with ``charset`` (default UTF-8), replacing bad bytes."""
    return body.decode(charset or "utf-8", errors="replace")


def rewrite(body: bytes, content_type: Optional[str], ctx: RewriteContext) -> bytes:
    """Rewrite ``body`` according to its content type.

    HTML and CSS come back UTF-8 encoded; every other category is returned
    byte-for-byte.
    """
    category = classify_content_type(content_type)
    _, charset = parse_content_type(content_type)

    if category is ContentCategory.HTML:
        return rewrite_html(body, ctx, charset)
    if category is ContentCategory.CSS:
        return rewrite_css(decode_text(body, charset), ctx).encode("utf-8")
    return body


def rewritten_content_type(content_type: Optional[str]) -> str:
    """Content type to send with the output of rewrite()."""
    category = classify_content_type(content_type)
    if category in (ContentCategory.HTML, ContentCategory.CSS):
        mime, _ = parse_content_type(content_type)
        return f"{mime}; charset=utf-8"
    return content_type or ""
