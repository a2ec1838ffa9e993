"""HTML document rewriting.

Parses the upstream page with BeautifulSoup (``html.parser``, tolerant of
broken markup) and applies, in one pass over the tree:

  1. ``<base>`` removal — relative URLs resolve against the fetched URL.
  2. ``src`` / ``href`` / ``action`` / ``poster`` / ``formaction`` routing.
  3. ``srcset`` / ``imagesrcset`` routing, candidate by candidate.
  4. ``style`` attributes and ``<style>`` blocks through the CSS rewriter.
  5. ``<meta http-equiv="refresh">`` target routing.
  6. Frame-busting neutralisation in inline scripts and ``on*`` handlers.
  7. Navigation script injection (once, marked with ``data-periscope-nav``).

Output is always UTF-8; any ``<meta charset>`` declaration is updated to match.
"""

from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup, ParserRejectedMarkup

from app.models.proxy import RewriteContext
from app.rewrite.css import rewrite_css
from app.rewrite.frames import neutralize_frame_busting
from app.rewrite.navigation import NAV_SCRIPT_MARKER, build_navigation_script
from app.rewrite.urls import rewrite_srcset, route_url
from app.utils.logger import get_logger

logger = get_logger(__name__)

URL_ATTRIBUTES: frozenset[str] = frozenset({"src", "href", "action", "poster", "formaction"})
SRCSET_ATTRIBUTES: frozenset[str] = frozenset({"srcset", "imagesrcset"})

# <script type=...> values that hold JavaScript.
_JS_SCRIPT_TYPES: frozenset[str] = frozenset(
    {
        "",
        "module",
        "text/javascript",
        "application/javascript",
        "application/x-javascript",
        "text/ecmascript",
        "application/ecmascript",
    }
)

# "5; url=https://example.com/next" (url= and quotes optional)
_META_REFRESH = re.compile(
    r"""^(\s*\d+(?:\.\d+)?\s*[;,]\s*(?:url\s*=\s*)?)(['"]?)(.*?)\2\s*$""",
    re.IGNORECASE,
)


def _rewrite_attributes(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for tag in soup.find_all(True):
        for name, value in list(tag.attrs.items()):
            if not isinstance(value, str):
                continue
            if name in URL_ATTRIBUTES:
                tag[name] = route_url(value, ctx)
            elif name in SRCSET_ATTRIBUTES:
                tag[name] = rewrite_srcset(value, ctx)
            elif name == "style":
                tag[name] = rewrite_css(value, ctx)
            elif name.startswith("on"):
                tag[name] = neutralize_frame_busting(value)


def _rewrite_meta_refresh(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for meta in soup.find_all("meta"):
        if str(meta.get("http-equiv", "")).strip().lower() != "refresh":
            continue
        content = meta.get("content")
        if not content:
            continue
        match = _META_REFRESH.match(content)
        if match is None or not match.group(3):
            continue
        prefix, quote, target = match.groups()
        meta["content"] = f"{prefix}{quote}{route_url(target, ctx)}{quote}"


def _replace_text(tag, text: str) -> None:
    # Keep the NavigableString subclass (Script / Stylesheet) so the content
    # is still emitted without entity escaping.
    tag.string.replace_with(tag.string.__class__(text))


def _rewrite_style_blocks(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    for style in soup.find_all("style"):
        if style.string:
            _replace_text(style, rewrite_css(str(style.string), ctx))


def _rewrite_inline_scripts(soup: BeautifulSoup) -> None:
    for script in soup.find_all("script"):
        if script.has_attr("src") or script.has_attr(NAV_SCRIPT_MARKER):
            continue
        if str(script.get("type", "")).strip().lower() not in _JS_SCRIPT_TYPES:
            continue
        if script.string:
            _replace_text(script, neutralize_frame_busting(str(script.string)))


def _inject_navigation_script(soup: BeautifulSoup, ctx: RewriteContext) -> None:
    if soup.find("script", attrs={NAV_SCRIPT_MARKER: True}) is not None:
        return
    script = soup.new_tag("script")
    script[NAV_SCRIPT_MARKER] = ""
    script.string = build_navigation_script(ctx.proxy_endpoint)
    (soup.body or soup).append(script)


def rewrite_html(body: bytes, ctx: RewriteContext, charset: Optional[str] = None) -> bytes:
    """Rewrite an HTML document for display inside the shell's frame.

    Args:
        body:    Raw upstream bytes.
        ctx:     Base URL and proxy endpoint.
        charset: Charset from the upstream Content-Type, if declared. When
                 absent the parser sniffs it (BOM, ``<meta charset>``, heuristics).

    Returns:
        UTF-8 encoded document. The original ``body`` is returned unchanged
        when the parser rejects the markup outright.
    """
    try:
        soup = BeautifulSoup(
            body,
            "html.parser",
            multi_valued_attributes=None,
            from_encoding=charset,
        )
    except ParserRejectedMarkup as exc:
        logger.warning("html_parse_rejected", base_url=ctx.base_url, error=str(exc))
        return body

    for base in soup.find_all("base"):
        base.decompose()

    _rewrite_attributes(soup, ctx)
    _rewrite_meta_refresh(soup, ctx)
    _rewrite_style_blocks(soup, ctx)
    _rewrite_inline_scripts(soup)
    _inject_navigation_script(soup, ctx)

    return soup.encode("utf-8")
