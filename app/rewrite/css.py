"""Stylesheet rewriting: every url() and @import "…" target is routed.

Quote style is preserved, so ``url('a.png')`` stays single-quoted.
"""

from __future__ import annotations

import re

from app.models.proxy import RewriteContext
from app.rewrite.urls import route_url

_CSS_URL = re.compile(
    r"""url\(\s*(?:"([^"]*)"|'([^']*)'|([^)'"\s]*))\s*\)""",
    re.IGNORECASE,
)

# @import "x.css" / @import 'x.css'; the url() form is matched by _CSS_URL.
_CSS_IMPORT = re.compile(r"""@import\s+(["'])([^"']*)\1""", re.IGNORECASE)


def rewrite_css(css: str, ctx: RewriteContext) -> str:
    def _replace_url(match: re.Match) -> str:
        if match.group(1) is not None:
            quote, value = '"', match.group(1)
        elif match.group(2) is not None:
            quote, value = "'", match.group(2)
        else:
            quote, value = "", match.group(3)
        if not value:
            return match.group(0)
        return f"url({quote}{route_url(value, ctx)}{quote})"

    def _replace_import(match: re.Match) -> str:
        quote, value = match.group(1), match.group(2)
        return f"@import {quote}{route_url(value, ctx)}{quote}"

    css = _CSS_URL.sub(_replace_url, css)
    return _CSS_IMPORT.sub(_replace_import, css)
