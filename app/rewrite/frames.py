"""Frame-busting neutralisation for inline scripts and ``on*`` handlers.

Pages that refuse to be framed typically do one of:

    if (top !== self) top.location = self.location;
    if (window.top != window.self) window.top.location.href = url;
    parent.location.replace(url);

Inside the shell's frame those would navigate the shell away. The rewrite
makes the page believe it is the top-level window:

    top !== self      → false        top === self     → true
    window.top        → window.self
    top.location      → self.location
    parent.location   → self.location

Output contains only ``self`` references, so a second pass is a no-op.
"""

from __future__ import annotations

import re

_COMPARISON = re.compile(
    r"(?<![\w$.])(?:window\.)?(top|self)\s*(===|==|!==|!=)\s*(?:window\.)?(top|self)(?![\w$])"
)
_WINDOW_TOP = re.compile(r"(?<![\w$.])window\.top(?![\w$])")
_TOP_LOCATION = re.compile(r"(?<![\w$.])top\.location(?![\w$])")
_PARENT_LOCATION = re.compile(r"(?<![\w$.])(?:window\.)?parent\.location(?![\w$])")


def _fold_comparison(match: re.Match) -> str:
    left, operator, right = match.groups()
    if left == right:
        return match.group(0)
    return "true" if operator in ("===", "==") else "false"


def neutralize_frame_busting(script: str) -> str:
    script = _COMPARISON.sub(_fold_comparison, script)
    script = _WINDOW_TOP.sub("window.self", script)
    script = _TOP_LOCATION.sub("self.location", script)
    return _PARENT_LOCATION.sub("self.location", script)
