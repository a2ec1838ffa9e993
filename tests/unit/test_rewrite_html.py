"""Unit tests for app/rewrite/html.py and the injected navigation script.

Covers:
  - <base> removal; relative URLs resolve against the fetched page
  - URL attributes, srcset, inline styles, <style> blocks, meta refresh
  - Frame-busting neutralisation in inline scripts and on* handlers
  - Navigation script: injected exactly once, before </body> or at the end
  - Output is UTF-8 whatever the source charset
  - Parser rejection returns the original bytes
"""

from __future__ import annotations

from urllib.parse import quote

import pytest
from bs4 import ParserRejectedMarkup

from app.models.proxy import RewriteContext
from app.rewrite.html import rewrite_html
from app.rewrite.navigation import (
    NAV_SCRIPT_MARKER,
    NAVIGATE_MESSAGE_TYPE,
    build_navigation_script,
)

CTX = RewriteContext(base_url="https://site.example/dir/page.html", proxy_endpoint="/api/proxy")


def _routed(absolute: str) -> str:
    return f"/api/proxy?url={quote(absolute, safe='')}"


def _rewrite(markup: str, ctx: RewriteContext = CTX) -> str:
    return rewrite_html(markup.encode("utf-8"), ctx).decode("utf-8")


# ─── Document structure ───────────────────────────────────────────────────────


class TestBaseElement:
    def test_base_removed(self) -> None:
        out = _rewrite('<html><head><base href="https://cdn.other/"></head><body></body></html>')
        assert "<base" not in out

    def test_relative_links_ignore_removed_base(self) -> None:
        out = _rewrite(
            '<html><head><base href="https://cdn.other/"></head>'
            '<body><a href="next.html">n</a></body></html>'
        )
        assert _routed("https://site.example/dir/next.html") in out
        assert "cdn.other" not in out


# ─── URL-bearing attributes ───────────────────────────────────────────────────


class TestAttributes:
    @pytest.mark.parametrize(
        "markup, absolute",
        [
            ('<a href="next.html">x</a>', "https://site.example/dir/next.html"),
            ('<img src="/img/a.png">', "https://site.example/img/a.png"),
            ('<script src="//cdn.example/app.js"></script>', "https://cdn.example/app.js"),
            ('<link rel="stylesheet" href="s.css">', "https://site.example/dir/s.css"),
            ('<form action="/search"></form>', "https://site.example/search"),
            ('<video poster="p.jpg"></video>', "https://site.example/dir/p.jpg"),
            ('<button formaction="/go">go</button>', "https://site.example/go"),
            ('<iframe src="https://embed.example/x"></iframe>', "https://embed.example/x"),
        ],
    )
    def test_url_attribute_routed(self, markup: str, absolute: str) -> None:
        assert _routed(absolute) in _rewrite(markup)

    def test_anchor_fragment_untouched(self) -> None:
        assert 'href="#section"' in _rewrite('<a href="#section">s</a>')

    def test_javascript_href_neutralised(self) -> None:
        assert 'href="javascript:void(0)"' in _rewrite('<a href="javascript:steal()">x</a>')

    def test_mailto_untouched(self) -> None:
        assert 'href="mailto:a@b.example"' in _rewrite('<a href="mailto:a@b.example">m</a>')

    def test_class_attribute_left_alone(self) -> None:
        assert 'class="nav main"' in _rewrite('<a class="nav main" href="#">x</a>')

    def test_srcset_routed(self) -> None:
        out = _rewrite('<img srcset="a.png 1x, b.png 2x">')
        assert (
            f'srcset="{_routed("https://site.example/dir/a.png")} 1x, '
            f'{_routed("https://site.example/dir/b.png")} 2x"'
        ) in out

    def test_imagesrcset_routed(self) -> None:
        out = _rewrite('<link rel="preload" as="image" imagesrcset="hero.webp 800w">')
        assert f'{_routed("https://site.example/dir/hero.webp")} 800w' in out

    def test_style_attribute_routed(self) -> None:
        out = _rewrite("<div style=\"background:url('bg.png')\"></div>")
        assert f"url('{_routed('https://site.example/dir/bg.png')}')" in out


# ─── Embedded CSS and scripts ─────────────────────────────────────────────────


class TestEmbeddedContent:
    def test_style_block_routed(self) -> None:
        out = _rewrite("<style>body{background:url(/bg.png)}</style>")
        assert f"url({_routed('https://site.example/bg.png')})" in out

    def test_style_block_not_entity_escaped(self) -> None:
        out = _rewrite("<style>a > b { color: red }</style>")
        assert "a > b" in out

    def test_inline_script_frame_buster_neutralised(self) -> None:
        out = _rewrite("<script>if (top !== self) top.location = self.location;</script>")
        assert "if (false) self.location = self.location;" in out

    def test_inline_script_not_entity_escaped(self) -> None:
        out = _rewrite("<script>if (a < b && c) {}</script>")
        assert "if (a < b && c) {}" in out

    def test_module_script_neutralised(self) -> None:
        out = _rewrite('<script type="module">parent.location = "/x";</script>')
        assert 'self.location = "/x";' in out

    def test_non_javascript_script_untouched(self) -> None:
        out = _rewrite('<script type="text/template">top.location</script>')
        assert "top.location" in out

    def test_event_handler_neutralised(self) -> None:
        out = _rewrite("<body onload=\"if (top != self) top.location = 'x'\"></body>")
        assert "if (false) self.location = 'x'" in out


class TestMetaRefresh:
    def test_refresh_target_routed(self) -> None:
        out = _rewrite('<meta http-equiv="refresh" content="0; url=/next">')
        assert f'content="0; url={_routed("https://site.example/next")}"' in out

    def test_quoted_refresh_target(self) -> None:
        out = _rewrite("<meta http-equiv=\"Refresh\" content=\"5;URL='later.html'\">")
        assert _routed("https://site.example/dir/later.html") in out

    def test_plain_reload_untouched(self) -> None:
        assert 'content="30"' in _rewrite('<meta http-equiv="refresh" content="30">')


# ─── Navigation script ────────────────────────────────────────────────────────


class TestNavigationInjection:
    def test_injected_inside_body(self) -> None:
        out = _rewrite("<html><body><p>hi</p></body></html>")
        assert out.count(NAV_SCRIPT_MARKER) == 1
        assert out.index(NAV_SCRIPT_MARKER) < out.index("</body>")
        assert out.index("<p>hi</p>") < out.index(NAV_SCRIPT_MARKER)

    def test_appended_to_fragment_without_body(self) -> None:
        out = _rewrite("<p>fragment</p>")
        assert out.count(NAV_SCRIPT_MARKER) == 1
        assert out.rstrip().endswith("</script>")

    def test_injected_script_not_neutralised(self) -> None:
        out = _rewrite("<html><body></body></html>")
        assert "window.parent" in out

    def test_endpoint_embedded(self) -> None:
        ctx = RewriteContext(base_url="https://site.example/", proxy_endpoint="/custom/proxy")
        assert '"/custom/proxy"' in _rewrite("<body></body>", ctx)

    def test_rewrite_is_idempotent(self) -> None:
        markup = (
            '<html><head><meta http-equiv="refresh" content="9; url=/n"></head>'
            '<body><a href="a.html">a</a><img srcset="x.png 2x">'
            "<style>p{background:url(b.png)}</style>"
            "<script>if (top !== self) top.location = self.location;</script>"
            "</body></html>"
        )
        once = rewrite_html(markup.encode("utf-8"), CTX)
        twice = rewrite_html(once, CTX)
        assert twice == once
        assert twice.decode("utf-8").count(NAV_SCRIPT_MARKER) == 1


class TestNavigationScript:
    def test_posts_navigate_message(self) -> None:
        script = build_navigation_script("/api/proxy")
        assert NAVIGATE_MESSAGE_TYPE == "navigate"
        assert "postMessage({type: \"navigate\", url: url}, '*')" in script
        assert "__PERISCOPE_" not in script

    def test_listens_in_capture_phase(self) -> None:
        script = build_navigation_script("/api/proxy")
        assert "addEventListener('click'" in script
        assert "addEventListener('submit'" in script
        assert script.count("}, true);") == 2

    def test_endpoint_cannot_close_script_element(self) -> None:
        script = build_navigation_script("/p</script><script>alert(1)//")
        assert "</script>" not in script
        assert "\\u003c/script>" in script


# ─── Encoding ─────────────────────────────────────────────────────────────────


class TestEncoding:
    def test_declared_charset_transcoded_to_utf8(self) -> None:
        body = "<html><body><p>café</p></body></html>".encode("iso-8859-1")
        out = rewrite_html(body, CTX, charset="iso-8859-1")
        assert "café".encode("utf-8") in out

    def test_meta_charset_updated(self) -> None:
        body = '<html><head><meta charset="iso-8859-1"></head><body>é</body></html>'.encode(
            "iso-8859-1"
        )
        out = rewrite_html(body, CTX).decode("utf-8")
        assert 'charset="utf-8"' in out
        assert "é" in out

    def test_parser_rejection_returns_original(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _reject(*args, **kwargs):
            raise ParserRejectedMarkup("unparseable")

        monkeypatch.setattr("app.rewrite.html.BeautifulSoup", _reject)
        body = b"<html>\x00\x00</html>"
        assert rewrite_html(body, CTX) is body
