"""Integration tests for the proxy entry point — probe and passthrough modes.

Test strategy:
  - httpx.MockTransport stands in for every upstream site. Requests are
    pinned to the validated IP, so _MockUpstream routes on the Host header.
  - app.main.create_http_client is patched so the lifespan builds the shared
    client on top of the mock transport.
  - starlette.testclient.TestClient drives lifespan + requests in-process.
  - DNS comes from the conftest ``fake_dns`` table.

Covers:
  - Probe: bare domain → https, rewritten content, finalUrl after redirects,
    search phrases, non-HTML policy
  - Passthrough: HTML / CSS / binary assets, GET form folding, POST form
    forwarding, response header filtering
  - X-Periscope-Request-ID on every response; CORS for the shell origin
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
import pytest
from starlette.testclient import TestClient

from app.config import Config, ProbeConfig, ProxyConfig
from app.constants import REQUEST_ID_HEADER
from app.main import create_app
from app.proxy.fetcher import create_http_client
from app.rewrite.navigation import NAV_SCRIPT_MARKER

ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")

# ─── Fixtures & Helpers ───────────────────────────────────────────────────────


class _MockUpstream:
    """In-process stand-in for any number of upstream sites.

    Routes are keyed by (Host header, path). Unknown routes answer 404.
    Every request is recorded.
    """

    def __init__(self) -> None:
        self.received_requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def add(
        self,
        host: str,
        path: str = "/",
        *,
        status_code: int = 200,
        body: bytes = b"",
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        response_headers = {"content-type": content_type, **(headers or {})}
        self._routes[(host, path)] = lambda request: httpx.Response(
            status_code, content=body, headers=response_headers
        )

    def add_handler(
        self, host: str, path: str, handler: Callable[[httpx.Request], httpx.Response]
    ) -> None:
        self._routes[(host, path)] = handler

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received_requests.append(request)
        route = self._routes.get((request.headers["host"], request.url.path))
        if route is None:
            return httpx.Response(404, content=b"not found", headers={"content-type": "text/plain"})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def request_count(self) -> int:
        return len(self.received_requests)


def _build_test_app(
    upstream: _MockUpstream,
    monkeypatch: pytest.MonkeyPatch,
    config: Optional[Config] = None,
) -> Any:
    """Build a Periscope app whose shared client talks to ``upstream``."""
    monkeypatch.setattr(
        "app.main.create_http_client",
        lambda fetch=None: create_http_client(fetch, transport=upstream.transport),
    )
    return create_app(config or Config.defaults())


def _routed(absolute: str, endpoint: str = "/api/proxy") -> str:
    return f"{endpoint}?url={quote(absolute, safe='')}"


WIKI_HOME = (
    b"<html><head><title>Wikipedia</title>"
    b'<link rel="stylesheet" href="/static/site.css"></head>'
    b'<body><a href="/wiki/Python">Python</a>'
    b'<img src="//upload.wikimedia.org/logo.png">'
    b"<script>if (top !== self) top.location = self.location;</script>"
    b"</body></html>"
)


# ─── Probe mode ───────────────────────────────────────────────────────────────


class TestProbeMode:
    """POST application/json {"url": ...} → JSON envelope."""

    def test_bare_domain_end_to_end(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("wikipedia.org", "/", body=WIKI_HOME, content_type="text/html")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post("/api/proxy", json={"url": "wikipedia.org"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == 200
        assert body["contentType"] == "text/html"
        assert body["finalUrl"] == "https://wikipedia.org/"

        content = body["content"]
        assert f'href="{_routed("https://wikipedia.org/wiki/Python")}"' in content
        assert f'href="{_routed("https://wikipedia.org/static/site.css")}"' in content
        assert f'src="{_routed("https://upload.wikimedia.org/logo.png")}"' in content
        assert "if (false) self.location = self.location;" in content
        assert content.count(NAV_SCRIPT_MARKER) == 1

        assert upstream.request_count == 1
        sent = upstream.received_requests[0]
        assert sent.method == "GET"
        assert sent.url.scheme == "https"

    def test_final_url_follows_redirects(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add(
            "example.com",
            "/",
            status_code=301,
            headers={"location": "https://www.example.com/home"},
        )
        upstream.add("www.example.com", "/home", body=b'<a href="about">About</a>')

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            body = client.post("/api/proxy", json={"url": "example.com"}).json()

        assert body["finalUrl"] == "https://www.example.com/home"
        # Relative links resolve against the final URL, not the typed one.
        assert _routed("https://www.example.com/about") in body["content"]

    def test_search_phrase(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("www.google.com", "/search", body=b"<p>results</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            body = client.post("/api/proxy", json={"url": "python asyncio"}).json()

        assert body["finalUrl"] == "https://www.google.com/search?q=python%20asyncio"
        assert "results" in body["content"]

    def test_full_url_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("plain.example", "/page", body=b"<p>hi</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            body = client.post("/api/proxy", json={"url": "http://plain.example/page"}).json()

        assert body["finalUrl"] == "http://plain.example/page"
        assert upstream.received_requests[0].url.scheme == "http"

    def test_custom_endpoint_used_in_rewrites(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/", body=b'<a href="/x">x</a>')
        config = Config(proxy=ProxyConfig(endpoint="/browse"))

        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            body = client.post("/browse", json={"url": "example.com"}).json()

        assert _routed("https://example.com/x", endpoint="/browse") in body["content"]

    def test_non_html_allowed_when_policy_disabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/notes.txt", body=b"plain notes", content_type="text/plain")
        config = Config(probe=ProbeConfig(html_only=False))

        with TestClient(_build_test_app(upstream, monkeypatch, config)) as client:
            response = client.post("/api/proxy", json={"url": "https://example.com/notes.txt"})

        assert response.status_code == 200
        assert response.json()["content"] == "plain notes"
        assert response.json()["contentType"] == "text/plain"

    def test_upstream_sees_browser_headers_not_caller_headers(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/", body=b"<p>x</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            client.post(
                "/api/proxy",
                json={"url": "example.com"},
                headers={"cookie": "shell_session=secret", "authorization": "Bearer t"},
            )

        sent = upstream.received_requests[0].headers
        assert "cookie" not in sent
        assert "authorization" not in sent
        assert sent["user-agent"].startswith("Mozilla/5.0")


# ─── Passthrough mode ─────────────────────────────────────────────────────────


class TestPassthroughMode:
    """?url=<absolute URL> → raw (rewritten) bytes."""

    def test_html_page(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add(
            "site.example",
            "/dir/page.html",
            body=b'<html><body><a href="next.html">n</a></body></html>',
            content_type="text/html; charset=iso-8859-1",
        )

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(_routed("https://site.example/dir/page.html"))

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/html; charset=utf-8"
        assert _routed("https://site.example/dir/next.html") in response.text
        assert NAV_SCRIPT_MARKER in response.text

    def test_stylesheet(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add(
            "site.example",
            "/static/site.css",
            body=b"body{background:url(../img/bg.png)}",
            content_type="text/css",
        )

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(_routed("https://site.example/static/site.css"))

        assert response.headers["content-type"] == "text/css; charset=utf-8"
        assert response.text == f"body{{background:url({_routed('https://site.example/img/bg.png')})}}"

    def test_binary_asset_byte_identical(self, monkeypatch: pytest.MonkeyPatch) -> None:
        png = b"\x89PNG\r\n\x1a\n" + bytes(range(256))
        upstream = _MockUpstream()
        upstream.add("cdn.example", "/logo.png", body=png, content_type="image/png")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(_routed("https://cdn.example/logo.png"))

        assert response.status_code == 200
        assert response.content == png
        assert response.headers["content-type"] == "image/png"

    def test_script_untouched(self, monkeypatch: pytest.MonkeyPatch) -> None:
        js = b"fetch('/api/data').then(r => r.json());"
        upstream = _MockUpstream()
        upstream.add("site.example", "/app.js", body=js, content_type="application/javascript")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(_routed("https://site.example/app.js"))

        assert response.content == js

    def test_response_headers_filtered(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add(
            "site.example",
            "/",
            body=b"<p>x</p>",
            headers={
                "cache-control": "max-age=300",
                "etag": '"abc"',
                "set-cookie": "sid=1; HttpOnly",
                "x-frame-options": "DENY",
                "content-security-policy": "frame-ancestors 'none'",
            },
        )

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(_routed("https://site.example/"))

        assert response.headers["cache-control"] == "max-age=300"
        assert response.headers["etag"] == '"abc"'
        assert "set-cookie" not in response.headers
        assert "x-frame-options" not in response.headers
        assert "content-security-policy" not in response.headers

    def test_get_form_fields_folded_into_target(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("site.example", "/search", body=b"<p>results</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.get(
                "/api/proxy",
                params={"url": "https://site.example/search?lang=en", "q": "hello world"},
            )

        assert response.status_code == 200
        sent = upstream.received_requests[0]
        assert sent.url.params["lang"] == "en"
        assert sent.url.params["q"] == "hello world"

    def test_post_form_forwarded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("site.example", "/login", body=b"<p>welcome</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post(
                _routed("https://site.example/login"),
                content=b"user=alice&note=hi+there",
                headers={"content-type": "application/x-www-form-urlencoded"},
            )

        assert response.status_code == 200
        sent = upstream.received_requests[0]
        assert sent.method == "POST"
        assert sent.content == b"user=alice&note=hi+there"
        assert sent.headers["content-type"] == "application/x-www-form-urlencoded"

    def test_post_redirect_after_submit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("site.example", "/login", status_code=303, headers={"location": "/home"})
        upstream.add("site.example", "/home", body=b"<p>home</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post(
                _routed("https://site.example/login"),
                content=b"user=alice",
                headers={"content-type": "application/x-www-form-urlencoded"},
            )

        assert response.status_code == 200
        assert "home" in response.text
        assert [r.method for r in upstream.received_requests] == ["POST", "GET"]

    def test_json_post_with_url_param_is_passthrough(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add(
            "api.example",
            "/items",
            body=b'{"ok": true}',
            content_type="application/json",
        )

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post(
                _routed("https://api.example/items"),
                json={"name": "widget"},
            )

        assert response.json() == {"ok": True}
        sent = upstream.received_requests[0]
        assert json.loads(sent.content) == {"name": "widget"}
        assert sent.headers["content-type"] == "application/json"


# ─── Request ID / CORS ────────────────────────────────────────────────────────


class TestRequestIdHeader:
    def test_present_on_probe_success(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/", body=b"<p>x</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post("/api/proxy", json={"url": "example.com"})

        assert ULID_PATTERN.match(response.headers[REQUEST_ID_HEADER])

    def test_present_on_errors_and_unique(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            first = client.post("/api/proxy", json={"url": "192.168.1.1"})
            second = client.get(_routed("http://127.0.0.1/"))

        ids = {first.headers[REQUEST_ID_HEADER], second.headers[REQUEST_ID_HEADER]}
        assert len(ids) == 2
        assert all(ULID_PATTERN.match(i) for i in ids)


class TestCors:
    def test_preflight_from_shell_origin(self, monkeypatch: pytest.MonkeyPatch) -> None:
        with TestClient(_build_test_app(_MockUpstream(), monkeypatch)) as client:
            response = client.options(
                "/api/proxy",
                headers={
                    "origin": "http://localhost:5000",
                    "access-control-request-method": "POST",
                    "access-control-request-headers": "content-type",
                },
            )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5000"

    def test_unknown_origin_not_allowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/", body=b"<p>x</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post(
                "/api/proxy",
                json={"url": "example.com"},
                headers={"origin": "https://evil.example"},
            )

        assert "access-control-allow-origin" not in response.headers

    def test_request_id_exposed_to_shell(self, monkeypatch: pytest.MonkeyPatch) -> None:
        upstream = _MockUpstream()
        upstream.add("example.com", "/", body=b"<p>x</p>")

        with TestClient(_build_test_app(upstream, monkeypatch)) as client:
            response = client.post(
                "/api/proxy",
                json={"url": "example.com"},
                headers={"origin": "http://localhost:5000"},
            )

        exposed = response.headers["access-control-expose-headers"].lower()
        assert REQUEST_ID_HEADER.lower() in exposed
