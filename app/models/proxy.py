"""Data contracts flowing through the proxy pipeline.

All of these are created per request and discarded once the response is sent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, field_validator


class ProbeRequest(BaseModel):
    """Probe body sent by the browser shell: ``{"url": "..."}``.

    ``url`` is whatever the user typed — a search phrase, a bare domain, or a
    full URL. Whitespace-only input is rejected here, before classification.
    """

    url: str

    @field_validator("url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Please enter a URL or search keywords")
        return value


class InputKind(str, Enum):
    URL = "url"
    SEARCH = "search"


@dataclass(frozen=True)
class ClassifiedInput:
    """Classifier output: an absolute http(s)-looking URL and how it was derived."""

    kind: InputKind
    url: str


@dataclass(frozen=True)
class ResolvedTarget:
    """A URL that has passed the SSRF guard.

    ``addresses`` lists the validated IPs the hostname resolved to (a single
    entry for IP literals, empty when DNS resolution is disabled). The fetcher
    connects to ``addresses[0]`` when pinning is enabled.
    """

    absolute_url: str
    scheme: str
    hostname: str
    port: int
    addresses: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpstreamResult:
    """Successful upstream retrieval.

    ``final_url`` is the last URL of the redirect chain, already re-validated
    by the guard; it becomes the rewrite base.
    """

    final_url: str
    status_code: int
    content_type: str
    body: bytes = field(repr=False)
    headers: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class RewriteContext:
    """Immutable inputs for one rewrite pass."""

    base_url: str
    proxy_endpoint: str
