"""URL classifier / normalizer.

Turns whatever the user typed into an absolute URL:

  "https://example.com/a"  → URL, unchanged
  "wikipedia.org"          → URL, "https://wikipedia.org"
  "localhost:8080"         → URL, "https://localhost:8080" (the guard refuses it later)
  "192.168.1.1"            → URL, "https://192.168.1.1"    (ditto)
  "python asyncio tips"    → SEARCH, "https://<engine>/search?q=python%20asyncio%20tips"

This stage never rejects input. Blank input is refused one step earlier by
validate_raw_input(); unsafe targets are refused one step later by the guard.
"""

from __future__ import annotations

import re
from urllib.parse import quote

from app.constants import DEFAULT_SEARCH_ENGINE
from app.models.errors import ValidationError
from app.models.proxy import ClassifiedInput, InputKind

# One or more DNS labels followed by an alphabetic TLD, optional port and path.
_DOMAIN_PATTERN = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}\.?(?::\d{1,5})?(?:[/?#].*)?$",
    re.IGNORECASE,
)

_IPV4_PATTERN = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}(?::\d+)?(?:[/?#].*)?$")

# encodeURIComponent leaves these unescaped.
_URI_COMPONENT_SAFE = "-_.!~*'()"


def validate_raw_input(raw: str | None) -> str:
    """Return ``raw`` trimmed, or raise ValidationError when it is empty."""
    if raw is None or not raw.strip():
        raise ValidationError(details="Please enter a URL or search keywords")
    return raw.strip()


def looks_like_url(text: str) -> bool:
    """True when ``text`` should be fetched rather than searched for."""
    if "://" in text:
        return True
    if text.lower().startswith("localhost"):
        return True
    if _DOMAIN_PATTERN.match(text):
        return True
    return bool(_IPV4_PATTERN.match(text))


def build_search_url(query: str, engine: str = DEFAULT_SEARCH_ENGINE) -> str:
    return f"https://{engine}/search?q={quote(query, safe=_URI_COMPONENT_SAFE)}"


def normalize(raw: str, search_engine: str = DEFAULT_SEARCH_ENGINE) -> ClassifiedInput:
    """Classify ``raw`` and produce an absolute URL for it.

    Args:
        raw:           Non-blank caller input (see validate_raw_input()).
        search_engine: Host used to build search URLs.

    Returns:
        ClassifiedInput with kind URL or SEARCH.
    """
    text = raw.strip()

    if not looks_like_url(text):
        return ClassifiedInput(kind=InputKind.SEARCH, url=build_search_url(text, search_engine))

    if "://" not in text:
        text = "https://" + text

    return ClassifiedInput(kind=InputKind.URL, url=text)
