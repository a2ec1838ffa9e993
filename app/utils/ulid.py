"""ULID generation utility for Periscope.

Provides `generate_request_id()`, a 26-character ULID used as:
  - X-Periscope-Request-ID response header value
  - request_id field bound into every structured log entry for the request

ULIDs sort by creation time, so log lines for a burst of asset requests
triggered by one page load stay grouped when sorted by id.

Uses the `python-ulid` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_request_id() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, charset ``[0-9A-HJKMNP-TV-Z]``, exactly 26 chars.
    """
    return str(ULID())
