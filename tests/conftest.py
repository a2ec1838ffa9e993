"""Root test configuration for Periscope.

No test ever touches real DNS: the guard's resolver is replaced for the whole
suite. By default every hostname resolves to a single public documentation-
style address; tests that need a hostname to resolve elsewhere (e.g. to a
private address) add it to the ``fake_dns`` mapping.
"""

from __future__ import annotations

import pytest

FAKE_PUBLIC_IP = "93.184.216.34"


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch: pytest.MonkeyPatch) -> dict[str, list[str]]:
    """Replace app.proxy.guard.resolve_host with a table lookup.

    Returns the (mutable) table: ``fake_dns["host.example"] = ["10.0.0.5"]``.
    Unlisted hostnames resolve to FAKE_PUBLIC_IP.
    """
    table: dict[str, list[str]] = {}

    async def _resolve(hostname: str, port: int) -> list[str]:
        return list(table.get(hostname, [FAKE_PUBLIC_IP]))

    monkeypatch.setattr("app.proxy.guard.resolve_host", _resolve)
    return table


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed when many tests hit the proxy
    endpoint within the same window.
    """
    from app.proxy.limiter import limiter
    try:
        limiter._storage.reset()
    except Exception:
        pass  # Storage may not support reset in all backends
