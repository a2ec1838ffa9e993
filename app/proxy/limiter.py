"""Shared rate limiter for the Periscope proxy endpoint.

Uses slowapi (Starlette-compatible rate limiting), keyed by client address.
Periscope normally sits behind a single browser shell on localhost, so the
limit mainly caps runaway pages that fire thousands of subresource loads.

The Limiter instance is created here and shared between:
  - app/proxy/engine.py  (route decorator)
  - app/main.py          (app.state.limiter + SlowAPIMiddleware registration)
"""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

# Requests per client per window on the proxy endpoint (slowapi limit string).
PROXY_RATE_LIMIT = os.getenv("PERISCOPE_RATE_LIMIT", "600/minute")
