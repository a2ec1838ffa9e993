"""Health utility classes for Periscope.

Provides:
  - FetchLatencyTracker — rolling window of the last 100 upstream fetch
                          durations (avg, p99)
  - OutcomeCounters     — per-outcome request counts since startup
                          ("ok" or a ProxyError kind)

Both live on app.state (created by the lifespan) and are read by /health.
"""

from __future__ import annotations

from collections import Counter, deque

# ─── FetchLatencyTracker ──────────────────────────────────────────────────────


class FetchLatencyTracker:
    """Rolling window of fetch latency measurements (last *window* samples).

    Thread-safety:
        Safe for single-threaded asyncio use (all access from the event loop).

    Usage::

        tracker = FetchLatencyTracker()
        tracker.record(182.4)
        tracker.avg_ms     # rolling average
        tracker.p99_ms     # 0.0 until 10+ samples
    """

    def __init__(self, window: int = 100) -> None:
        self._times: deque[float] = deque(maxlen=window)

    def record(self, duration_ms: float) -> None:
        """Append a sample; the oldest one is evicted once the window is full."""
        self._times.append(duration_ms)

    @property
    def avg_ms(self) -> float:
        if not self._times:
            return 0.0
        return sum(self._times) / len(self._times)

    @property
    def p99_ms(self) -> float:
        """99th percentile; 0.0 with fewer than 10 samples."""
        if len(self._times) < 10:
            return 0.0
        sorted_times = sorted(self._times)
        idx = max(0, int(len(sorted_times) * 0.99) - 1)
        return sorted_times[idx]

    @property
    def count(self) -> int:
        return len(self._times)


# ─── OutcomeCounters ──────────────────────────────────────────────────────────


class OutcomeCounters:
    """Counts finished proxy requests by outcome."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()

    def record(self, outcome: str) -> None:
        self._counts[outcome] += 1

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def snapshot(self) -> dict[str, int]:
        return dict(sorted(self._counts.items()))
