"""Observability: counters/timers for the engine and scheduler, plus run summary logging."""

import time
from contextlib import contextmanager
from typing import Any

import structlog

logger = structlog.get_logger().bind(source="observability")

# Keep the newest N samples per timer
MAX_TIMER_SAMPLES = 100


class Metrics:
    """Simple dict-based metrics collector for counters and timers."""

    def __init__(self, max_samples: int = MAX_TIMER_SAMPLES):
        self._counters: dict[str, int] = {}
        self._timers: dict[str, list[float]] = {}
        self._max_samples = max_samples

    def counter(self, name: str, value: int = 1):
        """Increment a counter by the given value."""
        self._counters[name] = self._counters.get(name, 0) + value

    def get(self, name: str) -> int:
        """Current value of a counter (0 if never incremented)."""
        return self._counters.get(name, 0)

    @contextmanager
    def timer(self, name: str):
        """Context manager to time an operation and store duration."""
        start = time.perf_counter()
        try:
            yield
        finally:
            samples = self._timers.setdefault(name, [])
            samples.append(time.perf_counter() - start)
            if len(samples) > self._max_samples:
                del samples[0]

    def hit_rate(self, hits: str, misses: str) -> float:
        """Ratio hits / (hits + misses), 0.0 when nothing was recorded."""
        total = self.get(hits) + self.get(misses)
        return self.get(hits) / total if total else 0.0

    def summary(self) -> dict[str, Any]:
        """Return a summary of all collected metrics."""
        timer_summary = {}
        for name, durations in self._timers.items():
            if durations:
                timer_summary[name] = {
                    "count": len(durations),
                    "avg": sum(durations) / len(durations),
                    "min": min(durations),
                    "max": max(durations),
                }
            else:
                timer_summary[name] = {"count": 0}

        return {
            "counters": dict(self._counters),
            "timers": timer_summary,
        }

    def reset(self):
        """Clear all metrics."""
        self._counters.clear()
        self._timers.clear()


# Module-level collector; components hold no other process-wide state
metrics = Metrics()


def log_run_summary():
    """Log the current metrics summary via structlog."""
    summary = metrics.summary()
    logger.info(
        "run_summary",
        cache_hit_rate=round(metrics.hit_rate("engine.cache_hits", "engine.cache_misses"), 3),
        **summary,
    )
