"""Thread-safe pipeline counters and periodic reporting."""

import logging
import threading

logger = logging.getLogger(__name__)

COUNTERS = (
    "captured",
    "malformed",
    "aggregated",
    "suppressed",
    "enqueued",
    "dropped",
    "delivered",
    "retried",
    "dead_lettered",
    "alerts",
)


class PipelineMetrics:
    """Thread-safe counters for tracking pipeline throughput and loss."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(COUNTERS, 0)

    def incr(self, name: str, amount: int = 1):
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._counts)

    def snapshot_and_reset(self) -> dict:
        """Atomically read all counters and reset them to zero."""
        with self._lock:
            snapshot = dict(self._counts)
            self._counts = dict.fromkeys(COUNTERS, 0)
            return snapshot


def report_metrics(metrics: PipelineMetrics, queue_depth: int | None = None):
    """Log one summary line; scheduled periodically by the pipeline."""
    snapshot = metrics.snapshot_and_reset()
    summary = " ".join(f"{name}={snapshot[name]}" for name in COUNTERS)
    if queue_depth is not None:
        summary += f" queue_depth={queue_depth}"
    logger.info("[metrics] %s", summary)
