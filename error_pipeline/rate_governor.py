"""Outbound report throttling using fixed-window counters.

Two independent caps: a global one across all fingerprints and one per
fingerprint. Suppressed reports are never discarded; their counts are
carried into the next admitted report for the same fingerprint.
"""

import logging
import threading
import time
from dataclasses import replace

from error_pipeline.models import Report, Severity

logger = logging.getLogger(__name__)


class WindowCounter:
    """Fixed-window counter for a single key."""

    def __init__(self, max_requests: int, window_seconds: float, time_func=None):
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._time_func = time_func or time.time
        self._count = 0
        self._window_start = self._time_func()

    def _roll(self):
        now = self._time_func()
        if now - self._window_start >= self._window_seconds:
            self._window_start = now
            self._count = 0

    def has_room(self) -> bool:
        self._roll()
        return self._count < self._max_requests

    def take(self):
        self._roll()
        self._count += 1

    def allow(self) -> bool:
        """Return True and consume a slot if the window still has room."""
        if not self.has_room():
            return False
        self._count += 1
        return True


class RateGovernor:
    """Decides which flushed reports may proceed to the durable queue."""

    def __init__(
        self,
        global_cap: int = 120,
        global_window: float = 60.0,
        fingerprint_cap: int = 30,
        fingerprint_window: float = 3600.0,
        time_func=None,
    ):
        self._time_func = time_func or time.time
        self._global = WindowCounter(global_cap, global_window, self._time_func)
        self._fingerprint_cap = fingerprint_cap
        self._fingerprint_window = fingerprint_window
        self._buckets: dict[str, WindowCounter] = {}
        self._suppressed: dict[str, Report] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config, time_func=None) -> "RateGovernor":
        return cls(
            global_cap=config.global_rate_cap,
            global_window=config.global_rate_window,
            fingerprint_cap=config.fingerprint_rate_cap,
            fingerprint_window=config.fingerprint_rate_window,
            time_func=time_func,
        )

    def _bucket(self, fingerprint: str) -> WindowCounter:
        bucket = self._buckets.get(fingerprint)
        if bucket is None:
            bucket = WindowCounter(
                self._fingerprint_cap, self._fingerprint_window, self._time_func
            )
            self._buckets[fingerprint] = bucket
        return bucket

    def admit(self, fingerprint: str, severity: Severity) -> bool:
        """Check both caps and consume a slot in each when allowed.

        Fatal reports skip the per-fingerprint cap but never the global one.
        """
        with self._lock:
            bucket = self._bucket(fingerprint)
            if severity is not Severity.FATAL and not bucket.has_room():
                return False
            if not self._global.allow():
                return False
            bucket.take()
            return True

    def admit_report(self, report: Report) -> Report | None:
        """Admit a flushed report, folding in any count suppressed earlier.

        Returns the report to enqueue, or None when it was suppressed. A
        fatal report refused by the global cap is still returned, flagged
        so the writer evicts an older non-fatal entry to make room.
        """
        with self._lock:
            severity = report.sample_event.severity
            if self.admit(report.fingerprint, severity):
                return self._with_carry(report)
            if severity is Severity.FATAL:
                logger.warning(
                    "Global rate cap reached by fatal report %s, displacing a non-fatal entry",
                    report.fingerprint[:12],
                )
                return self._with_carry(report, displace_non_fatal=True)
            self.suppress(report)
            return None

    def suppress(self, report: Report):
        """Hold a report's count until the fingerprint is admitted again."""
        report = replace(report, displace_non_fatal=False)
        with self._lock:
            carried = self._suppressed.get(report.fingerprint)
            self._suppressed[report.fingerprint] = (
                carried.merged(report) if carried else report
            )

    def release_ready(self) -> list[Report]:
        """Emit carry-overs whose fingerprint window has room again."""
        released = []
        with self._lock:
            for fingerprint in list(self._suppressed):
                carried = self._suppressed[fingerprint]
                if not self.admit(fingerprint, carried.sample_event.severity):
                    continue
                del self._suppressed[fingerprint]
                released.append(carried)
        return released

    def release_all(self) -> list[Report]:
        """Hand back every carry-over regardless of caps (shutdown path)."""
        with self._lock:
            released = list(self._suppressed.values())
            self._suppressed.clear()
        return released

    def suppressed_count(self, fingerprint: str) -> int:
        with self._lock:
            carried = self._suppressed.get(fingerprint)
            return carried.count if carried else 0

    def _with_carry(self, report: Report, displace_non_fatal: bool = False) -> Report:
        carried = self._suppressed.pop(report.fingerprint, None)
        if carried is not None:
            report = report.merged(carried)
        if displace_non_fatal:
            report = replace(report, displace_non_fatal=True)
        return report
