"""Folds repeated failures into counted reports per fingerprint.

One open AggregateRecord per fingerprint inside a tumbling window. Records
live in lock stripes keyed by fingerprint hash, so contention on one
fingerprint never blocks submissions for unrelated ones. The on_flush
callback is always invoked OUTSIDE the stripe lock and must not block on
disk or network.
"""

import logging
import threading
import time
import zlib
from typing import Callable

from error_pipeline.models import AggregateRecord, ErrorEvent, Report

logger = logging.getLogger(__name__)


class _Stripe:
    __slots__ = ("lock", "records")

    def __init__(self):
        self.lock = threading.Lock()
        self.records: dict[str, AggregateRecord] = {}


class Aggregator:
    def __init__(
        self,
        on_flush: Callable[[Report, str], None],
        window_seconds: float = 60.0,
        max_count: int = 1000,
        stripes: int = 16,
        time_func=None,
    ):
        self._on_flush = on_flush
        self._window_seconds = window_seconds
        self._max_count = max_count
        self._time_func = time_func or time.time
        self._stripes = [_Stripe() for _ in range(stripes)]

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def _stripe(self, fingerprint: str) -> _Stripe:
        return self._stripes[zlib.crc32(fingerprint.encode()) % len(self._stripes)]

    def submit(self, event: ErrorEvent):
        """Count an event against its fingerprint's open window.

        Fatal events bypass aggregation and are flushed immediately as a
        single-occurrence report.
        """
        if event.fatal:
            self._safe_flush(Report.from_event(event), "fatal")
            return

        now = self._time_func()
        stripe = self._stripe(event.fingerprint)
        to_flush: list[tuple[Report, str]] = []

        with stripe.lock:
            record = stripe.records.get(event.fingerprint)
            if record is not None and now - record.window_start >= self._window_seconds:
                to_flush.append((record.to_report(), "window"))
                record = None

            if record is None:
                record = AggregateRecord(
                    fingerprint=event.fingerprint,
                    sample_event=event,
                    window_start=now,
                )
                stripe.records[event.fingerprint] = record
            else:
                record.add(event)

            if record.count >= self._max_count:
                del stripe.records[event.fingerprint]
                to_flush.append((record.to_report(), "max_count"))

        for report, trigger in to_flush:
            self._safe_flush(report, trigger)

    def sweep(self) -> int:
        """Flush every record whose window has elapsed. Returns the number flushed."""
        now = self._time_func()
        expired: list[Report] = []
        for stripe in self._stripes:
            with stripe.lock:
                for fingerprint, record in list(stripe.records.items()):
                    if now - record.window_start >= self._window_seconds:
                        del stripe.records[fingerprint]
                        expired.append(record.to_report())

        for report in expired:
            self._safe_flush(report, "window")
        return len(expired)

    def flush_all(self) -> int:
        """Close every open record regardless of window (shutdown hook)."""
        closed: list[Report] = []
        for stripe in self._stripes:
            with stripe.lock:
                closed.extend(r.to_report() for r in stripe.records.values())
                stripe.records.clear()

        for report in closed:
            self._safe_flush(report, "shutdown")
        return len(closed)

    def open_records(self) -> list[AggregateRecord]:
        records = []
        for stripe in self._stripes:
            with stripe.lock:
                records.extend(stripe.records.values())
        return records

    def _safe_flush(self, report: Report, trigger: str):
        """Invoke on_flush so that a failing callback never breaks submission."""
        try:
            self._on_flush(report, trigger)
            logger.debug(
                "Flushed %s x%d (%s)", report.fingerprint[:12], report.count, trigger
            )
        except Exception:
            logger.exception(
                "on_flush callback failed for fingerprint %s", report.fingerprint[:12]
            )
