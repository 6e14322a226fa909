"""Wires capture, aggregation, throttling, persistence and upload.

Capture callers only normalize and count in memory. Reports leave the
aggregator through the rate governor onto an intake that a single writer
thread drains into the durable queue, so no capture path ever blocks on
disk or network. Recurring sweep/upload work runs on an APScheduler
background scheduler.
"""

import atexit
import logging
import queue
import threading
import time
from datetime import datetime, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from error_pipeline.aggregator import Aggregator
from error_pipeline.alerting import AlertEvaluator
from error_pipeline.backoff import Backoff
from error_pipeline.capture import CaptureRegistry, import_crash_reports, payload_from_exception
from error_pipeline.config import PipelineConfig
from error_pipeline.diagnostics import get_internal_logger, pipeline_guard
from error_pipeline.durable_queue import DurableQueue
from error_pipeline.errors import CapacityExceededError, MalformedCaptureError, PersistenceError
from error_pipeline.metrics import PipelineMetrics, report_metrics
from error_pipeline.models import ErrorEvent, Report, Source, new_id
from error_pipeline.normalizer import EventNormalizer
from error_pipeline.rate_governor import RateGovernor
from error_pipeline.transport import CollectorClient
from error_pipeline.uploader import Uploader

logger = logging.getLogger(__name__)
internal = get_internal_logger()

_STOP = object()


class ErrorPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        client=None,
        session_id: str | None = None,
        time_func=None,
    ):
        self._config = config
        self._time_func = time_func or time.time
        self.session_id = session_id or new_id()

        self.metrics = PipelineMetrics()
        self.normalizer = EventNormalizer(config, self.session_id, self._time_func)
        self.governor = RateGovernor.from_config(config, self._time_func)
        self.evaluator = AlertEvaluator.from_config(config, self._time_func)
        self.evaluator.record_session_start(self.session_id)
        self.aggregator = Aggregator(
            self._on_aggregate_flush,
            window_seconds=config.aggregation_window,
            max_count=config.max_aggregate_count,
            time_func=self._time_func,
        )
        self.queue = DurableQueue.from_config(config, self._time_func)

        self._client = client or CollectorClient.from_config(config)
        self._shutdown = threading.Event()
        self.uploader = Uploader(
            self.queue,
            self._client,
            self._shutdown,
            batch_size=config.batch_size,
            max_batches_per_run=config.max_batches_per_run,
            backoff=Backoff(config.backoff_base, config.backoff_cap),
            metrics=self.metrics,
            time_func=self._time_func,
        )

        # SimpleQueue.put is reentrant, so signal handlers may use it
        self._intake: queue.SimpleQueue = queue.SimpleQueue()
        # held around queue writes; stop() can overlap a writer that outlived its join
        self._store_lock = threading.Lock()
        self._writer: threading.Thread | None = None
        self._scheduler: BackgroundScheduler | None = None
        self._started = False
        self._stopped = False

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    # ------------------------------------------------------------------
    # Capture entry points (never raise)
    # ------------------------------------------------------------------

    def capture(self, raw) -> ErrorEvent | None:
        """Normalize and submit one raw payload. Returns the event, or None if dropped.

        A fatal capture waits (bounded) until its report is persisted,
        since the process may be about to die.
        """
        with pipeline_guard() as entered:
            if not entered:
                return None
            try:
                event = self.normalizer.normalize(raw)
            except MalformedCaptureError as exc:
                self.metrics.incr("malformed")
                internal.warning("Dropping malformed capture: %s", exc)
                return None
            except Exception:
                self.metrics.incr("malformed")
                internal.exception("Normalizing capture failed, dropping it")
                return None
            try:
                self.metrics.incr("captured")
                self.aggregator.submit(event)
                if event.fatal and self._writer_alive():
                    self.wait_idle(self._config.fatal_flush_timeout)
            except Exception:
                internal.exception("Failed to submit event %s", event.id)
                return None
            return event

    def capture_deferred(self, raw) -> ErrorEvent | None:
        """Signal-handler path: normalize, hand to the writer, wait for persistence.

        Takes no locks; aggregation happens on the writer thread.
        """
        try:
            event = self.normalizer.normalize(raw)
        except MalformedCaptureError as exc:
            internal.warning("Dropping malformed capture: %s", exc)
            return None
        except Exception:
            internal.exception("Normalizing deferred capture failed, dropping it")
            return None
        if not self._writer_alive():
            return self.capture(raw)
        try:
            self._intake.put(("event", event))
            self.wait_idle(self._config.fatal_flush_timeout)
        except Exception:
            internal.exception("Failed to hand off deferred event %s", event.id)
            return None
        return event

    def capture_exception(
        self,
        exc: BaseException,
        source: Source = Source.SCRIPT_GLOBAL,
        severity=None,
        context: dict | None = None,
    ) -> ErrorEvent | None:
        return self.capture(payload_from_exception(exc, source, severity, context))

    def attach(self, capture_registry: CaptureRegistry):
        """Register this pipeline as a capture callback."""
        capture_registry.add_handler(self.capture, deferred=self.capture_deferred)

    def import_crash_reports(self, directory: str) -> int:
        imported = import_crash_reports(directory, self.capture)
        if imported:
            logger.info("Imported %d crash reports from %s", imported, directory)
        return imported

    # ------------------------------------------------------------------
    # Flush path
    # ------------------------------------------------------------------

    def _on_aggregate_flush(self, report: Report, trigger: str):
        self.metrics.incr("aggregated", report.count)
        intent = self.evaluator.observe(
            report.fingerprint,
            report.count,
            self._config.aggregation_window,
            report.sample_event,
        )
        if intent is not None:
            self.metrics.incr("alerts")
        admitted = self.governor.admit_report(report)
        if admitted is None:
            self.metrics.incr("suppressed", report.count)
            return
        self._handoff(admitted)

    def _handoff(self, report: Report):
        if self._stopped or not self._writer_alive() or threading.current_thread() is self._writer:
            self._store(report)
            return
        if self._intake.qsize() >= self._config.handoff_capacity:
            self.governor.suppress(report)
            self.metrics.incr("suppressed", report.count)
            internal.warning(
                "Hand-off full (%d), holding %s x%d for later",
                self._config.handoff_capacity, report.fingerprint[:12], report.count,
            )
            return
        self._intake.put(("report", report))

    def _store(self, report: Report):
        try:
            with self._store_lock:
                entry = self.queue.enqueue(report)
        except CapacityExceededError as exc:
            self.governor.suppress(report)
            self.metrics.incr("suppressed", report.count)
            internal.warning("Report %s held back: %s", report.fingerprint[:12], exc)
            return
        except PersistenceError:
            self.metrics.incr("dropped")
            internal.critical(
                "Durable queue write failed, report %s x%d lost",
                report.fingerprint[:12], report.count, exc_info=True,
            )
            return
        self.metrics.incr("enqueued")
        if entry.fatal:
            self.trigger_upload()

    def _writer_alive(self) -> bool:
        return self._writer is not None and self._writer.is_alive()

    def _writer_loop(self):
        while True:
            item = self._intake.get()
            if item is _STOP:
                return
            kind, payload = item
            try:
                if kind == "event":
                    self.metrics.incr("captured")
                    self.aggregator.submit(payload)
                elif kind == "report":
                    self._store(payload)
                elif kind == "marker":
                    payload.set()
            except Exception:
                internal.exception("Writer failed on %s item", kind)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until everything handed off so far is persisted."""
        if not self._writer_alive() or threading.current_thread() is self._writer:
            return True
        marker = threading.Event()
        self._intake.put(("marker", marker))
        return marker.wait(timeout)

    # ------------------------------------------------------------------
    # Recurring work
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Close expired windows and release suppressed counts that fit again."""
        flushed = self.aggregator.sweep()
        for report in self.governor.release_ready():
            self._handoff(report)
        return flushed

    def upload_now(self):
        return self.uploader.run_once()

    def trigger_upload(self):
        if self._scheduler is None or not self.running:
            return
        try:
            self._scheduler.modify_job("upload", next_run_time=datetime.now(timezone.utc))
        except JobLookupError:
            pass

    def _run_job(self, job):
        try:
            job()
        except Exception:
            internal.exception("Scheduled job %s failed", getattr(job, "__name__", job))

    def _report_metrics(self):
        report_metrics(self.metrics, queue_depth=len(self.queue))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._started:
            return
        self._started = True
        self._writer = threading.Thread(
            target=self._writer_loop, name="error-pipeline-writer", daemon=True
        )
        self._writer.start()

        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self._run_job, "interval", args=[self.sweep],
            seconds=self._config.sweep_interval, id="sweep",
            max_instances=1, coalesce=True,
        )
        self._scheduler.add_job(
            self._run_job, "interval", args=[self.upload_now],
            seconds=self._config.upload_interval, id="upload",
            max_instances=1, coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        if self._config.metrics_interval > 0:
            self._scheduler.add_job(
                self._run_job, "interval", args=[self._report_metrics],
                seconds=self._config.metrics_interval, id="metrics",
                max_instances=1, coalesce=True,
            )
        self._scheduler.start()
        atexit.register(self.stop)
        logger.info(
            "Error pipeline started: session=%s queue=%s pending=%d",
            self.session_id, self.queue.directory, len(self.queue),
        )

    def stop(self, timeout: float = 5.0):
        """Flush everything to disk and stop background work.

        Nothing in flight is acknowledged on the way out; unsent entries
        stay queued for the next start.
        """
        if self._stopped:
            return
        self._stopped = True
        self._shutdown.set()
        atexit.unregister(self.stop)

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
        if self._writer_alive():
            self._intake.put(_STOP)
            self._writer.join(timeout)
            if self._writer.is_alive():
                internal.error(
                    "Writer did not finish within %.1fs, flushing remaining work from %s",
                    timeout, threading.current_thread().name,
                )

        # anything still queued is stored on this thread
        while True:
            try:
                item = self._intake.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                continue
            kind, payload = item
            if kind == "event":
                self.aggregator.submit(payload)
            elif kind == "report":
                self._store(payload)
            elif kind == "marker":
                payload.set()

        if self._writer_alive():
            self._intake.put(_STOP)

        self.aggregator.flush_all()
        for report in self.governor.release_all():
            self._store(report)

        close = getattr(self._client, "close", None)
        if close is not None:
            close()
        logger.info("Error pipeline stopped: pending=%d metrics=%s",
                    len(self.queue), self.metrics.snapshot())
