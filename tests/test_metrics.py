"""Tests for pipeline metrics."""

import logging
import threading

from error_pipeline.metrics import COUNTERS, PipelineMetrics, report_metrics


def test_all_counters_start_at_zero():
    snapshot = PipelineMetrics().snapshot()
    assert set(snapshot) == set(COUNTERS)
    assert all(v == 0 for v in snapshot.values())


def test_incr_and_get():
    metrics = PipelineMetrics()
    metrics.incr("delivered")
    metrics.incr("delivered", 4)
    assert metrics.get("delivered") == 5


def test_snapshot_and_reset():
    metrics = PipelineMetrics()
    metrics.incr("captured", 3)
    assert metrics.snapshot_and_reset()["captured"] == 3
    assert metrics.get("captured") == 0


def test_thread_safety():
    metrics = PipelineMetrics()

    def worker():
        for _ in range(1000):
            metrics.incr("enqueued")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert metrics.get("enqueued") == 4000


def test_report_metrics_logs_and_resets(caplog):
    metrics = PipelineMetrics()
    metrics.incr("dropped", 2)
    with caplog.at_level(logging.INFO, logger="error_pipeline.metrics"):
        report_metrics(metrics, queue_depth=7)
    assert "dropped=2" in caplog.text
    assert "queue_depth=7" in caplog.text
    assert metrics.get("dropped") == 0
