"""Tests for the batch uploader."""

import threading

import pytest

from error_pipeline.backoff import Backoff
from error_pipeline.durable_queue import DurableQueue
from error_pipeline.errors import RejectedPayloadError, TransportError
from error_pipeline.metrics import PipelineMetrics
from error_pipeline.transport import ACCEPTED, REJECTED
from error_pipeline.uploader import Uploader

NAMES = ["alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel", "india", "juliet"]


class _NoJitter:
    def uniform(self, low, high):
        return 1.0


class StubClient:
    """Collector double: ``responder(batch)`` returns statuses or raises."""

    def __init__(self, responder=None):
        self.batches = []
        self._responder = responder or (lambda batch: {e.id: ACCEPTED for e in batch})

    def send(self, entries):
        self.batches.append([e.id for e in entries])
        return self._responder(entries)


@pytest.fixture
def queue(tmp_path, clock):
    return DurableQueue(
        str(tmp_path / "queue"),
        max_attempts=3,
        backoff=Backoff(2.0, 300.0, rng=_NoJitter()),
        time_func=clock,
    )


@pytest.fixture
def metrics():
    return PipelineMetrics()


@pytest.fixture
def make_uploader(queue, clock, metrics):
    def _make(client, batch_size=50, max_batches_per_run=20, shutdown=None):
        return Uploader(
            queue,
            client,
            shutdown or threading.Event(),
            batch_size=batch_size,
            max_batches_per_run=max_batches_per_run,
            backoff=Backoff(2.0, 300.0, rng=_NoJitter()),
            metrics=metrics,
            time_func=clock,
        )

    return _make


def _fill(queue, make_report, names=NAMES):
    return [queue.enqueue(make_report(message=name)) for name in names]


class TestHappyPath:
    def test_delivers_everything(self, queue, make_uploader, make_report, metrics):
        _fill(queue, make_report)
        result = make_uploader(StubClient()).run_once()
        assert result.acked == 10
        assert len(queue) == 0
        assert metrics.get("delivered") == 10

    def test_batches_split_by_size(self, queue, make_uploader, make_report):
        _fill(queue, make_report)
        client = StubClient()
        result = make_uploader(client, batch_size=4).run_once()
        assert [len(b) for b in client.batches] == [4, 4, 2]
        assert result.batches == 3

    def test_max_batches_per_run(self, queue, make_uploader, make_report):
        _fill(queue, make_report)
        client = StubClient()
        make_uploader(client, batch_size=2, max_batches_per_run=3).run_once()
        assert len(client.batches) == 3
        assert len(queue) == 4

    def test_empty_queue_sends_nothing(self, make_uploader):
        client = StubClient()
        result = make_uploader(client).run_once()
        assert client.batches == []
        assert result.batches == 0


class TestPartialFailure:
    def test_six_acked_four_retried(self, queue, make_uploader, make_report, clock, metrics):
        entries = _fill(queue, make_report)
        accepted = {e.id for e in entries[:6]}
        client = StubClient(lambda batch: {e.id: ACCEPTED for e in batch if e.id in accepted})

        result = make_uploader(client).run_once()

        assert result.acked == 6
        assert result.retried == 4
        assert len(client.batches) == 1
        remaining = queue.pending()
        assert [e.id for e in remaining] == [e.id for e in entries[6:]]
        for entry in remaining:
            assert entry.attempts == 1
            assert entry.next_retry_at == clock.now + 2.0
        assert metrics.get("delivered") == 6
        assert metrics.get("retried") == 4

    def test_rejected_entries_dead_lettered(self, queue, make_uploader, make_report):
        entries = _fill(queue, make_report, NAMES[:3])
        client = StubClient(lambda batch: {
            entries[0].id: ACCEPTED, entries[1].id: REJECTED, entries[2].id: ACCEPTED,
        })
        result = make_uploader(client).run_once()
        assert result.acked == 2
        assert result.dead_lettered == 1
        assert [e.id for e in queue.dead_letter()] == [entries[1].id]

    def test_whole_batch_rejection_dead_letters_batch(self, queue, make_uploader, make_report, metrics):
        _fill(queue, make_report, NAMES[:3])

        def reject(batch):
            raise RejectedPayloadError("HTTP 400", status_code=400)

        result = make_uploader(StubClient(reject)).run_once()
        assert result.dead_lettered == 3
        assert len(queue) == 0
        assert len(queue.dead_letter()) == 3
        assert metrics.get("dead_lettered") == 3


class TestTransportFailure:
    def test_failure_nacks_and_backs_off(self, queue, make_uploader, make_report, clock):
        _fill(queue, make_report, NAMES[:2])

        def fail(batch):
            raise TransportError("HTTP 503", status_code=503)

        uploader = make_uploader(StubClient(fail))
        result = uploader.run_once()
        assert result.retried == 2
        assert uploader.not_before == clock.now + 2.0
        assert all(e.attempts == 1 for e in queue.pending())

        # inside the backoff window the next run is skipped
        clock.advance(1.0)
        assert uploader.run_once().skipped is True

    def test_backoff_grows_then_resets_on_success(self, queue, make_uploader, make_report, clock):
        _fill(queue, make_report, NAMES[:1])
        outcomes = iter(["fail", "fail", "ok"])

        def flaky(batch):
            if next(outcomes) == "fail":
                raise TransportError("timeout")
            return {e.id: ACCEPTED for e in batch}

        uploader = make_uploader(StubClient(flaky))
        uploader.run_once()
        first_wait = uploader.not_before - clock.now
        clock.advance(first_wait)
        uploader.run_once()
        second_wait = uploader.not_before - clock.now
        assert second_wait == 2 * first_wait

        clock.advance(300)
        result = uploader.run_once()
        assert result.acked == 1
        assert uploader.not_before == 0.0

    def test_repeated_failure_reaches_dead_letter(self, queue, make_uploader, make_report, clock):
        _fill(queue, make_report, NAMES[:1])

        def fail(batch):
            raise TransportError("unreachable")

        uploader = make_uploader(StubClient(fail))
        for _ in range(3):
            uploader.run_once()
            clock.advance(300)

        assert len(queue) == 0
        assert len(queue.dead_letter()) == 1


class TestShutdown:
    def test_no_batches_after_shutdown(self, queue, make_uploader, make_report):
        _fill(queue, make_report)
        shutdown = threading.Event()
        shutdown.set()
        client = StubClient()
        make_uploader(client, shutdown=shutdown).run_once()
        assert client.batches == []

    def test_concurrent_run_skipped(self, queue, make_uploader, make_report):
        _fill(queue, make_report, NAMES[:1])
        entered = threading.Event()
        release = threading.Event()

        def slow(batch):
            entered.set()
            release.wait(5)
            return {e.id: ACCEPTED for e in batch}

        uploader = make_uploader(StubClient(slow))
        worker = threading.Thread(target=uploader.run_once)
        worker.start()
        assert entered.wait(5)
        assert uploader.run_once().skipped is True
        release.set()
        worker.join(5)
        assert len(queue) == 0
