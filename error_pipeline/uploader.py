"""Drains the durable queue to the collector in batches."""

import logging
import threading
import time
from dataclasses import dataclass

from error_pipeline.backoff import Backoff
from error_pipeline.durable_queue import DurableQueue
from error_pipeline.errors import PersistenceError, RejectedPayloadError, TransportError
from error_pipeline.transport import ACCEPTED, REJECTED

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    batches: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: bool = False


class Uploader:
    """Sends ready queue entries and settles each one individually.

    Per entry: ``accepted`` -> ack, ``rejected`` -> dead-letter, anything
    else -> nack. A whole-batch 4xx dead-letters the batch; transport
    errors and 5xx nack it and push the next run out with backoff. Any
    batch with an accepted entry resets the backoff.
    """

    def __init__(
        self,
        queue: DurableQueue,
        client,
        shutdown_event: threading.Event,
        batch_size: int = 50,
        max_batches_per_run: int = 20,
        backoff: Backoff | None = None,
        metrics=None,
        time_func=None,
    ):
        self._queue = queue
        self._client = client
        self._shutdown = shutdown_event
        self._batch_size = batch_size
        self._max_batches = max_batches_per_run
        self._backoff = backoff or Backoff()
        self._metrics = metrics
        self._time_func = time_func or time.time
        self._not_before = 0.0
        self._run_lock = threading.Lock()

    @property
    def not_before(self) -> float:
        return self._not_before

    def run_once(self) -> UploadResult:
        """Upload batches until the queue has nothing ready or a batch fails."""
        result = UploadResult()
        if not self._run_lock.acquire(blocking=False):
            result.skipped = True
            return result
        try:
            if self._time_func() < self._not_before:
                logger.debug("Upload backing off for %.1fs", self._not_before - self._time_func())
                result.skipped = True
                return result

            while result.batches < self._max_batches and not self._shutdown.is_set():
                batch = self._queue.peek_batch(self._batch_size)
                if not batch:
                    break
                result.batches += 1
                if not self._send_batch(batch, result):
                    break
        except PersistenceError:
            logger.critical("Queue write failed while settling a batch", exc_info=True)
        finally:
            self._run_lock.release()

        if result.batches:
            logger.info(
                "Upload run: %d batch(es), acked=%d retried=%d dead_lettered=%d",
                result.batches, result.acked, result.retried, result.dead_lettered,
            )
        return result

    def _send_batch(self, batch, result: UploadResult) -> bool:
        ids = [entry.id for entry in batch]
        try:
            statuses = self._client.send(batch)
        except RejectedPayloadError as exc:
            logger.error("Batch of %d rejected, dead-lettering: %s", len(batch), exc)
            result.dead_lettered += self._queue.bury(ids, error=str(exc))
            self._record("dead_lettered", len(batch))
            return True
        except TransportError as exc:
            delay = self._backoff.next_delay()
            self._not_before = self._time_func() + delay
            logger.warning(
                "Batch of %d failed (%s), next upload in %.1fs", len(batch), exc, delay
            )
            self._settle_retries(ids, str(exc), result)
            return False

        accepted = [i for i in ids if statuses.get(i) == ACCEPTED]
        rejected = [i for i in ids if statuses.get(i) == REJECTED]
        retry = [i for i in ids if i not in accepted and i not in rejected]

        result.acked += self._queue.ack(accepted)
        self._record("delivered", len(accepted))
        if rejected:
            result.dead_lettered += self._queue.bury(rejected, error="rejected by collector")
            self._record("dead_lettered", len(rejected))
        if retry:
            self._settle_retries(retry, "not acknowledged by collector", result)

        if accepted:
            self._backoff.reset()
            self._not_before = 0.0
        return not retry

    def _settle_retries(self, ids, error: str, result: UploadResult):
        buried = self._queue.nack(ids, error=error)
        result.retried += len(ids) - len(buried)
        result.dead_lettered += len(buried)
        self._record("retried", len(ids) - len(buried))
        self._record("dead_lettered", len(buried))

    def _record(self, counter: str, amount: int):
        if self._metrics is not None and amount:
            self._metrics.incr(counter, amount)
