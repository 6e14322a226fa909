"""Crash-safe on-disk queue of pending reports.

Every entry is one JSON file named by its id. Files are written with
atomic writes (tmp + fsync + os.replace), so a crash mid-operation leaves
either the old file or the new one, never a torn one. Layout::

    <directory>/pending/<id>.json   waiting for delivery
    <directory>/dead/<id>.json      exceeded max attempts or rejected

An in-memory index mirrors the directory; reads are served from it and
never touch disk. All mutations go through one writer lock.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import replace

from error_pipeline.backoff import Backoff
from error_pipeline.errors import CapacityExceededError, PersistenceError
from error_pipeline.models import QueueEntry, Report, new_id

logger = logging.getLogger(__name__)


def _fsync_dir(path: str):
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_json(directory: str, filename: str, data: dict):
    fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, os.path.join(directory, filename))
    except Exception:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    _fsync_dir(directory)


class DurableQueue:
    def __init__(
        self,
        directory: str,
        capacity: int = 2000,
        max_attempts: int = 8,
        backoff: Backoff | None = None,
        time_func=None,
    ):
        self._directory = directory
        self._pending_dir = os.path.join(directory, "pending")
        self._dead_dir = os.path.join(directory, "dead")
        self._capacity = capacity
        self._max_attempts = max_attempts
        self._backoff = backoff or Backoff()
        self._time_func = time_func or time.time
        self._lock = threading.Lock()
        self._entries: dict[str, QueueEntry] = {}
        self._dead: dict[str, QueueEntry] = {}
        self._seq = 0
        self._dropped = 0

        try:
            os.makedirs(self._pending_dir, exist_ok=True)
            os.makedirs(self._dead_dir, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create queue directory {directory}: {exc}") from exc
        self._recover()

    @classmethod
    def from_config(cls, config, time_func=None) -> "DurableQueue":
        return cls(
            config.queue_dir,
            capacity=config.queue_capacity,
            max_attempts=config.max_attempts,
            backoff=Backoff(config.backoff_base, config.backoff_cap),
            time_func=time_func,
        )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _load_dir(self, directory: str) -> dict[str, QueueEntry]:
        loaded: dict[str, QueueEntry] = {}
        for name in sorted(os.listdir(directory)):
            path = os.path.join(directory, name)
            if name.endswith(".tmp"):
                # leftover from a write interrupted before os.replace
                os.unlink(path)
                continue
            if not name.endswith(".json"):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    entry = QueueEntry.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.error("Unreadable queue file %s, quarantining: %s", path, exc)
                os.replace(path, path + ".bad")
                continue
            loaded[entry.id] = entry
        return loaded

    def _recover(self):
        self._dead = self._load_dir(self._dead_dir)
        pending = self._load_dir(self._pending_dir)
        for entry_id in list(pending):
            if entry_id in self._dead:
                # crashed between writing the dead copy and removing the pending one
                os.unlink(os.path.join(self._pending_dir, f"{entry_id}.json"))
                del pending[entry_id]
        self._entries = pending
        all_seqs = [e.seq for e in pending.values()] + [e.seq for e in self._dead.values()]
        self._seq = max(all_seqs, default=0)
        if pending or self._dead:
            logger.info(
                "Recovered %d pending and %d dead-letter entries from %s",
                len(pending), len(self._dead), self._directory,
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _persist(self, directory: str, entry: QueueEntry):
        try:
            atomic_write_json(directory, f"{entry.id}.json", entry.to_dict())
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"failed to write entry {entry.id}: {exc}") from exc

    def _remove_file(self, directory: str, entry_id: str):
        try:
            os.unlink(os.path.join(directory, f"{entry_id}.json"))
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise PersistenceError(f"failed to remove entry {entry_id}: {exc}") from exc

    def enqueue(self, report: Report) -> QueueEntry:
        """Persist a report. The entry survives a crash once this returns.

        A report flagged ``displace_non_fatal`` first evicts the oldest
        non-fatal entry and raises CapacityExceededError if there is none.
        At capacity, the oldest non-fatal entries go first, then the oldest
        fatal ones; a non-fatal report never displaces a fatal entry.
        """
        with self._lock:
            if report.displace_non_fatal:
                if not self._evict(1, fatal=False):
                    raise CapacityExceededError(
                        "no non-fatal entry left to displace for fatal report"
                    )
                self._dropped += 1

            overflow = len(self._entries) - self._capacity + 1
            if overflow > 0:
                dropped = self._evict(overflow, fatal=False)
                if dropped < overflow and report.fatal:
                    dropped += self._evict(overflow - dropped, fatal=True)
                self._dropped += dropped
                logger.warning(
                    "Queue at capacity (%d): dropped %d oldest entries, %d dropped in total",
                    self._capacity, dropped, self._dropped,
                )
                if dropped < overflow:
                    raise CapacityExceededError(
                        f"queue holds {self._capacity} fatal entries, refusing non-fatal report"
                    )

            self._seq += 1
            entry = QueueEntry(
                id=new_id(),
                report=report,
                enqueued_at=self._time_func(),
                seq=self._seq,
            )
            self._persist(self._pending_dir, entry)
            self._entries[entry.id] = entry
            return entry

    def _evict(self, count: int, fatal: bool) -> int:
        victims = sorted(
            (e for e in self._entries.values() if e.fatal == fatal),
            key=lambda e: e.seq,
        )[:count]
        for entry in victims:
            self._remove_file(self._pending_dir, entry.id)
            del self._entries[entry.id]
        return len(victims)

    def evict_oldest_non_fatal(self, count: int = 1) -> int:
        with self._lock:
            evicted = self._evict(count, fatal=False)
            self._dropped += evicted
            return evicted

    def ack(self, ids) -> int:
        """Remove delivered entries. Unknown ids are ignored."""
        removed = 0
        with self._lock:
            for entry_id in ids:
                if entry_id not in self._entries:
                    continue
                self._remove_file(self._pending_dir, entry_id)
                del self._entries[entry_id]
                removed += 1
        return removed

    def nack(self, ids, error: str = "") -> list[str]:
        """Reschedule with backoff. Returns ids that hit max attempts and moved to dead-letter."""
        buried = []
        now = self._time_func()
        with self._lock:
            for entry_id in ids:
                entry = self._entries.get(entry_id)
                if entry is None:
                    continue
                attempts = entry.attempts + 1
                if attempts >= self._max_attempts:
                    self._move_to_dead(entry, attempts, error)
                    buried.append(entry_id)
                    continue
                updated = replace(
                    entry,
                    attempts=attempts,
                    next_retry_at=now + self._backoff.delay_for(attempts),
                    last_error=error,
                )
                self._persist(self._pending_dir, updated)
                self._entries[entry_id] = updated
        if buried:
            logger.warning("%d entries exceeded %d attempts, moved to dead-letter",
                           len(buried), self._max_attempts)
        return buried

    def bury(self, ids, error: str = "") -> int:
        """Move entries straight to dead-letter without retrying."""
        moved = 0
        with self._lock:
            for entry_id in ids:
                entry = self._entries.get(entry_id)
                if entry is None:
                    continue
                self._move_to_dead(entry, min(entry.attempts + 1, self._max_attempts), error)
                moved += 1
        return moved

    def _move_to_dead(self, entry: QueueEntry, attempts: int, error: str):
        dead = replace(
            entry,
            attempts=attempts,
            next_retry_at=0.0,
            last_error=error,
        )
        self._persist(self._dead_dir, dead)
        self._remove_file(self._pending_dir, entry.id)
        del self._entries[entry.id]
        self._dead[entry.id] = dead
        self._trim_dead()

    def _trim_dead(self):
        # dead-letter set shares the pending capacity; oldest go first
        overflow = len(self._dead) - self._capacity
        if overflow <= 0:
            return
        oldest = sorted(self._dead.values(), key=lambda e: e.seq)[:overflow]
        for entry in oldest:
            self._remove_file(self._dead_dir, entry.id)
            del self._dead[entry.id]
        self._dropped += overflow
        logger.warning(
            "Dead-letter at capacity (%d): discarded %d oldest entries",
            self._capacity, overflow,
        )

    def requeue_dead(self, ids) -> int:
        """Give dead-lettered entries a fresh set of attempts (manual recovery)."""
        moved = 0
        with self._lock:
            for entry_id in ids:
                dead = self._dead.get(entry_id)
                if dead is None:
                    continue
                revived = replace(dead, attempts=0, next_retry_at=0.0, last_error="")
                self._persist(self._pending_dir, revived)
                self._remove_file(self._dead_dir, entry_id)
                del self._dead[entry_id]
                self._entries[entry_id] = revived
                moved += 1
        return moved

    def purge_dead(self, ids=None) -> int:
        with self._lock:
            targets = list(self._dead) if ids is None else [i for i in ids if i in self._dead]
            for entry_id in targets:
                self._remove_file(self._dead_dir, entry_id)
                del self._dead[entry_id]
            return len(targets)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def peek_batch(self, max_count: int) -> list[QueueEntry]:
        """Entries ready for delivery, fatal first, then FIFO.

        Only the oldest pending entry of each fingerprint is eligible, so
        reports for one fingerprint are delivered strictly in enqueue order.
        """
        now = self._time_func()
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.seq)
        heads: dict[str, QueueEntry] = {}
        for entry in entries:
            heads.setdefault(entry.fingerprint, entry)
        ready = [e for e in heads.values() if e.next_retry_at <= now]
        ready.sort(key=lambda e: (not e.fatal, e.seq))
        return ready[:max_count]

    def get(self, entry_id: str) -> QueueEntry | None:
        with self._lock:
            return self._entries.get(entry_id) or self._dead.get(entry_id)

    def pending(self) -> list[QueueEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.seq)

    def dead_letter(self) -> list[QueueEntry]:
        with self._lock:
            return sorted(self._dead.values(), key=lambda e: e.seq)

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def directory(self) -> str:
        return self._directory

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
