"""Persistence Writer for Audit Records.

This module writes audit records to an AuditStorePort with bounded, linearly
increasing backoff, publishes committed/failed notifications, and keeps
exhausted batches in a bounded dead-letter queue for later replay.

Security Impact:
    - Audit durability is best-effort: a failing store never blocks or fails
      the business transaction that produced the records
    - Dropped records are always counted and reported, never silently lost
    - Store writes are idempotent on audit_id, so re-attempting a batch never
      duplicates the records already persisted

Architecture:
    - Infrastructure layer component behind the TransactionCoordinator
    - Async mode runs writes (and their backoff waits) on a ThreadPoolExecutor,
      off the caller's thread; sync mode writes inline
    - Observers subscribe with add_commit_listener()/add_failure_listener()
"""

import logging
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Callable, Optional, Sequence, Union

from src.domain.cdc_models import AuditRecord, utc_now
from src.domain.guardrails import AuditMetrics, RetryPolicy
from src.domain.ports import AuditStorePort, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditLogCommittedEvent:
    """A single audit record reached the store."""
    record: AuditRecord
    committed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AuditLogsCommittedEvent:
    """A batch of audit records reached the store, in order."""
    records: tuple[AuditRecord, ...]
    committed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AuditWriteFailedEvent:
    """A batch was given up after exhausting retries."""
    records: tuple[AuditRecord, ...]
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=utc_now)


CommitEvent = Union[AuditLogCommittedEvent, AuditLogsCommittedEvent]
CommitListener = Callable[[CommitEvent], None]
FailureListener = Callable[[AuditWriteFailedEvent], None]


class PersistenceWriter:
    """Retrying writer in front of an audit store.

    Parameters:
        store: Audit store to write to
        retry_policy: Retry count and backoff unit
        metrics: Pipeline counters
        async_mode: Run writes on background workers
        max_workers: Background worker threads (async mode)
        dead_letter_capacity: Exhausted batches retained for replay; the
            oldest batch is evicted when full
        sleep: Wait function used between retries

    Example Usage:
        ```python
        writer = PersistenceWriter(store, RetryPolicy(max_retries=3), async_mode=True)
        writer.add_commit_listener(lambda event: print(event))
        writer.submit([record])        # returns immediately
        writer.shutdown(timeout=5.0)
        ```
    """

    def __init__(
        self,
        store: AuditStorePort,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[AuditMetrics] = None,
        async_mode: bool = True,
        max_workers: int = 2,
        dead_letter_capacity: int = 1000,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or AuditMetrics()
        self.async_mode = async_mode
        self._sleep = sleep

        self._executor: Optional[ThreadPoolExecutor] = None
        if async_mode:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit-writer")
        self._pending: set[Future] = set()
        self._lock = Lock()
        self._closed = False

        self._dead_letters: deque[tuple[AuditRecord, ...]] = deque()
        self._dead_letter_capacity = dead_letter_capacity

        self._commit_listeners: list[CommitListener] = []
        self._failure_listeners: list[FailureListener] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._commit_listeners.append(listener)

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def _publish(self, listeners: Sequence[Callable], event: object) -> None:
        for listener in list(listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Audit event listener failed for {type(event).__name__}: {str(e)}", exc_info=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def submit(self, records: Sequence[AuditRecord]) -> Optional[Future]:
        """Hand records to the writer without waiting for the store.

        In async mode the write runs on a background worker and its Future is
        returned; otherwise (or after shutdown) the write runs inline and None
        is returned.
        """
        batch = tuple(records)
        if not batch:
            return None

        future: Optional[Future] = None
        with self._lock:
            if self._executor is not None and not self._closed:
                future = self._executor.submit(self._write_records, batch)
                self._pending.add(future)

        if future is None:
            self._write_records(batch)
            return None
        # runs inline if the write already finished, so outside the lock
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _write_records(self, batch: tuple[AuditRecord, ...], replay: bool = False) -> bool:
        if len(batch) == 1:
            record = batch[0]
            return self._write_with_retry(batch, lambda: self.store.save(record), replay)
        return self._write_with_retry(batch, lambda: self.store.save_all(batch), replay)

    def write(self, record: AuditRecord) -> bool:
        """Write one record synchronously with retries.

        Returns:
            True if the store accepted the record
        """
        return self._write_with_retry((record,), lambda: self.store.save(record))

    def write_batch(self, records: Sequence[AuditRecord]) -> bool:
        """Write a batch synchronously with retries, re-attempting the same batch.

        Returns:
            True if the store accepted the batch
        """
        batch = tuple(records)
        if not batch:
            return True
        return self._write_with_retry(batch, lambda: self.store.save_all(batch))

    def _write_with_retry(
        self,
        batch: tuple[AuditRecord, ...],
        operation: Callable[[], Result],
        replay: bool = False
    ) -> bool:
        error = self._attempt(operation)
        if error is None:
            self._on_success(batch)
            return True

        attempts = 1
        for delay in self.retry_policy.delays():
            logger.warning(
                f"Audit write of {len(batch)} record(s) failed (attempt {attempts}): {error}; "
                f"retrying in {delay:.2f}s"
            )
            self.metrics.increment("write_retries")
            self._sleep(delay)
            attempts += 1
            error = self._attempt(operation)
            if error is None:
                self._on_success(batch)
                return True

        if replay:
            # already counted and reported when first dead-lettered
            logger.warning(f"Replay of {len(batch)} dead-lettered audit record(s) failed: {error}")
            self._store_dead_letter(batch)
        else:
            self._on_exhausted(batch, error, attempts)
        return False

    @staticmethod
    def _attempt(operation: Callable[[], Result]) -> Optional[str]:
        """Run one store call; returns None on success, else the error text."""
        try:
            result = operation()
        except Exception as e:
            return f"{type(e).__name__}: {str(e)}"
        if result.is_success():
            return None
        return f"{result.error_type}: {result.error}"

    def _on_success(self, batch: tuple[AuditRecord, ...]) -> None:
        self.metrics.increment("records_written", len(batch))
        self.metrics.increment("batches_written")
        logger.debug(f"Persisted {len(batch)} audit record(s)")
        if len(batch) == 1:
            self._publish(self._commit_listeners, AuditLogCommittedEvent(record=batch[0]))
        else:
            self._publish(self._commit_listeners, AuditLogsCommittedEvent(records=batch))

    def _on_exhausted(self, batch: tuple[AuditRecord, ...], error: Optional[str], attempts: int) -> None:
        self.metrics.increment("records_dropped", len(batch))
        logger.error(
            f"Dropping {len(batch)} audit record(s) after {attempts} attempt(s): {error}",
            extra={"extra_fields": {
                "audit_ids": [record.audit_id for record in batch],
                "tables": sorted({record.table_name for record in batch}),
            }}
        )
        self._store_dead_letter(batch)
        self._publish(
            self._failure_listeners,
            AuditWriteFailedEvent(records=batch, error=error or "unknown error", attempts=attempts)
        )

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def _store_dead_letter(self, batch: tuple[AuditRecord, ...]) -> None:
        if self._dead_letter_capacity <= 0:
            return
        with self._lock:
            if len(self._dead_letters) >= self._dead_letter_capacity:
                evicted = self._dead_letters.popleft()
                logger.warning(f"Dead-letter queue full; evicting {len(evicted)} audit record(s)")
            self._dead_letters.append(batch)

    @property
    def dead_letter_count(self) -> int:
        """Number of records waiting in the dead-letter queue."""
        with self._lock:
            return sum(len(batch) for batch in self._dead_letters)

    def replay_dead_letters(self) -> int:
        """Re-attempt every dead-lettered batch with the same retry policy.

        Batches that fail again return to the queue.

        Returns:
            Number of records persisted by the replay
        """
        with self._lock:
            batches = list(self._dead_letters)
            self._dead_letters.clear()

        replayed = 0
        for batch in batches:
            if self._write_records(batch, replay=True):
                replayed += len(batch)
        if batches:
            logger.info(f"Replayed {replayed} dead-lettered audit record(s) from {len(batches)} batch(es)")
        return replayed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight background writes.

        Returns:
            True if every pending write finished within the timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop accepting background work and wait for in-flight writes.

        Writes still running after the timeout continue in their worker
        threads but are no longer waited for. Later submit() calls write
        inline.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        finished = self.flush(timeout)
        if not finished:
            logger.warning(f"Audit writer shutdown timed out after {timeout}s with writes in flight")
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        logger.info("Audit persistence writer stopped")
