"""Transaction Coordinator.

This module decides when audit records reach the PersistenceWriter: records
produced inside a business transaction are buffered per transaction id and
written as one ordered batch only if that transaction commits; rollback or
any other non-commit completion discards them. Outside a transaction records
are written directly.

Security Impact:
    - An audit record is persisted if and only if the mutation it describes
      was committed
    - Coordinator failures fail open to direct persistence rather than losing
      the record

Architecture:
    - Buffers live in a lock-guarded table keyed by the host transaction id,
      not in thread-local state, so a transaction may hop between threads or
      tasks
    - Exactly one completion listener per transaction id; the flag lives in
      the buffer entry and is set together with buffer creation
    - Buffers are released in a finally block on every completion path
"""

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Optional

from src.domain.cdc_models import AuditRecord, BufferState, TransactionBuffer
from src.domain.guardrails import AuditMetrics
from src.domain.ports import TransactionManagerPort, TransactionStatus
from src.infrastructure.audit.persistence_writer import PersistenceWriter

logger = logging.getLogger(__name__)


class TransactionCoordinator:
    """Per-transaction buffering of audit records.

    States per transaction id: not materialized → BUFFERING → FLUSHING
    (commit) or DISCARDED (rollback / unknown outcome) → removed.

    Parameters:
        writer: Where committed batches and direct writes go
        transaction_manager: Host transaction manager; without one every
            record is written directly
        metrics: Pipeline counters

    Example Usage:
        ```python
        coordinator = TransactionCoordinator(writer, LocalTransactionManager())
        with tx_manager.transaction(conn):
            coordinator.record(record)   # buffered
        # commit → one batch handed to the writer
        ```
    """

    def __init__(
        self,
        writer: PersistenceWriter,
        transaction_manager: Optional[TransactionManagerPort] = None,
        metrics: Optional[AuditMetrics] = None
    ):
        self.writer = writer
        self.transaction_manager = transaction_manager
        self.metrics = metrics or AuditMetrics()
        self._buffers: dict[str, TransactionBuffer] = {}
        self._lock = Lock()

    def record(self, record: AuditRecord) -> None:
        """Buffer a record in the ambient transaction, or write it directly."""
        tx_id = self._active_transaction_id()
        if tx_id is None:
            self.writer.submit([record])
            return

        with self._lock:
            buffer = self._buffers.get(tx_id)
            if buffer is None:
                buffer = TransactionBuffer(transaction_id=tx_id)
                self._buffers[tx_id] = buffer
            needs_listener = not buffer.listener_registered
            buffer.listener_registered = True
            buffer.append(record)
        self.metrics.increment("records_buffered")

        if needs_listener:
            try:
                self.transaction_manager.register_completion_listener(
                    lambda status, tx_id=tx_id: self._on_completion(tx_id, status)
                )
                logger.debug(f"Buffering audit records for transaction {tx_id}")
            except Exception as e:
                self._fail_open(tx_id, e)

    def _active_transaction_id(self) -> Optional[str]:
        if self.transaction_manager is None:
            return None
        try:
            if not self.transaction_manager.is_transaction_active():
                return None
            tx_id = self.transaction_manager.current_transaction_id()
        except Exception as e:
            logger.warning(f"Transaction lookup failed, writing audit record directly: {str(e)}")
            self.metrics.increment("coordinator_fallbacks")
            return None
        if tx_id is None:
            logger.warning("Active transaction has no identifier, writing audit record directly")
            self.metrics.increment("coordinator_fallbacks")
        return tx_id

    def _fail_open(self, tx_id: str, error: Exception) -> None:
        """Listener registration failed: write what was buffered directly."""
        with self._lock:
            buffer = self._buffers.pop(tx_id, None)
        records = buffer.drain() if buffer is not None else []
        logger.error(
            f"Could not register completion listener for transaction {tx_id}; "
            f"writing {len(records)} audit record(s) directly: {str(error)}",
            exc_info=True
        )
        self.metrics.increment("coordinator_fallbacks", max(len(records), 1))
        if records:
            self.writer.submit(records)

    @contextmanager
    def _released(self, tx_id: str) -> Iterator[Optional[TransactionBuffer]]:
        """Hand out a transaction's buffer and always remove it afterwards."""
        with self._lock:
            buffer = self._buffers.get(tx_id)
        try:
            yield buffer
        finally:
            with self._lock:
                self._buffers.pop(tx_id, None)

    def _on_completion(self, tx_id: str, status: TransactionStatus) -> None:
        """Completion listener: flush on commit, discard otherwise. Never raises."""
        try:
            with self._released(tx_id) as buffer:
                if buffer is None:
                    logger.debug(f"No audit buffer for completed transaction {tx_id}")
                    return
                if status == TransactionStatus.COMMITTED:
                    buffer.state = BufferState.FLUSHING
                    records = buffer.drain()
                    logger.debug(f"Transaction {tx_id} committed; flushing {len(records)} audit record(s)")
                    self.writer.submit(records)
                else:
                    buffer.state = BufferState.DISCARDED
                    discarded = buffer.drain()
                    self.metrics.increment("buffers_discarded")
                    logger.debug(
                        f"Transaction {tx_id} ended with {status.value}; "
                        f"discarded {len(discarded)} audit record(s)"
                    )
        except Exception as e:
            logger.error(f"Audit flush failed for transaction {tx_id}: {str(e)}", exc_info=True)

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def active_transaction_ids(self) -> list[str]:
        with self._lock:
            return list(self._buffers)

    def pending_count(self) -> int:
        """Records buffered across all open transactions."""
        with self._lock:
            return sum(len(buffer.records) for buffer in self._buffers.values())

    def shutdown(self, grace_period: float = 5.0) -> None:
        """Discard buffers of transactions that never completed, then stop the writer.

        Committed transactions were already handed to the writer, which is
        given grace_period seconds to finish.
        """
        with self._lock:
            abandoned = list(self._buffers.values())
            self._buffers.clear()
        for buffer in abandoned:
            buffer.state = BufferState.DISCARDED
            self.metrics.increment("buffers_discarded")
        if abandoned:
            logger.warning(
                f"Discarded audit buffers of {len(abandoned)} unfinished transaction(s) at shutdown"
            )
        self.writer.shutdown(timeout=grace_period)
