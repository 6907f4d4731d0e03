"""Local Transaction Manager.

An ambient, contextvar-scoped transaction around a DB-API connection (DuckDB,
sqlite3, psycopg2). Code that mutates data opens a transaction with
`transaction(connection)`; the audit pipeline asks the manager whether a
transaction is active and registers a completion listener on it.

Architecture:
    - Implements TransactionManagerPort
    - The current transaction lives in a ContextVar, so concurrent threads and
      asyncio tasks each see their own transaction
    - Nested transaction() blocks join the outermost transaction
    - Listeners run after commit/rollback, outside the transaction scope
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from src.domain.ports import (
    CompletionListener,
    CoordinatorError,
    TransactionManagerPort,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class LocalTransaction:
    """An open local transaction.

    Attributes:
        transaction_id: Stable identifier (uuid4)
        connection: The DB-API connection the transaction runs on
        listeners: Completion listeners in registration order
    """
    transaction_id: str
    connection: Any
    listeners: list[CompletionListener] = field(default_factory=list)


class LocalTransactionManager(TransactionManagerPort):
    """Contextvar-scoped transactions with completion listeners.

    Example Usage:
        ```python
        tx_manager = LocalTransactionManager()
        with tx_manager.transaction(conn):
            audit_logger.audit(descriptor, lambda: conn.execute(update_sql))
        # committed: the buffered audit records are flushed
        ```
    """

    def __init__(self):
        self._current: ContextVar[Optional[LocalTransaction]] = ContextVar(
            f"txn_audit_local_tx_{id(self)}", default=None
        )

    def is_transaction_active(self) -> bool:
        return self._current.get() is not None

    def current_transaction_id(self) -> Optional[str]:
        transaction = self._current.get()
        return transaction.transaction_id if transaction is not None else None

    def register_completion_listener(self, listener: CompletionListener) -> None:
        transaction = self._current.get()
        if transaction is None:
            raise CoordinatorError("No active transaction to register a completion listener on")
        transaction.listeners.append(listener)

    @contextmanager
    def transaction(self, connection: Any) -> Iterator[LocalTransaction]:
        """Run a block in a transaction: commit on success, roll back on error.

        Exceptions from the block propagate after the rollback. A failed
        commit is rolled back, reported to listeners as ROLLED_BACK and
        re-raised.
        """
        outer = self._current.get()
        if outer is not None:
            yield outer
            return

        transaction = LocalTransaction(transaction_id=str(uuid.uuid4()), connection=connection)
        begin = getattr(connection, "begin", None)
        if callable(begin):
            begin()
        token = self._current.set(transaction)
        status = TransactionStatus.UNKNOWN
        try:
            yield transaction
        except BaseException:
            status = self._rollback(transaction)
            raise
        else:
            try:
                connection.commit()
                status = TransactionStatus.COMMITTED
            except Exception:
                status = self._rollback(transaction)
                raise
        finally:
            self._current.reset(token)
            self._notify(transaction, status)

    @staticmethod
    def _rollback(transaction: LocalTransaction) -> TransactionStatus:
        try:
            transaction.connection.rollback()
            return TransactionStatus.ROLLED_BACK
        except Exception as e:
            logger.error(f"Rollback of transaction {transaction.transaction_id} failed: {str(e)}", exc_info=True)
            return TransactionStatus.UNKNOWN

    @staticmethod
    def _notify(transaction: LocalTransaction, status: TransactionStatus) -> None:
        for listener in transaction.listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(
                    f"Completion listener failed for transaction {transaction.transaction_id}: {str(e)}",
                    exc_info=True
                )
