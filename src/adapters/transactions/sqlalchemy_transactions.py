"""SQLAlchemy Session Transaction Manager.

Bridges a SQLAlchemy Session's transaction events to the audit pipeline's
completion listeners.

Architecture:
    - Implements TransactionManagerPort
    - Transaction ids are assigned per root SessionTransaction
    - after_commit marks the root transaction committed; the root's
      after_transaction_end then notifies listeners with COMMITTED, or with
      ROLLED_BACK when no commit was seen (rollback, close, failed commit)
    - SAVEPOINT (nested) transactions belong to their root transaction
"""

import logging
import uuid
from threading import Lock
from typing import Optional

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from src.domain.ports import (
    CompletionListener,
    CoordinatorError,
    TransactionManagerPort,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


class SQLAlchemySessionTransactionManager(TransactionManagerPort):
    """Transaction notifications for one SQLAlchemy Session.

    Parameters:
        session: The Session the audited mutations run on

    Example Usage:
        ```python
        session = Session(engine)
        tx_manager = SQLAlchemySessionTransactionManager(session)
        pipeline = create_audit_pipeline(config, store, introspector, tx_manager)
        ```
    """

    def __init__(self, session: Session):
        self.session = session
        self._lock = Lock()
        self._ids: dict[SessionTransaction, str] = {}
        self._listeners: dict[SessionTransaction, list[CompletionListener]] = {}
        self._committed: set[SessionTransaction] = set()

        event.listen(session, "after_commit", self._after_commit)
        event.listen(session, "after_transaction_end", self._after_transaction_end)

    def _root(self) -> Optional[SessionTransaction]:
        return self.session.get_transaction()

    def is_transaction_active(self) -> bool:
        return self.session.in_transaction()

    def current_transaction_id(self) -> Optional[str]:
        root = self._root()
        if root is None:
            return None
        with self._lock:
            return self._ids.setdefault(root, str(uuid.uuid4()))

    def register_completion_listener(self, listener: CompletionListener) -> None:
        root = self._root()
        if root is None:
            raise CoordinatorError("Session has no active transaction")
        with self._lock:
            self._listeners.setdefault(root, []).append(listener)

    def _after_commit(self, session: Session) -> None:
        if session.get_nested_transaction() is not None:
            # savepoint release; the root outcome is still open
            return
        root = session.get_transaction()
        if root is not None:
            with self._lock:
                self._committed.add(root)

    def _after_transaction_end(self, session: Session, transaction: SessionTransaction) -> None:
        if transaction.parent is not None:
            return
        with self._lock:
            listeners = self._listeners.pop(transaction, [])
            transaction_id = self._ids.pop(transaction, None)
            committed = transaction in self._committed
            self._committed.discard(transaction)

        status = TransactionStatus.COMMITTED if committed else TransactionStatus.ROLLED_BACK
        for listener in listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Completion listener failed for transaction {transaction_id}: {str(e)}", exc_info=True)

    def detach(self) -> None:
        """Stop listening to the session's events."""
        event.remove(self.session, "after_commit", self._after_commit)
        event.remove(self.session, "after_transaction_end", self._after_transaction_end)
