"""Host transaction managers implementing TransactionManagerPort."""

from src.adapters.transactions.local_transactions import LocalTransaction, LocalTransactionManager
from src.adapters.transactions.sqlalchemy_transactions import SQLAlchemySessionTransactionManager

__all__ = ["LocalTransaction", "LocalTransactionManager", "SQLAlchemySessionTransactionManager"]
