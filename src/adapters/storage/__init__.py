"""Storage adapters for txn-audit.

This module contains the audit store adapters that implement AuditStorePort.
"""

from src.adapters.storage.duckdb_adapter import DuckDBAuditStore
from src.adapters.storage.postgresql_adapter import PostgreSQLAuditStore

__all__ = ["DuckDBAuditStore", "PostgreSQLAuditStore"]
