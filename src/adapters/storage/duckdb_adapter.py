"""DuckDB Audit Store Adapter.

This adapter implements the AuditStorePort contract on DuckDB, an in-process
database that suits embedded deployments and tests.

Security Impact:
    - The audit table is append-only: the adapter never updates or deletes
    - Writes are idempotent on audit_id, so a retried batch cannot duplicate
      records that already reached the table
    - Table names are validated as plain identifiers before being used in SQL

Architecture:
    - Implements AuditStorePort (Hexagonal Architecture)
    - Owns a dedicated connection (or a cursor of a caller's connection), so
      audit writes never join the business transaction being audited
    - Access to the connection is serialized with a lock; DuckDB connections
      are not safe for concurrent use from several threads
"""

import logging
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Optional, Sequence

import duckdb

from src.adapters.sql_utils import validate_identifier
from src.domain.cdc_models import AUDIT_COLUMNS, AuditPage, AuditRecord
from src.domain.ports import AuditStorePort, Result, StorageError
from src.infrastructure.config_manager import DEFAULT_AUDIT_TABLE, DatabaseConfig

logger = logging.getLogger(__name__)


class DuckDBAuditStore(AuditStorePort):
    """DuckDB implementation of AuditStorePort.

    Parameters:
        db_config: DatabaseConfig with db_type "duckdb" (preferred)
        db_path: DuckDB file path or ':memory:'
        connection: Existing connection; the store works on its own cursor,
            which shares the database but not the transaction
        table_name: Audit table name

    Example Usage:
        ```python
        store = DuckDBAuditStore(db_path="data/audit.duckdb")
        store.initialize_schema()
        store.save_all(records)
        page = store.query("orders", start, end, page=0, page_size=20).value
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        connection: Optional[duckdb.DuckDBPyConnection] = None,
        table_name: str = DEFAULT_AUDIT_TABLE
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB audit store",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        if connection is None and self.db_path != ":memory:":
            if not Path(self.db_path).parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {Path(self.db_path).parent}",
                    operation="__init__"
                )

        self.table_name = validate_identifier(table_name)
        self._sequence_name = f"seq_{self.table_name}_id"
        self._parent_connection = connection
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = RLock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the store's connection (lazily)."""
        if self._connection is None:
            try:
                if self._parent_connection is not None:
                    self._connection = self._parent_connection.cursor()
                    logger.info("Opened DuckDB audit cursor on shared connection")
                else:
                    self._connection = duckdb.connect(self.db_path)
                    logger.info(f"Connected to DuckDB audit database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create the audit table, its insertion-order sequence and index.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._sequence_name} START 1")
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.table_name} (
                        id BIGINT NOT NULL DEFAULT nextval('{self._sequence_name}'),
                        audit_id VARCHAR PRIMARY KEY,
                        table_name VARCHAR NOT NULL,
                        operation_type VARCHAR NOT NULL,
                        primary_key_name VARCHAR,
                        primary_key_value VARCHAR,
                        old_value VARCHAR,
                        new_value VARCHAR,
                        operator VARCHAR NOT NULL,
                        operate_time TIMESTAMP NOT NULL,
                        remark VARCHAR(500)
                    )
                """)
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self.table_name}_table_time "
                    f"ON {self.table_name}(table_name, operate_time)"
                )
                self._initialized = True
            logger.info(f"Audit schema initialized: {self.table_name}")
            return Result.success_result(None)
        except Exception as e:
            error_msg = f"Failed to initialize audit schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if not result.is_success():
                raise StorageError(result.error, operation="initialize_schema")

    def save(self, record: AuditRecord) -> Result[str]:
        result = self.save_all([record])
        if not result.is_success():
            return Result.failure_result(
                result.error, error_type=result.error_type, error_details=result.error_details
            )
        return Result.success_result(record.audit_id)

    def save_all(self, records: Sequence[AuditRecord]) -> Result[int]:
        """Insert records in order inside one DuckDB transaction.

        Records whose audit_id already exists are skipped.

        Returns:
            Result[int]: Number of records handed to the store or error
        """
        if not records:
            return Result.success_result(0)

        placeholders = ", ".join("?" for _ in AUDIT_COLUMNS)
        insert_sql = (
            f"INSERT INTO {self.table_name} ({', '.join(AUDIT_COLUMNS)}) "
            f"VALUES ({placeholders}) ON CONFLICT DO NOTHING"
        )
        rows = [[record.to_row()[column] for column in AUDIT_COLUMNS] for record in records]

        try:
            with self._lock:
                self._ensure_schema()
                conn = self._get_connection()
                conn.begin()
                try:
                    conn.executemany(insert_sql, rows)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            logger.debug(f"Saved {len(records)} audit record(s) to {self.table_name}")
            return Result.success_result(len(records))
        except Exception as e:
            error_msg = f"Failed to save audit records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="save_all", details={"record_count": len(records)}),
                error_type="StorageError"
            )

    def query(
        self,
        table_name: str,
        start_time: datetime,
        end_time: datetime,
        page: int = 0,
        page_size: int = 10
    ) -> Result[AuditPage]:
        """Page through one table's records ordered by operate_time, then insertion."""
        where = "table_name = ? AND operate_time >= ? AND operate_time <= ?"
        params: list[Any] = [table_name.lower(), start_time, end_time]
        try:
            with self._lock:
                self._ensure_schema()
                conn = self._get_connection()
                total = conn.execute(
                    f"SELECT COUNT(*) FROM {self.table_name} WHERE {where}", params
                ).fetchone()[0]
                rows = conn.execute(
                    f"SELECT {', '.join(AUDIT_COLUMNS)} FROM {self.table_name} WHERE {where} "
                    f"ORDER BY operate_time, id LIMIT ? OFFSET ?",
                    params + [page_size, page * page_size]
                ).fetchall()
            records = [AuditRecord.from_row(dict(zip(AUDIT_COLUMNS, row))) for row in rows]
            return Result.success_result(
                AuditPage(records=records, total=total, page=page, page_size=page_size)
            )
        except Exception as e:
            error_msg = f"Failed to query audit records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="query", details={"table_name": table_name}),
                error_type="StorageError"
            )

    def list_audited_tables(self) -> Result[set[str]]:
        try:
            with self._lock:
                self._ensure_schema()
                rows = self._get_connection().execute(
                    f"SELECT DISTINCT table_name FROM {self.table_name}"
                ).fetchall()
            return Result.success_result({row[0] for row in rows})
        except Exception as e:
            error_msg = f"Failed to list audited tables: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_audited_tables"),
                error_type="StorageError"
            )

    def fetch_in_insertion_order(self, table_name: Optional[str] = None) -> list[AuditRecord]:
        """All records (optionally of one table) in the order they were inserted."""
        with self._lock:
            self._ensure_schema()
            sql_text = f"SELECT {', '.join(AUDIT_COLUMNS)} FROM {self.table_name}"
            params: list[Any] = []
            if table_name is not None:
                sql_text += " WHERE table_name = ?"
                params.append(table_name.lower())
            rows = self._get_connection().execute(sql_text + " ORDER BY id", params).fetchall()
        return [AuditRecord.from_row(dict(zip(AUDIT_COLUMNS, row))) for row in rows]

    def close(self) -> None:
        """Close the store's connection or cursor."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB audit connection")
                except Exception as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
