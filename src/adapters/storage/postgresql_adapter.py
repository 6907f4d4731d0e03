"""PostgreSQL Audit Store Adapter.

This adapter implements the AuditStorePort contract on PostgreSQL for
production deployments.

Security Impact:
    - The audit table is append-only: the adapter never updates or deletes
    - Writes are idempotent on audit_id (ON CONFLICT DO NOTHING), so a retried
      batch cannot duplicate records
    - Connection credentials are never logged
    - Identifiers are composed with psycopg2.sql, values are always bound

Architecture:
    - Implements AuditStorePort (Hexagonal Architecture)
    - Thread-safe connection pooling for concurrent writer workers
    - Batches are written with execute_values in a single transaction
"""

import logging
import threading
from datetime import datetime
from typing import Optional, Sequence

from psycopg2 import pool, sql
from psycopg2.extras import execute_values

from src.adapters.sql_utils import validate_identifier
from src.domain.cdc_models import AUDIT_COLUMNS, AuditPage, AuditRecord
from src.domain.ports import AuditStorePort, Result, StorageError
from src.infrastructure.config_manager import DEFAULT_AUDIT_TABLE, DatabaseConfig

logger = logging.getLogger(__name__)


class PostgreSQLAuditStore(AuditStorePort):
    """PostgreSQL implementation of AuditStorePort.

    Parameters:
        db_config: DatabaseConfig with db_type "postgresql" (preferred)
        connection_string: postgresql:// URL when no db_config is given
        table_name: Audit table name
        pool_size: Maximum pooled connections

    Example Usage:
        ```python
        store = PostgreSQLAuditStore(db_config=get_database_config())
        store.initialize_schema()
        store.save_all(records)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
        table_name: str = DEFAULT_AUDIT_TABLE,
        pool_size: int = 5
    ):
        if db_config:
            if db_config.db_type != "postgresql":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL audit store",
                    operation="__init__"
                )
            self.connection_params = {"dsn": db_config.get_connection_string()}
            self.pool_size = db_config.pool_size
        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.pool_size = pool_size
        else:
            raise StorageError(
                "PostgreSQL audit store requires db_config or connection_string",
                operation="__init__"
            )

        self.table_name = validate_identifier(table_name)
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False
        self._schema_lock = threading.Lock()

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.pool_size,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except Exception as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect"
                )
        return self._connection_pool

    def _get_connection(self):
        try:
            return self._get_connection_pool().getconn()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get connection from pool: {str(e)}", operation="get_connection")

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except Exception as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    def initialize_schema(self) -> Result[None]:
        """Create the audit table and its (table_name, operate_time) index."""
        with self._schema_lock:
            if self._initialized:
                return Result.success_result(None)
            conn = None
            try:
                conn = self._get_connection()
                table = sql.Identifier(self.table_name)
                with conn.cursor() as cursor:
                    cursor.execute(sql.SQL("""
                        CREATE TABLE IF NOT EXISTS {table} (
                            id BIGSERIAL NOT NULL,
                            audit_id VARCHAR(36) PRIMARY KEY,
                            table_name VARCHAR(255) NOT NULL,
                            operation_type VARCHAR(10) NOT NULL,
                            primary_key_name VARCHAR(255),
                            primary_key_value VARCHAR(1000),
                            old_value TEXT,
                            new_value TEXT,
                            operator VARCHAR(255) NOT NULL,
                            operate_time TIMESTAMP NOT NULL,
                            remark VARCHAR(500)
                        )
                    """).format(table=table))
                    cursor.execute(sql.SQL(
                        "CREATE INDEX IF NOT EXISTS {index} ON {table} (table_name, operate_time)"
                    ).format(index=sql.Identifier(f"idx_{self.table_name}_table_time"), table=table))
                conn.commit()
                self._initialized = True
                logger.info(f"Audit schema initialized: {self.table_name}")
                return Result.success_result(None)
            except Exception as e:
                if conn:
                    conn.rollback()
                error_msg = f"Failed to initialize audit schema: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="initialize_schema"),
                    error_type="StorageError"
                )
            finally:
                if conn:
                    self._return_connection(conn)

    def save(self, record: AuditRecord) -> Result[str]:
        result = self.save_all([record])
        if not result.is_success():
            return Result.failure_result(
                result.error, error_type=result.error_type, error_details=result.error_details
            )
        return Result.success_result(record.audit_id)

    def save_all(self, records: Sequence[AuditRecord]) -> Result[int]:
        """Insert records in order in a single transaction, skipping known audit_ids."""
        if not records:
            return Result.success_result(0)

        conn = None
        try:
            if not self._initialized:
                init_result = self.initialize_schema()
                if not init_result.is_success():
                    return Result.failure_result(init_result.error, error_type=init_result.error_type)

            conn = self._get_connection()
            insert_sql = sql.SQL("INSERT INTO {table} ({columns}) VALUES %s ON CONFLICT (audit_id) DO NOTHING").format(
                table=sql.Identifier(self.table_name),
                columns=sql.SQL(", ").join(sql.Identifier(column) for column in AUDIT_COLUMNS),
            )
            values = [tuple(record.to_row()[column] for column in AUDIT_COLUMNS) for record in records]
            with conn.cursor() as cursor:
                execute_values(cursor, insert_sql, values, page_size=1000)
            conn.commit()
            logger.debug(f"Saved {len(records)} audit record(s) to {self.table_name}")
            return Result.success_result(len(records))
        except Exception as e:
            if conn:
                conn.rollback()
            error_msg = f"Failed to save audit records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="save_all", details={"record_count": len(records)}),
                error_type="StorageError"
            )
        finally:
            if conn:
                self._return_connection(conn)

    def query(
        self,
        table_name: str,
        start_time: datetime,
        end_time: datetime,
        page: int = 0,
        page_size: int = 10
    ) -> Result[AuditPage]:
        conn = None
        try:
            conn = self._get_connection()
            table = sql.Identifier(self.table_name)
            where = sql.SQL("table_name = %s AND operate_time >= %s AND operate_time <= %s")
            params = [table_name.lower(), start_time, end_time]
            with conn.cursor() as cursor:
                cursor.execute(
                    sql.SQL("SELECT COUNT(*) FROM {table} WHERE {where}").format(table=table, where=where),
                    params
                )
                total = cursor.fetchone()[0]
                cursor.execute(
                    sql.SQL(
                        "SELECT {columns} FROM {table} WHERE {where} "
                        "ORDER BY operate_time, id LIMIT %s OFFSET %s"
                    ).format(
                        columns=sql.SQL(", ").join(sql.Identifier(column) for column in AUDIT_COLUMNS),
                        table=table,
                        where=where,
                    ),
                    params + [page_size, page * page_size]
                )
                rows = cursor.fetchall()
            conn.commit()
            records = [AuditRecord.from_row(dict(zip(AUDIT_COLUMNS, row))) for row in rows]
            return Result.success_result(
                AuditPage(records=records, total=total, page=page, page_size=page_size)
            )
        except Exception as e:
            if conn:
                conn.rollback()
            error_msg = f"Failed to query audit records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="query", details={"table_name": table_name}),
                error_type="StorageError"
            )
        finally:
            if conn:
                self._return_connection(conn)

    def list_audited_tables(self) -> Result[set[str]]:
        conn = None
        try:
            conn = self._get_connection()
            with conn.cursor() as cursor:
                cursor.execute(
                    sql.SQL("SELECT DISTINCT table_name FROM {table}").format(table=sql.Identifier(self.table_name))
                )
                rows = cursor.fetchall()
            conn.commit()
            return Result.success_result({row[0] for row in rows})
        except Exception as e:
            if conn:
                conn.rollback()
            error_msg = f"Failed to list audited tables: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_audited_tables"),
                error_type="StorageError"
            )
        finally:
            if conn:
                self._return_connection(conn)

    def close(self) -> None:
        """Close the connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                logger.info("Closed PostgreSQL connection pool")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
            finally:
                self._connection_pool = None
