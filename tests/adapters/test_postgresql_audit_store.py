"""Test suite for the PostgreSQL audit store using mocked database connections.

All psycopg2 pool and cursor operations are mocked so the tests run without a
PostgreSQL server.

Security Impact:
    - Verifies writes are idempotent on audit_id
    - Confirms failed writes roll back and return connections to the pool
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from src.adapters.storage.postgresql_adapter import PostgreSQLAuditStore
from src.domain.cdc_models import AUDIT_COLUMNS, AuditRecord, OperationType
from src.domain.ports import StorageError
from src.infrastructure.config_manager import DatabaseConfig


@pytest.fixture
def mock_psycopg2():
    """Mock the pool module imported by the adapter and execute_values.

    The adapter does `from psycopg2 import pool`, so
    `src.adapters.storage.postgresql_adapter.pool` is patched.
    """
    with patch('src.adapters.storage.postgresql_adapter.pool') as mock_pool_module, \
            patch('src.adapters.storage.postgresql_adapter.execute_values') as mock_execute_values:
        mock_pool = MagicMock()
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        mock_pool.getconn.return_value = mock_conn

        mock_threaded_pool_class = MagicMock(return_value=mock_pool)
        mock_pool_module.ThreadedConnectionPool = mock_threaded_pool_class

        yield {
            'pool': mock_pool,
            'conn': mock_conn,
            'cursor': mock_cursor,
            'ThreadedConnectionPool': mock_threaded_pool_class,
            'execute_values': mock_execute_values,
        }


@pytest.fixture
def db_config():
    return DatabaseConfig(
        db_type="postgresql", host="localhost", database="audit", username="app", password="pw"
    )


def _record(**kwargs) -> AuditRecord:
    return AuditRecord(table_name="orders", operation=OperationType.INSERT, **kwargs)


class TestConstruction:
    """Test adapter configuration."""

    def test_requires_config_or_connection_string(self):
        with pytest.raises(StorageError):
            PostgreSQLAuditStore()

    def test_rejects_duckdb_config(self):
        with pytest.raises(StorageError):
            PostgreSQLAuditStore(db_config=DatabaseConfig(db_type="duckdb"))

    def test_pool_created_lazily_with_dsn(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        mock_psycopg2['ThreadedConnectionPool'].assert_not_called()

        store.initialize_schema()

        mock_psycopg2['ThreadedConnectionPool'].assert_called_once_with(
            minconn=1, maxconn=5, dsn="postgresql://app:pw@localhost:5432/audit"
        )

    def test_pool_failure_is_reported(self, mock_psycopg2):
        mock_psycopg2['ThreadedConnectionPool'].side_effect = Exception("connection refused")
        store = PostgreSQLAuditStore(connection_string="postgresql://u:p@h/d")

        result = store.initialize_schema()

        assert result.is_failure()
        assert result.error_type == "StorageError"


class TestSchema:
    """Test schema initialization."""

    def test_creates_table_and_index_once(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)

        assert store.initialize_schema().is_success()
        assert store.initialize_schema().is_success()

        assert mock_psycopg2['cursor'].execute.call_count == 2
        mock_psycopg2['conn'].commit.assert_called_once()
        mock_psycopg2['pool'].putconn.assert_called_once_with(mock_psycopg2['conn'])

    def test_schema_failure_rolls_back(self, mock_psycopg2, db_config):
        mock_psycopg2['cursor'].execute.side_effect = Exception("permission denied")
        store = PostgreSQLAuditStore(db_config=db_config)

        assert store.initialize_schema().is_failure()
        mock_psycopg2['conn'].rollback.assert_called_once()
        mock_psycopg2['pool'].putconn.assert_called_once()


class TestSave:
    """Test batch inserts."""

    def test_save_all_uses_execute_values(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        records = [_record(remark="first"), _record(remark="second")]

        result = store.save_all(records)

        assert result.is_success()
        assert result.value == 2
        args, kwargs = mock_psycopg2['execute_values'].call_args
        values = args[2]
        assert [row[AUDIT_COLUMNS.index('remark')] for row in values] == ["first", "second"]
        assert values[0][0] == records[0].audit_id
        assert kwargs == {"page_size": 1000}

    def test_save_returns_audit_id(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        record = _record()
        assert store.save(record).value == record.audit_id

    def test_failed_insert_rolls_back(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        store.initialize_schema()
        mock_psycopg2['execute_values'].side_effect = Exception("disk full")

        result = store.save_all([_record()])

        assert result.is_failure()
        assert "disk full" in result.error
        mock_psycopg2['conn'].rollback.assert_called_once()
        assert mock_psycopg2['pool'].putconn.call_count == 2

    def test_empty_batch_skips_database(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        assert store.save_all([]).value == 0
        mock_psycopg2['ThreadedConnectionPool'].assert_not_called()


class TestQuery:
    """Test reads."""

    def test_query_builds_page(self, mock_psycopg2, db_config):
        occurred = datetime(2024, 3, 1, 12, 0)
        row = ("a-1", "orders", "UPDATE", "id", "7", '{"x": 1}', '{"x": 2}', "alice", occurred, None)
        mock_psycopg2['cursor'].fetchone.return_value = (11,)
        mock_psycopg2['cursor'].fetchall.return_value = [row]
        store = PostgreSQLAuditStore(db_config=db_config)

        page = store.query("Orders", occurred, occurred, page=1, page_size=10).value

        assert page.total == 11
        assert page.page == 1
        assert page.records[0].audit_id == "a-1"
        assert page.records[0].actor == "alice"
        assert page.has_previous and not page.has_next
        params = mock_psycopg2['cursor'].execute.call_args_list[-1][0][1]
        assert params == ["orders", occurred, occurred, 10, 10]

    def test_list_audited_tables(self, mock_psycopg2, db_config):
        mock_psycopg2['cursor'].fetchall.return_value = [("orders",), ("customers",)]
        store = PostgreSQLAuditStore(db_config=db_config)
        assert store.list_audited_tables().value == {"orders", "customers"}

    def test_close(self, mock_psycopg2, db_config):
        store = PostgreSQLAuditStore(db_config=db_config)
        store.initialize_schema()
        store.close()
        mock_psycopg2['pool'].closeall.assert_called_once()
