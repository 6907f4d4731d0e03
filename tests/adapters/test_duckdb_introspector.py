"""Tests for the DuckDB schema introspector."""

import duckdb
import pytest

from src.adapters.metadata.duckdb_introspector import DuckDBSchemaIntrospector
from src.domain.ports import StorageError


@pytest.fixture
def conn():
    connection = duckdb.connect(":memory:")
    connection.execute("CREATE SEQUENCE seq_orders START 1")
    connection.execute("""
        CREATE TABLE orders (
            id INTEGER PRIMARY KEY DEFAULT nextval('seq_orders'),
            status VARCHAR DEFAULT 'NEW',
            quantity INTEGER DEFAULT 1,
            price DECIMAL(10, 2),
            created_at TIMESTAMP DEFAULT current_timestamp
        )
    """)
    connection.execute("""
        CREATE TABLE order_lines (
            order_id INTEGER,
            line_no INTEGER,
            sku VARCHAR,
            PRIMARY KEY (order_id, line_no)
        )
    """)
    yield connection
    connection.close()


class TestMetadata:
    """Test catalog reads."""

    def test_column_classification(self, conn):
        metadata = DuckDBSchemaIntrospector(conn).get_table_metadata("Orders")

        assert list(metadata) == ["id", "status", "quantity", "price", "created_at"]
        assert metadata["id"].is_primary_key
        assert metadata["id"].is_auto_increment
        assert metadata["status"].has_default and metadata["status"].default_value == "NEW"
        assert metadata["quantity"].default_value == 1
        assert not metadata["price"].has_default
        assert not metadata["price"].is_server_generated
        assert metadata["created_at"].server_default is not None

    def test_declared_computed_columns(self, conn):
        introspector = DuckDBSchemaIntrospector(conn, computed_columns={"ORDERS": {"price": "quantity * 9.99"}})
        column = introspector.get_table_metadata("orders")["price"]
        assert column.is_computed
        assert column.compute_expression == "quantity * 9.99"

    def test_composite_primary_key(self, conn):
        assert DuckDBSchemaIntrospector(conn).get_primary_keys("order_lines") == ["order_id", "line_no"]

    def test_unknown_table(self, conn):
        introspector = DuckDBSchemaIntrospector(conn)
        assert introspector.get_table_metadata("ghost") == {}
        assert introspector.get_primary_keys("ghost") == []

    def test_closed_connection_raises_storage_error(self):
        connection = duckdb.connect(":memory:")
        connection.close()
        with pytest.raises(StorageError):
            DuckDBSchemaIntrospector(connection).get_table_metadata("orders")


class TestRows:
    """Test complete-row fetches."""

    def test_fetch_by_key(self, conn):
        conn.execute("INSERT INTO orders (status, price) VALUES ('PAID', 12.50)")
        row = DuckDBSchemaIntrospector(conn).get_complete_row("orders", {"id": 1})
        assert row["status"] == "PAID"
        assert row["quantity"] == 1
        assert row["created_at"] is not None

    def test_sees_uncommitted_rows_of_same_connection(self, conn):
        introspector = DuckDBSchemaIntrospector(conn)
        conn.begin()
        conn.execute("INSERT INTO order_lines VALUES (1, 1, 'SKU-1')")
        assert introspector.get_complete_row("order_lines", {"order_id": 1, "line_no": 1})["sku"] == "SKU-1"
        conn.rollback()
        assert introspector.get_complete_row("order_lines", {"order_id": 1, "line_no": 1}) == {}

    def test_missing_row_and_empty_key(self, conn):
        introspector = DuckDBSchemaIntrospector(conn)
        assert introspector.get_complete_row("orders", {"id": 404}) == {}
        assert introspector.get_complete_row("orders", {}) == {}

    def test_rejects_unsafe_table_name(self, conn):
        with pytest.raises(StorageError):
            DuckDBSchemaIntrospector(conn).get_complete_row("orders; DROP TABLE orders", {"id": 1})
