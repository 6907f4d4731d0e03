"""Tests for the DuckDB audit store."""

from datetime import datetime, timedelta

import duckdb
import pytest

from src.adapters.storage.duckdb_adapter import DuckDBAuditStore
from src.domain.cdc_models import AuditRecord, OperationType
from src.domain.ports import StorageError
from src.infrastructure.config_manager import DatabaseConfig

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def _record(table="orders", minutes=0, **kwargs) -> AuditRecord:
    return AuditRecord(
        table_name=table,
        operation=kwargs.pop("operation", OperationType.UPDATE),
        occurred_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def store():
    audit_store = DuckDBAuditStore(db_path=":memory:")
    assert audit_store.initialize_schema().is_success()
    yield audit_store
    audit_store.close()


class TestInitialization:
    """Test store construction and schema creation."""

    def test_schema_is_idempotent(self, store):
        assert store.initialize_schema().is_success()
        columns = [row[0] for row in store._get_connection().execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = 'sys_data_audit_log'"
        ).fetchall()]
        assert "audit_id" in columns and "operate_time" in columns

    def test_rejects_postgresql_config(self):
        with pytest.raises(StorageError):
            DuckDBAuditStore(db_config=DatabaseConfig(db_type="postgresql", host="h", database="d"))

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(StorageError):
            DuckDBAuditStore(table_name="audit; DROP TABLE orders")

    def test_file_database(self, tmp_path):
        path = str(tmp_path / "audit.duckdb")
        first = DuckDBAuditStore(db_config=DatabaseConfig(db_type="duckdb", db_path=path))
        first.save(_record())
        first.close()

        second = DuckDBAuditStore(db_path=path)
        assert len(second.fetch_in_insertion_order()) == 1
        second.close()

    def test_shared_connection_uses_separate_transaction(self):
        conn = duckdb.connect(":memory:")
        conn.execute("CREATE TABLE t (id INTEGER)")
        audit_store = DuckDBAuditStore(connection=conn)

        conn.begin()
        conn.execute("INSERT INTO t VALUES (1)")
        assert audit_store.save(_record()).is_success()
        conn.rollback()

        assert len(audit_store.fetch_in_insertion_order()) == 1
        audit_store.close()
        conn.close()


class TestWrites:
    """Test saving records."""

    def test_save_returns_audit_id(self, store):
        record = _record()
        result = store.save(record)
        assert result.is_success()
        assert result.value == record.audit_id

    def test_save_all_preserves_order(self, store):
        records = [_record(table=name) for name in ("c", "a", "b")]
        assert store.save_all(records).value == 3
        assert [r.table_name for r in store.fetch_in_insertion_order()] == ["c", "a", "b"]

    def test_round_trip_fields(self, store):
        record = _record(
            primary_key_name="id", primary_key_value="7",
            old_value_json='{"a": 1}', new_value_json=None, actor="alice", remark="note",
        )
        store.save(record)
        assert store.fetch_in_insertion_order()[0] == record

    def test_retried_batch_does_not_duplicate(self, store):
        records = [_record(), _record()]
        store.save_all(records[:1])
        assert store.save_all(records).is_success()
        assert len(store.fetch_in_insertion_order()) == 2

    def test_empty_batch(self, store):
        assert store.save_all([]).value == 0

    def test_failure_is_reported_as_result(self, store):
        store._get_connection().execute("DROP TABLE sys_data_audit_log")
        result = store.save(_record())
        assert result.is_failure()
        assert result.error_type == "StorageError"


class TestQueries:
    """Test paging and listing."""

    def test_query_window_and_order(self, store):
        store.save_all([
            _record(minutes=30, remark="late"),
            _record(minutes=10, remark="early"),
            _record(minutes=20, remark="middle"),
            _record(table="customers", minutes=15),
            _record(minutes=500, remark="outside"),
        ])

        page = store.query("ORDERS", BASE_TIME, BASE_TIME + timedelta(hours=1)).value

        assert page.total == 3
        assert [r.remark for r in page.records] == ["early", "middle", "late"]

    def test_paging(self, store):
        store.save_all([_record(minutes=i) for i in range(25)])
        end = BASE_TIME + timedelta(hours=1)

        last = store.query("orders", BASE_TIME, end, page=2, page_size=10).value

        assert last.total == 25
        assert len(last.records) == 5
        assert not last.has_next
        assert last.records[0].occurred_at == BASE_TIME + timedelta(minutes=20)

    def test_same_timestamp_ordered_by_insertion(self, store):
        store.save_all([_record(remark=str(i)) for i in range(5)])
        page = store.query("orders", BASE_TIME, BASE_TIME).value
        assert [r.remark for r in page.records] == ["0", "1", "2", "3", "4"]

    def test_list_audited_tables(self, store):
        store.save_all([_record("orders"), _record("customers"), _record("orders")])
        assert store.list_audited_tables().value == {"orders", "customers"}
