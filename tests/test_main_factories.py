"""Tests for the pipeline wiring factories."""

from unittest.mock import MagicMock, patch

import duckdb
import pytest

from src.adapters.metadata import DuckDBSchemaIntrospector, PostgreSQLSchemaIntrospector
from src.adapters.storage import DuckDBAuditStore, PostgreSQLAuditStore
from src.infrastructure.audit.change_audit_logger import ChangeAuditLogger
from src.infrastructure.config_manager import AuditConfig, DatabaseConfig
from src.main import create_audit_pipeline, create_audit_store, create_schema_introspector


class TestFactories:
    """Test adapter selection and pipeline assembly."""

    def test_duckdb_store_uses_configured_table(self):
        store = create_audit_store(DatabaseConfig(db_type="duckdb"), AuditConfig(audit_table="Trail"))
        assert isinstance(store, DuckDBAuditStore)
        assert store.table_name == "trail"

    def test_postgresql_store(self):
        with patch('src.adapters.storage.postgresql_adapter.pool'):
            store = create_audit_store(
                DatabaseConfig(db_type="postgresql", host="db", database="audit", username="u")
            )
        assert isinstance(store, PostgreSQLAuditStore)
        assert store.table_name == "sys_data_audit_log"

    def test_introspectors(self):
        conn = duckdb.connect(":memory:")
        assert isinstance(create_schema_introspector(DatabaseConfig(db_type="duckdb"), conn), DuckDBSchemaIntrospector)
        conn.close()
        pg_config = DatabaseConfig(db_type="postgresql", host="db", database="audit")
        assert isinstance(create_schema_introspector(pg_config, MagicMock()), PostgreSQLSchemaIntrospector)

    def test_unsupported_type(self):
        config = DatabaseConfig.model_construct(db_type="sqlite")
        with pytest.raises(ValueError):
            create_audit_store(config)
        with pytest.raises(ValueError):
            create_schema_introspector(config, MagicMock())

    def test_pipeline_wiring(self):
        store = MagicMock()
        introspector = MagicMock()
        config = AuditConfig(async_mode=False, max_retries=7, retry_backoff_seconds=0.5, dead_letter_capacity=3)

        audit_logger = create_audit_pipeline(config, store, introspector)

        assert isinstance(audit_logger, ChangeAuditLogger)
        writer = audit_logger.coordinator.writer
        assert writer.store is store
        assert writer.retry_policy.max_retries == 7
        assert writer.retry_policy.backoff_seconds == 0.5
        assert writer.async_mode is False
        assert audit_logger.coordinator.transaction_manager is None
        assert audit_logger.resolver.introspector is audit_logger.builder.metadata_cache
        assert audit_logger.metrics is writer.metrics
        audit_logger.shutdown(grace_period=0)

    def test_async_pipeline_shuts_down(self):
        audit_logger = create_audit_pipeline(AuditConfig(writer_workers=1), MagicMock(), MagicMock())
        assert audit_logger.coordinator.writer.async_mode is True
        audit_logger.shutdown(grace_period=1)
        assert audit_logger.coordinator.writer.submit([]) is None
