"""Wiring for the txn-audit change-audit pipeline.

Factories that assemble the pipeline from configuration: the audit store, the
schema introspector for the business connection, and the pipeline facade
(resolver → builder → coordinator → writer).

Architecture:
    - Follows Hexagonal Architecture principles: adapters are chosen from
      DatabaseConfig, the domain services only see ports
    - One TableMetadataCache is shared by the RowResolver and the
      AuditRecordBuilder

Example Usage:
    ```python
    conn = duckdb.connect("shop.duckdb")
    store = create_audit_store(DatabaseConfig(db_type="duckdb", db_path="shop.duckdb"))
    tx_manager = LocalTransactionManager()
    audit_logger = create_audit_pipeline(
        AuditConfig(include_tables={"orders"}),
        store,
        create_schema_introspector(db_config, connection=conn),
        tx_manager,
    )
    ```
"""

import logging
from typing import Any, Optional

from src.adapters.metadata import DuckDBSchemaIntrospector, PostgreSQLSchemaIntrospector
from src.adapters.storage import DuckDBAuditStore, PostgreSQLAuditStore
from src.domain.guardrails import AuditMetrics, RetryPolicy
from src.domain.ports import (
    AuditStorePort,
    MutationDetectorPort,
    SchemaIntrospectorPort,
    TransactionManagerPort,
)
from src.domain.services.audit_record_builder import AuditRecordBuilder
from src.domain.services.row_resolver import RowResolver
from src.infrastructure.audit.change_audit_logger import ChangeAuditLogger
from src.infrastructure.audit.persistence_writer import PersistenceWriter
from src.infrastructure.audit.transaction_coordinator import TransactionCoordinator
from src.infrastructure.audit_context import get_current_actor
from src.infrastructure.config_manager import AuditConfig, DatabaseConfig
from src.infrastructure.metadata_cache import TableMetadataCache

logger = logging.getLogger(__name__)


def create_audit_store(
    db_config: DatabaseConfig,
    audit_config: Optional[AuditConfig] = None,
    connection: Optional[Any] = None
) -> AuditStorePort:
    """Create the audit store for the configured database type.

    Parameters:
        db_config: Database configuration
        audit_config: Supplies the audit table name
        connection: DuckDB only; share the database of an open connection

    Raises:
        ValueError: If the database type is unsupported
    """
    table_name = (audit_config or AuditConfig()).audit_table
    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB audit store with path: {db_config.db_path or ':memory:'}")
        return DuckDBAuditStore(db_config=db_config, connection=connection, table_name=table_name)
    if db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL audit store with host: {db_config.host}")
        return PostgreSQLAuditStore(db_config=db_config, table_name=table_name)
    raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_schema_introspector(db_config: DatabaseConfig, connection: Any) -> SchemaIntrospectorPort:
    """Create the introspector for the business connection mutations run on."""
    if db_config.db_type == "duckdb":
        return DuckDBSchemaIntrospector(connection)
    if db_config.db_type == "postgresql":
        return PostgreSQLSchemaIntrospector(connection)
    raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_audit_pipeline(
    audit_config: AuditConfig,
    store: AuditStorePort,
    introspector: SchemaIntrospectorPort,
    transaction_manager: Optional[TransactionManagerPort] = None,
    detector: Optional[MutationDetectorPort] = None,
    metrics: Optional[AuditMetrics] = None,
    metadata_cache: Optional[TableMetadataCache] = None
) -> ChangeAuditLogger:
    """Assemble the change-audit pipeline.

    Parameters:
        audit_config: Filters, allow-lists, retry and async settings
        store: Audit store records are written to
        introspector: Catalog access for the audited database (wrapped in a
            TableMetadataCache unless metadata_cache is given)
        transaction_manager: Host transaction notifications; without one
            every record is written directly
        detector: Optional detector for ChangeAuditLogger.audit_entity()
        metrics: Shared counters (a new set by default)
        metadata_cache: Pre-built cache to share with other components

    Returns:
        ChangeAuditLogger ready to audit mutations
    """
    metrics = metrics or AuditMetrics()
    cache = metadata_cache or TableMetadataCache(introspector)

    writer = PersistenceWriter(
        store,
        retry_policy=RetryPolicy(
            max_retries=audit_config.max_retries,
            backoff_seconds=audit_config.retry_backoff_seconds,
        ),
        metrics=metrics,
        async_mode=audit_config.async_mode,
        max_workers=audit_config.writer_workers,
        dead_letter_capacity=audit_config.dead_letter_capacity,
    )
    coordinator = TransactionCoordinator(writer, transaction_manager, metrics)
    resolver = RowResolver(cache, metrics)
    builder = AuditRecordBuilder(audit_config, actor_provider=get_current_actor, metadata_cache=cache)

    logger.info(
        f"Audit pipeline ready (enabled={audit_config.enabled}, async={audit_config.async_mode}, "
        f"max_retries={audit_config.max_retries}, table={audit_config.audit_table})"
    )
    return ChangeAuditLogger(resolver, builder, coordinator, metrics=metrics, detector=detector)
