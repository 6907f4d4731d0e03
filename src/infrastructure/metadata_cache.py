"""Table Metadata Cache.

This module provides an explicit, injectable cache in front of a
SchemaIntrospector. The RowResolver and the AuditRecordBuilder share one
instance; the owner of the introspector can invalidate entries after a schema
change.

Architecture:
    - Implements SchemaIntrospectorPort, so it can stand wherever an
      introspector is expected
    - Read-mostly: concurrent readers take a short lock only to look up or
      store an entry; catalog queries run outside the lock, so a cold entry may
      be loaded more than once (accepted)
    - Empty metadata (unknown table) is never cached
"""

import logging
from threading import Lock
from typing import Any, Optional

from src.domain.cdc_models import ColumnMetadata
from src.domain.ports import SchemaIntrospectorPort

logger = logging.getLogger(__name__)


class TableMetadataCache(SchemaIntrospectorPort):
    """Caching decorator for a SchemaIntrospectorPort.

    Parameters:
        introspector: The catalog-backed introspector to wrap

    Example Usage:
        ```python
        cache = TableMetadataCache(DuckDBSchemaIntrospector(connection=conn))
        resolver = RowResolver(cache)
        ...
        cache.invalidate("orders")  # after ALTER TABLE orders
        ```
    """

    def __init__(self, introspector: SchemaIntrospectorPort):
        self._introspector = introspector
        self._lock = Lock()
        self._metadata: dict[str, dict[str, ColumnMetadata]] = {}
        self._primary_keys: dict[str, list[str]] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(table_name: str) -> str:
        return table_name.strip().lower()

    def get_table_metadata(self, table_name: str) -> dict[str, ColumnMetadata]:
        key = self._key(table_name)
        with self._lock:
            cached = self._metadata.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        metadata = self._introspector.get_table_metadata(key)
        if metadata:
            with self._lock:
                self._metadata[key] = metadata
        else:
            logger.debug(f"No metadata for table {key}; not caching")
        return metadata

    def get_primary_keys(self, table_name: str) -> list[str]:
        """Primary-key columns, from metadata flags or the dedicated lookup.

        The answer is cached alongside the metadata so it stays consistent for
        a table until invalidated.
        """
        key = self._key(table_name)
        with self._lock:
            cached = self._primary_keys.get(key)
        if cached is not None:
            return list(cached)

        metadata = self.get_table_metadata(key)
        keys = [name for name, column in metadata.items() if column.is_primary_key]
        if not keys:
            keys = list(self._introspector.get_primary_keys(key))

        if metadata:
            with self._lock:
                self._primary_keys[key] = keys
        return list(keys)

    def get_complete_row(self, table_name: str, key_columns: dict[str, Any]) -> dict[str, Any]:
        return self._introspector.get_complete_row(self._key(table_name), key_columns)

    def peek(self, table_name: str) -> Optional[dict[str, ColumnMetadata]]:
        """Cached metadata without touching the catalog (None if not loaded)."""
        with self._lock:
            return self._metadata.get(self._key(table_name))

    def invalidate(self, table_name: Optional[str] = None) -> None:
        """Drop one table's entry, or every entry when table_name is None."""
        with self._lock:
            if table_name is None:
                self._metadata.clear()
                self._primary_keys.clear()
                logger.info("Invalidated all table metadata")
                return
            key = self._key(table_name)
            self._metadata.pop(key, None)
            self._primary_keys.pop(key, None)
        logger.info(f"Invalidated table metadata: {key}")

    def get_statistics(self) -> dict:
        with self._lock:
            return {
                'tables_cached': len(self._metadata),
                'hits': self._hits,
                'misses': self._misses,
            }
