"""DuckDB Schema Introspector.

Reads column metadata from DuckDB's information_schema and duckdb_constraints(),
and fetches complete rows by primary key.

Architecture:
    - Implements SchemaIntrospectorPort
    - Runs on the caller's business connection, so rows written by the
      still-open business transaction are visible to post-execution fetches
    - Generated columns are not reported by DuckDB's catalog; declare them
      with computed_columns so UPDATE snapshots re-read them
"""

import logging
from typing import Any, Optional

import duckdb

from src.adapters.sql_utils import build_column_metadata, validate_identifier
from src.domain.cdc_models import ColumnMetadata
from src.domain.ports import SchemaIntrospectorPort, StorageError

logger = logging.getLogger(__name__)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class DuckDBSchemaIntrospector(SchemaIntrospectorPort):
    """Catalog-backed introspector for DuckDB.

    Parameters:
        connection: The business connection mutations run on
        schema: Schema holding the audited tables
        computed_columns: Table → {column: expression} for generated columns

    Example Usage:
        ```python
        conn = duckdb.connect("shop.duckdb")
        introspector = TableMetadataCache(DuckDBSchemaIntrospector(conn))
        introspector.get_table_metadata("orders")["status"].default_value  # "PENDING"
        ```
    """

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        schema: str = "main",
        computed_columns: Optional[dict[str, dict[str, str]]] = None
    ):
        self.connection = connection
        self.schema = schema
        self.computed_columns = {
            table.lower(): dict(columns) for table, columns in (computed_columns or {}).items()
        }

    def get_primary_keys(self, table_name: str) -> list[str]:
        try:
            rows = self.connection.execute(
                "SELECT constraint_column_names FROM duckdb_constraints() "
                "WHERE constraint_type = 'PRIMARY KEY' AND schema_name = ? AND lower(table_name) = ?",
                [self.schema, table_name.lower()]
            ).fetchall()
        except Exception as e:
            raise StorageError(
                f"Failed to read primary key of {table_name}: {str(e)}",
                operation="get_primary_keys",
                details={"table_name": table_name}
            )
        return list(rows[0][0]) if rows else []

    def get_table_metadata(self, table_name: str) -> dict[str, ColumnMetadata]:
        try:
            rows = self.connection.execute(
                "SELECT column_name, data_type, column_default FROM information_schema.columns "
                "WHERE table_schema = ? AND lower(table_name) = ? ORDER BY ordinal_position",
                [self.schema, table_name.lower()]
            ).fetchall()
        except Exception as e:
            raise StorageError(
                f"Failed to read metadata of {table_name}: {str(e)}",
                operation="get_table_metadata",
                details={"table_name": table_name}
            )
        if not rows:
            logger.debug(f"Table {table_name} not found in schema {self.schema}")
            return {}

        primary_keys = set(self.get_primary_keys(table_name))
        computed = self.computed_columns.get(table_name.lower(), {})
        return {
            name: build_column_metadata(
                name=name,
                sql_type=sql_type,
                default_expression=default,
                is_primary_key=name in primary_keys,
                generation_expression=computed.get(name),
            )
            for name, sql_type, default in rows
        }

    def get_complete_row(self, table_name: str, key_columns: dict[str, Any]) -> dict[str, Any]:
        if not key_columns:
            return {}
        table = validate_identifier(table_name, operation="get_complete_row")
        conditions = " AND ".join(f"{_quote(column)} = ?" for column in key_columns)
        cursor = self.connection.execute(
            f"SELECT * FROM {_quote(self.schema)}.{_quote(table)} WHERE {conditions} LIMIT 1",
            list(key_columns.values())
        )
        row = cursor.fetchone()
        if row is None:
            return {}
        columns = [description[0] for description in cursor.description]
        return dict(zip(columns, row))
