"""PostgreSQL Schema Introspector.

Reads column metadata (defaults, identity and generated columns, primary
keys) from information_schema and fetches complete rows by primary key.

Security Impact:
    - Identifiers are composed with psycopg2.sql, key values are bound

Architecture:
    - Implements SchemaIntrospectorPort
    - Runs on the caller's business connection so post-execution fetches see
      the open transaction's rows
    - Every catalog/row query runs inside a savepoint: a failing audit query
      is rolled back to the savepoint and never aborts the business
      transaction
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from psycopg2 import sql

from src.adapters.sql_utils import build_column_metadata
from src.domain.cdc_models import ColumnMetadata
from src.domain.ports import SchemaIntrospectorPort, StorageError

logger = logging.getLogger(__name__)

_SAVEPOINT = sql.Identifier("txn_audit_introspection")

_COLUMNS_SQL = """
    SELECT column_name, data_type, column_default, is_identity, is_generated, generation_expression
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

_PRIMARY_KEY_SQL = """
    SELECT kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
     AND tc.table_name = kcu.table_name
    WHERE tc.constraint_type = 'PRIMARY KEY'
      AND tc.table_schema = %s AND tc.table_name = %s
    ORDER BY kcu.ordinal_position
"""


class PostgreSQLSchemaIntrospector(SchemaIntrospectorPort):
    """Catalog-backed introspector for PostgreSQL.

    Parameters:
        connection: psycopg2 connection the business mutations run on
        schema: Schema holding the audited tables
    """

    def __init__(self, connection, schema: str = "public"):
        self.connection = connection
        self.schema = schema

    @contextmanager
    def _cursor(self, operation: str, table_name: str) -> Iterator[Any]:
        use_savepoint = not getattr(self.connection, "autocommit", False)
        cursor = self.connection.cursor()
        try:
            if use_savepoint:
                cursor.execute(sql.SQL("SAVEPOINT {}").format(_SAVEPOINT))
            yield cursor
            if use_savepoint:
                cursor.execute(sql.SQL("RELEASE SAVEPOINT {}").format(_SAVEPOINT))
        except Exception as e:
            if use_savepoint:
                try:
                    cursor.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(_SAVEPOINT))
                except Exception as rollback_error:
                    logger.error(f"Failed to roll back introspection savepoint: {str(rollback_error)}")
            raise StorageError(
                f"Failed to {operation.replace('_', ' ')} for {table_name}: {str(e)}",
                operation=operation,
                details={"table_name": table_name}
            )
        finally:
            cursor.close()

    def get_primary_keys(self, table_name: str) -> list[str]:
        with self._cursor("get_primary_keys", table_name) as cursor:
            cursor.execute(_PRIMARY_KEY_SQL, (self.schema, table_name))
            return [row[0] for row in cursor.fetchall()]

    def get_table_metadata(self, table_name: str) -> dict[str, ColumnMetadata]:
        with self._cursor("get_table_metadata", table_name) as cursor:
            cursor.execute(_COLUMNS_SQL, (self.schema, table_name))
            rows = cursor.fetchall()
        if not rows:
            logger.debug(f"Table {table_name} not found in schema {self.schema}")
            return {}

        primary_keys = set(self.get_primary_keys(table_name))
        metadata = {}
        for name, data_type, default, is_identity, is_generated, generation_expression in rows:
            metadata[name] = build_column_metadata(
                name=name,
                sql_type=data_type,
                default_expression=default,
                is_primary_key=name in primary_keys,
                is_identity=is_identity == 'YES',
                generation_expression=generation_expression if is_generated == 'ALWAYS' else None,
            )
        return metadata

    def get_complete_row(self, table_name: str, key_columns: dict[str, Any]) -> dict[str, Any]:
        if not key_columns:
            return {}
        query = sql.SQL("SELECT * FROM {schema}.{table} WHERE {conditions} LIMIT 1").format(
            schema=sql.Identifier(self.schema),
            table=sql.Identifier(table_name),
            conditions=sql.SQL(" AND ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in key_columns
            ),
        )
        with self._cursor("get_complete_row", table_name) as cursor:
            cursor.execute(query, list(key_columns.values()))
            row = cursor.fetchone()
            if row is None:
                return {}
            columns = [description[0] for description in cursor.description]
        return dict(zip(columns, row))
