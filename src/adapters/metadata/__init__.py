"""Schema introspection adapters implementing SchemaIntrospectorPort."""

from src.adapters.metadata.duckdb_introspector import DuckDBSchemaIntrospector
from src.adapters.metadata.postgresql_introspector import PostgreSQLSchemaIntrospector

__all__ = ["DuckDBSchemaIntrospector", "PostgreSQLSchemaIntrospector"]
