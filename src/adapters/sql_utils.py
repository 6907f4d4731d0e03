"""SQL helpers shared by the database adapters.

Security Impact:
    - Table and column names are validated as plain identifiers before they
      are placed in SQL text; values are always bound as parameters
"""

import re
from typing import Optional

from src.domain.cdc_models import ColumnMetadata
from src.domain.ports import StorageError
from src.domain.services.row_resolver import parse_default_literal

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str, operation: str = "__init__") -> str:
    """Return name if it is a plain SQL identifier, else raise StorageError."""
    if not _IDENTIFIER.match(name or ""):
        raise StorageError(f"Invalid identifier: {name!r}", operation=operation)
    return name


def build_column_metadata(
    name: str,
    sql_type: Optional[str],
    default_expression: Optional[str],
    is_primary_key: bool,
    is_identity: bool = False,
    generation_expression: Optional[str] = None
) -> ColumnMetadata:
    """Classify a catalog column.

    - identity columns and nextval(...) defaults are auto-increment
    - generated columns are computed
    - literal defaults are parsed into Python values
    - any other default is evaluated by the server (placeholder until fetched)
    """
    is_auto_increment = is_identity
    has_default = False
    default_value = None
    server_default = None

    if generation_expression:
        return ColumnMetadata(
            name=name,
            sql_type=sql_type,
            is_computed=True,
            compute_expression=generation_expression,
            is_primary_key=is_primary_key,
        )

    if default_expression is not None:
        if "nextval(" in default_expression.lower():
            is_auto_increment = True
        else:
            is_literal, value = parse_default_literal(default_expression)
            if is_literal:
                has_default, default_value = True, value
            else:
                server_default = default_expression

    return ColumnMetadata(
        name=name,
        sql_type=sql_type,
        is_auto_increment=is_auto_increment,
        has_default=has_default,
        default_value=default_value,
        server_default=server_default,
        is_primary_key=is_primary_key,
    )
