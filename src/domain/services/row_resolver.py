"""Row Resolution Service.

This service turns the partial column data a mutation detector can see into
complete before/after row snapshots, using table metadata (defaults,
auto-increment and computed columns, primary keys) and the introspector's
row-fetch capability.

Security Impact:
    - Snapshots contain full rows and may contain PII; column allow-lists are
      applied later by the AuditRecordBuilder
    - Predicate text is only pattern-matched, never executed; row fetches use
      bound parameters

Architecture:
    - Pure domain service; all I/O goes through SchemaIntrospectorPort
    - Two phases: prepare() before the mutation executes, complete() after
    - Failures degrade to an absent snapshot side and never abort the mutation
"""

import logging
import re
from typing import Any, Optional

from src.domain.cdc_models import (
    PENDING,
    ChangeDescriptor,
    ColumnMetadata,
    OperationType,
    is_pending,
)
from src.domain.guardrails import AuditMetrics
from src.domain.ports import SchemaIntrospectorPort

logger = logging.getLogger(__name__)

# column = value | column = 'value', optionally table-qualified.
# Comparison operators other than a single '=' never match.
_PREDICATE_PATTERN = re.compile(
    r"(?:\b\w+\.)?\b(\w+)\s*=(?!=)\s*"
    r"(?:'((?:[^']|'')*)'|(-?\d+(?:\.\d+)?)\b|(\w+))"
)

_QUOTED_LITERAL = re.compile(r"^'((?:[^']|'')*)'(?:::[\w\s]+)?$")
_CAST_LITERAL = re.compile(r"^CAST\s*\(\s*'((?:[^']|'')*)'\s+AS\s+[\w\s()]+\)$", re.IGNORECASE)
_CAST_NUMBER = re.compile(r"^CAST\s*\(\s*(-?\d+(?:\.\d+)?)\s+AS\s+[\w\s()]+\)$", re.IGNORECASE)
_NUMBER_LITERAL = re.compile(r"^\(?(-?\d+(?:\.\d+)?)\)?(?:::[\w\s]+)?$")


def _coerce_number(text: str) -> Any:
    return float(text) if '.' in text else int(text)


def parse_default_literal(expression: Optional[str]) -> tuple[bool, Any]:
    """Interpret a catalog column default.

    Parameters:
        expression: The default as reported by the catalog

    Returns:
        (True, value) for literal defaults, (False, None) for server-evaluated
        expressions such as nextval(...) or CURRENT_TIMESTAMP

    Example:
        ```python
        parse_default_literal("'PENDING'::character varying")  # (True, "PENDING")
        parse_default_literal("nextval('orders_id_seq'::regclass)")  # (False, None)
        ```
    """
    if expression is None:
        return False, None
    text = expression.strip()

    for pattern in (_QUOTED_LITERAL, _CAST_LITERAL):
        match = pattern.match(text)
        if match:
            return True, match.group(1).replace("''", "'")

    for pattern in (_NUMBER_LITERAL, _CAST_NUMBER):
        match = pattern.match(text)
        if match:
            return True, _coerce_number(match.group(1))

    upper = text.upper()
    if upper in ("TRUE", "FALSE"):
        return True, upper == "TRUE"
    if upper == "NULL" or upper.startswith("NULL::"):
        return True, None
    return False, None


def extract_predicate_keys(predicate: Optional[str], primary_keys: list[str]) -> dict[str, Any]:
    """Best-effort extraction of primary-key values from a WHERE clause.

    Only `column = value` / `column = 'value'` terms whose column is a primary
    key are kept. Compound conditions, functions and sub-queries yield partial
    or no matches. A key column matched with two different values (e.g. an
    OR of equalities) cannot identify one row, so nothing is returned.

    Parameters:
        predicate: Raw row-selection condition
        primary_keys: Primary-key column names of the table

    Returns:
        Key column → value (possibly empty, never raises)
    """
    if not predicate or not primary_keys:
        return {}

    key_lookup = {name.lower(): name for name in primary_keys}
    found: dict[str, Any] = {}
    for match in _PREDICATE_PATTERN.finditer(predicate):
        column = key_lookup.get(match.group(1).lower())
        if column is None:
            continue

        quoted, number, bare = match.group(2), match.group(3), match.group(4)
        if quoted is not None:
            value: Any = quoted.replace("''", "'")
        elif number is not None:
            value = _coerce_number(number)
        else:
            if bare.upper() == "NULL":
                continue
            value = bare

        if column in found and found[column] != value:
            logger.debug(f"Ambiguous key predicate for column {column}: {predicate}")
            return {}
        found[column] = value
    return found


class RowResolver:
    """Service for resolving complete before/after row snapshots.

    Parameters:
        introspector: Schema introspector (normally a TableMetadataCache)
        metrics: Optional counters; resolution failures are counted here

    Example Usage:
        ```python
        resolver = RowResolver(TableMetadataCache(introspector))
        prepared = resolver.prepare(descriptor)     # before executing
        ...execute the mutation...
        resolved = resolver.complete(prepared, generated_keys={"id": new_id})
        ```
    """

    def __init__(self, introspector: SchemaIntrospectorPort, metrics: Optional[AuditMetrics] = None):
        self.introspector = introspector
        self.metrics = metrics or AuditMetrics()

    # ------------------------------------------------------------------
    # Phase 1: before execution
    # ------------------------------------------------------------------

    def prepare(self, descriptor: ChangeDescriptor) -> ChangeDescriptor:
        """Enrich a freshly detected descriptor before the mutation executes.

        - INSERT: fills omitted columns with literal defaults, or PENDING for
          auto-increment, computed and server-evaluated default columns
        - UPDATE: captures the before row and marks computed columns PENDING
        - DELETE: captures the before row
        """
        metadata = self._safe_metadata(descriptor)
        if descriptor.operation == OperationType.INSERT:
            after = self.fill_insert_defaults(self.known_columns(descriptor.after_data or {}, metadata), metadata)
            key = descriptor.key_data or self._key_from_data(descriptor.table_name, after)
            return descriptor.model_copy(update={'after_data': after, 'key_data': key or None})

        key = self._resolve_key(descriptor)
        updates: dict[str, Any] = {'key_data': key or descriptor.key_data}
        if descriptor.before_data is None:
            descriptor, before = self._fetch_side(descriptor, key, "before")
            updates['before_data'] = before
        else:
            updates['before_data'] = self.known_columns(descriptor.before_data, metadata)

        if descriptor.operation == OperationType.UPDATE:
            after = self.known_columns(descriptor.after_data or {}, metadata)
            for name, column in metadata.items():
                if column.is_computed:
                    after[name] = PENDING
            updates['after_data'] = after
        return descriptor.model_copy(update=updates)

    @staticmethod
    def known_columns(
        data: Optional[dict[str, Any]],
        metadata: dict[str, ColumnMetadata]
    ) -> Optional[dict[str, Any]]:
        """Drop values for columns the table does not define.

        Data for a table without metadata is returned unchanged.
        """
        if data is None or not metadata:
            return None if data is None else dict(data)
        unknown = [name for name in data if name not in metadata]
        if unknown:
            logger.debug(f"Ignoring unknown column(s) {unknown}")
        return {name: value for name, value in data.items() if name in metadata}

    @staticmethod
    def fill_insert_defaults(
        after_data: dict[str, Any],
        metadata: dict[str, ColumnMetadata]
    ) -> dict[str, Any]:
        """Complete an INSERT's column values from table metadata."""
        enriched = dict(after_data)
        for name, column in metadata.items():
            if name in enriched:
                continue
            if column.has_default:
                enriched[name] = column.default_value
            elif column.is_server_generated:
                enriched[name] = PENDING
        return enriched

    # ------------------------------------------------------------------
    # Phase 2: after execution
    # ------------------------------------------------------------------

    def complete(
        self,
        descriptor: ChangeDescriptor,
        generated_keys: Optional[dict[str, Any]] = None
    ) -> ChangeDescriptor:
        """Re-resolve post-execution values from the stored row.

        Parameters:
            descriptor: Descriptor returned by prepare()
            generated_keys: Keys produced by the execution (e.g. RETURNING id)

        Returns:
            Descriptor whose snapshots reflect the stored row where possible
        """
        if descriptor.operation == OperationType.DELETE:
            return descriptor.model_copy(update={'after_data': None})

        metadata = self._safe_metadata(descriptor)
        after = dict(descriptor.after_data or {})
        if generated_keys:
            after.update(generated_keys)
        after = self.known_columns(after, metadata)

        if descriptor.operation == OperationType.INSERT:
            key = self._key_from_data(descriptor.table_name, after)
            if not any(is_pending(value) for value in after.values()):
                return descriptor.model_copy(update={'after_data': after, 'key_data': key or descriptor.key_data})
        else:
            key = dict(descriptor.key_data or {})
            for column in list(key):
                if column in after and not is_pending(after[column]):
                    key[column] = after[column]

        descriptor, row = self._fetch_side(descriptor, key, "after")
        if row is not None:
            # {} on a fetch miss
            resolved = row
        elif descriptor.operation == OperationType.INSERT and not key:
            # nothing to fetch by: keep the default-filled values
            resolved = after
        else:
            resolved = None

        return descriptor.model_copy(update={'after_data': resolved, 'key_data': key or descriptor.key_data})

    # ------------------------------------------------------------------
    # Primary keys
    # ------------------------------------------------------------------

    def primary_keys(self, table_name: str) -> list[str]:
        """Primary-key columns of a table (metadata flag, then dedicated lookup)."""
        return self.introspector.get_primary_keys(table_name)

    def _key_from_data(self, table_name: str, data: dict[str, Any]) -> dict[str, Any]:
        try:
            keys = self.primary_keys(table_name)
        except Exception as e:
            logger.warning(f"Primary-key lookup failed for {table_name}: {str(e)}")
            self.metrics.increment("resolution_failures")
            return {}
        return {
            name: data[name] for name in keys
            if name in data and data[name] is not None and not is_pending(data[name])
        }

    def _resolve_key(self, descriptor: ChangeDescriptor) -> dict[str, Any]:
        """Structured key data first, then the predicate, then the before row."""
        if descriptor.key_data:
            return dict(descriptor.key_data)
        try:
            keys = self.primary_keys(descriptor.table_name)
        except Exception as e:
            logger.warning(f"Primary-key lookup failed for {descriptor.table_name}: {str(e)}")
            self.metrics.increment("resolution_failures")
            return {}

        key = extract_predicate_keys(descriptor.predicate, keys)
        if not key and descriptor.before_data:
            key = {name: descriptor.before_data[name] for name in keys if name in descriptor.before_data}
        if keys and set(key) != set(keys):
            return {}
        return key

    # ------------------------------------------------------------------
    # Failure-tolerant I/O
    # ------------------------------------------------------------------

    def _safe_metadata(self, descriptor: ChangeDescriptor) -> dict[str, ColumnMetadata]:
        try:
            return self.introspector.get_table_metadata(descriptor.table_name)
        except Exception as e:
            logger.warning(f"Metadata lookup failed for {descriptor.table_name}: {str(e)}")
            self.metrics.increment("resolution_failures")
            return {}

    def _fetch_side(
        self,
        descriptor: ChangeDescriptor,
        key: dict[str, Any],
        side: str
    ) -> tuple[ChangeDescriptor, Optional[dict[str, Any]]]:
        """Fetch a row for one snapshot side.

        Returns:
            (descriptor, row): row is the stored row, {} on a fetch miss, or
            None when no key could be determined or the fetch failed. The
            returned descriptor carries a note for every degraded outcome.
        """
        if not key:
            self.metrics.increment("resolution_failures")
            return descriptor.with_note(f"{side} snapshot unavailable: no primary key"), None
        try:
            row = self.introspector.get_complete_row(descriptor.table_name, key)
        except Exception as e:
            logger.warning(
                f"Failed to fetch {side} row from {descriptor.table_name}: {str(e)}"
            )
            self.metrics.increment("resolution_failures")
            return descriptor.with_note(f"{side} snapshot unavailable: fetch failed"), None

        if not row:
            logger.debug(f"No {side} row found in {descriptor.table_name} for key {key}")
            return descriptor.with_note(f"{side} row not found"), {}
        return descriptor, dict(row)
