"""Audit Record Builder.

Turns a ChangeDescriptor with resolved snapshots into an immutable AuditRecord:
applies the table include/exclude policy and per-table column allow-lists,
serializes both snapshots to JSON, and stamps actor and time.

Security Impact:
    - Column allow-lists keep non-audited (possibly sensitive) columns out of
      the audit trail
    - The audit store's own table is never audited, preventing feedback loops
      when the audit writer is observed by the same detector

Architecture:
    - Pure transformation: no I/O beyond peeking at already-cached metadata
    - Deterministic given the descriptor, actor and timestamp
"""

import json
import logging
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Optional

from src.domain.cdc_models import AuditRecord, ChangeDescriptor, is_pending, utc_now

if TYPE_CHECKING:
    from src.infrastructure.config_manager import AuditConfig
    from src.infrastructure.metadata_cache import TableMetadataCache

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"
MAX_REMARK_LENGTH = 500


def _json_default(value: Any) -> Any:
    """JSON fallback for database value types."""
    if is_pending(value):
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def serialize_snapshot(data: Optional[dict[str, Any]]) -> Optional[str]:
    """Serialize a row snapshot; absent or empty snapshots serialize to None.

    Placeholders that were never resolved serialize as JSON null.
    """
    if not data:
        return None
    cleaned = {column: (None if is_pending(value) else value) for column, value in data.items()}
    return json.dumps(cleaned, default=_json_default, ensure_ascii=False)


class AuditRecordBuilder:
    """Builds AuditRecords from resolved ChangeDescriptors.

    Parameters:
        config: AuditConfig with table filters and column allow-lists
        actor_provider: Callable returning the current acting identity
        metadata_cache: Optional cache used to name primary keys when the
            descriptor carries no key data

    Example Usage:
        ```python
        builder = AuditRecordBuilder(config, actor_provider=get_current_actor)
        if builder.should_audit(descriptor.table_name):
            record = builder.build(resolved_descriptor)
        ```
    """

    def __init__(
        self,
        config: "AuditConfig",
        actor_provider: Optional[Callable[[], Optional[str]]] = None,
        metadata_cache: Optional["TableMetadataCache"] = None
    ):
        self.config = config
        self.actor_provider = actor_provider
        self.metadata_cache = metadata_cache

    def should_audit(self, table_name: str) -> bool:
        """Apply the enabled flag, self-exclusion and include/exclude filters."""
        if not self.config.enabled:
            return False

        name = table_name.lower()
        if name == self.config.audit_table.lower():
            return False
        if self.config.include_tables and name not in self.config.include_tables:
            return False
        if self.config.exclude_tables and name in self.config.exclude_tables:
            return False
        return True

    def filter_columns(self, table_name: str, data: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        """Restrict a snapshot to the table's allow-list, if it has one."""
        if data is None:
            return None
        allowed = self.config.include_columns.get(table_name.lower()) if self.config.include_columns else None
        if not allowed:
            return data
        return {column: value for column, value in data.items() if column in allowed}

    def resolve_actor(self) -> str:
        if self.actor_provider is None:
            return SYSTEM_ACTOR
        try:
            actor = self.actor_provider()
        except Exception as e:
            logger.debug(f"Actor provider failed, using {SYSTEM_ACTOR}: {str(e)}")
            return SYSTEM_ACTOR
        return actor or SYSTEM_ACTOR

    def build(
        self,
        descriptor: ChangeDescriptor,
        occurred_at: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> Optional[AuditRecord]:
        """Build the audit record for one resolved mutation.

        Parameters:
            descriptor: Descriptor with resolved snapshots
            occurred_at: Timestamp to stamp (defaults to now, UTC)
            actor: Acting identity (defaults to actor_provider)

        Returns:
            AuditRecord, or None if the table is filtered out
        """
        if not self.should_audit(descriptor.table_name):
            return None

        key_name, key_value = self._primary_key_fields(descriptor)
        return AuditRecord(
            table_name=descriptor.table_name,
            operation=descriptor.operation,
            primary_key_name=key_name,
            primary_key_value=key_value,
            old_value_json=serialize_snapshot(self.filter_columns(descriptor.table_name, descriptor.before_data)),
            new_value_json=serialize_snapshot(self.filter_columns(descriptor.table_name, descriptor.after_data)),
            actor=actor or self.resolve_actor(),
            occurred_at=occurred_at or utc_now(),
            remark=self._remark(descriptor),
        )

    def _primary_key_fields(self, descriptor: ChangeDescriptor) -> tuple[Optional[str], Optional[str]]:
        key = descriptor.key_data
        if not key and self.metadata_cache is not None:
            metadata = self.metadata_cache.peek(descriptor.table_name) or {}
            snapshot = descriptor.after_data or descriptor.before_data or {}
            key = {
                name: snapshot[name] for name, column in metadata.items()
                if column.is_primary_key and name in snapshot and not is_pending(snapshot[name])
            }
        if not key:
            return None, None
        names = ",".join(key.keys())
        values = ",".join("" if value is None else str(value) for value in key.values())
        return names, values

    @staticmethod
    def _remark(descriptor: ChangeDescriptor) -> Optional[str]:
        parts = [part for part in [descriptor.remark, *descriptor.resolution_notes] if part]
        if not parts:
            return None
        return "; ".join(parts)[:MAX_REMARK_LENGTH]
