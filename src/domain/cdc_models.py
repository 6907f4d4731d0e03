"""Change Data Capture (CDC) Models.

This module defines the models that flow through the transactional change-audit
pipeline: the change descriptor produced by a mutation detector, the column
metadata consumed by the row resolver, and the audit record that is finally
persisted.

Security Impact:
    - Audit records may contain PII (old/new row snapshots)
    - Audit records are immutable once built (append-only trail)
    - Column allow-lists are applied before snapshots are serialized

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are validated by Pydantic before use
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns of the audit stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OperationType(str, Enum):
    """Kind of row-level mutation."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class _PendingValue:
    """Marker for a column value that is only known after the mutation executes."""

    _instance: Optional["_PendingValue"] = None

    def __new__(cls) -> "_PendingValue":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<pending>"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_PendingValue":
        return self

    def __deepcopy__(self, memo: dict) -> "_PendingValue":
        return self


PENDING = _PendingValue()


def is_pending(value: Any) -> bool:
    """Check whether a snapshot value is the post-execution placeholder."""
    return value is PENDING


class ChangeDescriptor(BaseModel):
    """Represents one detected row-level mutation.

    A descriptor is created by a mutation detector with whatever is known at
    detection time and is then enriched by the RowResolver. Enrichment never
    mutates a descriptor in place: the resolver returns updated copies.

    Parameters:
        table_name: Name of the mutated table (lower-cased, non-empty)
        operation: Type of change (INSERT, UPDATE, DELETE)
        predicate: Raw row-selection condition (WHERE clause text), if any
        before_data: Column values before the mutation (UPDATE/DELETE)
        after_data: Column values after the mutation (INSERT/UPDATE)
        key_data: Primary-key column values, when the detector knows them
        remark: Free-text remark carried into the audit record
        resolution_notes: Degradation notes added by the RowResolver
    """

    table_name: str = Field(..., description="Name of the mutated table")
    operation: OperationType = Field(..., description="Type of change: INSERT, UPDATE, or DELETE")
    predicate: Optional[str] = Field(None, description="Raw row-selection condition")
    before_data: Optional[dict[str, Any]] = Field(None, description="Row values before the change")
    after_data: Optional[dict[str, Any]] = Field(None, description="Row values after the change")
    key_data: Optional[dict[str, Any]] = Field(None, description="Primary-key column values")
    remark: Optional[str] = Field(None, description="Free-text remark")
    resolution_notes: list[str] = Field(default_factory=list, description="Snapshot degradation notes")

    model_config = {
        'frozen': False,
        'arbitrary_types_allowed': True,
    }

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Normalize the table name; an empty name is a detection error."""
        name = (v or "").strip().strip('`"').lower()
        if not name:
            raise ValueError("table_name must not be empty")
        return name

    @model_validator(mode='after')
    def validate_snapshot_sides(self) -> 'ChangeDescriptor':
        """INSERT has no before side and DELETE has no after side."""
        if self.operation == OperationType.INSERT and self.before_data:
            raise ValueError("INSERT descriptors cannot carry before_data")
        if self.operation == OperationType.DELETE and self.after_data:
            raise ValueError("DELETE descriptors cannot carry after_data")
        return self

    def with_note(self, note: str) -> 'ChangeDescriptor':
        """Return a copy with an extra resolution note."""
        return self.model_copy(update={'resolution_notes': [*self.resolution_notes, note]})


class ColumnMetadata(BaseModel):
    """Catalog information about a single table column.

    Produced by a SchemaIntrospector and cached by TableMetadataCache.

    Parameters:
        name: Column name
        sql_type: Declared SQL type
        is_auto_increment: Value is generated by a sequence/identity
        is_computed: Value is derived server-side (generated column)
        compute_expression: Generation expression when is_computed
        has_default: Column declares a literal default
        default_value: Parsed literal default (only meaningful with has_default)
        server_default: Non-literal default evaluated by the server
            (e.g. CURRENT_TIMESTAMP)
        is_primary_key: Column is part of the primary key
    """

    name: str
    sql_type: Optional[str] = None
    is_auto_increment: bool = False
    is_computed: bool = False
    compute_expression: Optional[str] = None
    has_default: bool = False
    default_value: Optional[Any] = None
    server_default: Optional[str] = None
    is_primary_key: bool = False

    model_config = {
        'frozen': True,
    }

    @property
    def is_server_generated(self) -> bool:
        """True when the stored value is only known after execution."""
        return self.is_auto_increment or self.is_computed or self.server_default is not None


class AuditRecord(BaseModel):
    """The unit of persistence for the audit trail.

    Created once per ChangeDescriptor by the AuditRecordBuilder and immutable
    thereafter. It is owned by whichever batch (direct or transactional) is
    responsible for writing it.

    Parameters:
        audit_id: Unique identifier (idempotency key for retried writes)
        table_name: Audited table
        operation: INSERT, UPDATE or DELETE
        primary_key_name: Primary-key column name(s), comma separated
        primary_key_value: Stringified primary-key value(s), comma separated
        old_value_json: Serialized before snapshot (None if absent)
        new_value_json: Serialized after snapshot (None if absent)
        actor: Acting identity, "SYSTEM" when unknown
        occurred_at: When the record was built
        remark: Free-text remark (max 500 characters)
    """

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique audit identifier")
    table_name: str = Field(..., description="Audited table")
    operation: OperationType = Field(..., description="Type of change")
    primary_key_name: Optional[str] = Field(None, description="Primary-key column name(s)")
    primary_key_value: Optional[str] = Field(None, description="Stringified primary-key value(s)")
    old_value_json: Optional[str] = Field(None, description="Serialized before snapshot")
    new_value_json: Optional[str] = Field(None, description="Serialized after snapshot")
    actor: str = Field("SYSTEM", description="Acting identity")
    occurred_at: datetime = Field(default_factory=utc_now, description="When the change was audited")
    remark: Optional[str] = Field(None, max_length=500, description="Free-text remark")

    model_config = {
        'frozen': True,
    }

    def to_row(self) -> dict:
        """Convert to a dictionary keyed by audit table column names."""
        return {
            'audit_id': self.audit_id,
            'table_name': self.table_name,
            'operation_type': self.operation.value,
            'primary_key_name': self.primary_key_name,
            'primary_key_value': self.primary_key_value,
            'old_value': self.old_value_json,
            'new_value': self.new_value_json,
            'operator': self.actor,
            'operate_time': self.occurred_at,
            'remark': self.remark,
        }

    @classmethod
    def from_row(cls, row: dict) -> 'AuditRecord':
        """Rebuild a record from an audit table row."""
        return cls(
            audit_id=row['audit_id'],
            table_name=row['table_name'],
            operation=OperationType(row['operation_type']),
            primary_key_name=row.get('primary_key_name'),
            primary_key_value=row.get('primary_key_value'),
            old_value_json=row.get('old_value'),
            new_value_json=row.get('new_value'),
            actor=row.get('operator') or "SYSTEM",
            occurred_at=row['operate_time'],
            remark=row.get('remark'),
        )


AUDIT_COLUMNS = [
    'audit_id', 'table_name', 'operation_type', 'primary_key_name',
    'primary_key_value', 'old_value', 'new_value', 'operator',
    'operate_time', 'remark',
]


class AuditPage(BaseModel):
    """A page of audit records ordered by occurrence."""

    records: list[AuditRecord] = Field(default_factory=list)
    total: int = Field(0, description="Total number of matching records")
    page: int = Field(0, description="Zero-based page index")
    page_size: int = Field(10, description="Records per page")

    @property
    def has_next(self) -> bool:
        return (self.page + 1) * self.page_size < self.total

    @property
    def has_previous(self) -> bool:
        return self.page > 0


class BufferState(str, Enum):
    """Lifecycle of a transaction buffer."""
    BUFFERING = "BUFFERING"
    FLUSHING = "FLUSHING"
    DISCARDED = "DISCARDED"


@dataclass
class TransactionBuffer:
    """Audit records accumulated for one not-yet-concluded transaction.

    Attributes:
        transaction_id: Identifier of the owning transaction
        records: Records in append order
        listener_registered: Set exactly once, together with buffer creation
        state: Current lifecycle state
    """
    transaction_id: str
    records: list[AuditRecord] = field(default_factory=list)
    listener_registered: bool = False
    state: BufferState = BufferState.BUFFERING

    def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    def drain(self) -> list[AuditRecord]:
        records = list(self.records)
        self.records.clear()
        return records
