"""Domain Ports - Abstract Contracts for the Change-Audit Pipeline.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement. Following Hexagonal Architecture, the Domain Core defines what it
needs, not how it's provided.

Security Impact:
    - Audit stores are append-only; no port exposes update or delete
    - Schema introspectors must tolerate unknown tables instead of failing
    - Failures are communicated via Result so the pipeline never raises into
      the business transaction being audited

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, PostgreSQL, SQLAlchemy, ...) implement these ports
    - Domain Core is isolated from catalog, storage and transaction specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar, Union

from src.domain.cdc_models import (
    AuditPage,
    AuditRecord,
    ChangeDescriptor,
    ColumnMetadata,
    OperationType,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The PersistenceWriter relies on this type to decide whether a batch has to
    be retried, without depending on adapter-specific exception classes.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, ResolutionError, etc.)
        error_details: Additional error context

    Example:
        ```python
        result = store.save_all(records)
        if not result.success:
            logger.warning(result.error, extra={"extra_fields": result.error_details})
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class AuditError(Exception):
    """Base exception for all audit-pipeline errors.

    None of these exceptions may escape into the business operation being
    audited; the pipeline facade catches and logs them.
    """
    pass


class DetectionError(AuditError):
    """Raised when a mutation cannot be turned into a ChangeDescriptor.

    Attributes:
        source: Detector or statement that failed
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class ResolutionError(AuditError):
    """Raised when before/after snapshots cannot be resolved.

    Attributes:
        table_name: Table whose snapshot failed
        side: "before" or "after"
    """

    def __init__(self, message: str, table_name: Optional[str] = None, side: Optional[str] = None):
        super().__init__(message)
        self.table_name = table_name
        self.side = side


class StorageError(AuditError):
    """Raised when the audit store or catalog cannot be accessed.

    Attributes:
        operation: Store operation that failed
        details: Additional error context (never contains credentials)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class CoordinatorError(AuditError):
    """Raised when transaction buffering cannot be set up.

    Attributes:
        transaction_id: Transaction whose buffer failed
    """

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


# ============================================================================
# Schema Introspection
# ============================================================================

class SchemaIntrospectorPort(ABC):
    """Abstract contract for reading table metadata and complete rows.

    Implementations query a database catalog. Caching is not their concern:
    the TableMetadataCache wraps an introspector for that.
    """

    @abstractmethod
    def get_table_metadata(self, table_name: str) -> dict[str, ColumnMetadata]:
        """Return column metadata keyed by column name.

        Unknown tables must yield an empty mapping rather than an error.
        """
        pass

    @abstractmethod
    def get_complete_row(self, table_name: str, key_columns: dict[str, Any]) -> dict[str, Any]:
        """Fetch the complete stored row matching every key column.

        Returns:
            Column → value mapping, or an empty mapping when no row matches
        """
        pass

    def get_primary_keys(self, table_name: str) -> list[str]:
        """Dedicated primary-key lookup, consulted when metadata carries no flags.

        The default implementation derives the keys from get_table_metadata().
        """
        return [
            name for name, column in self.get_table_metadata(table_name).items()
            if column.is_primary_key
        ]


# ============================================================================
# Audit Store
# ============================================================================

class AuditStorePort(ABC):
    """Abstract contract for the append-only audit store.

    Writes are idempotent on AuditRecord.audit_id so that a retried batch can
    never duplicate records it already persisted.
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create the audit table, sequence and indexes if missing."""
        pass

    @abstractmethod
    def save(self, record: AuditRecord) -> Result[str]:
        """Persist one audit record.

        Returns:
            Result[str]: The record's audit_id or error
        """
        pass

    @abstractmethod
    def save_all(self, records: Sequence[AuditRecord]) -> Result[int]:
        """Persist records in order, in a single store transaction.

        Returns:
            Result[int]: Number of records handed to the store or error
        """
        pass

    @abstractmethod
    def query(
        self,
        table_name: str,
        start_time: datetime,
        end_time: datetime,
        page: int = 0,
        page_size: int = 10
    ) -> Result[AuditPage]:
        """Page through records of one table, ordered by occurred_at then insertion."""
        pass

    @abstractmethod
    def list_audited_tables(self) -> Result[set[str]]:
        """Return the distinct table names present in the store."""
        pass

    def close(self) -> None:
        """Release connections held by the store."""
        return None


# ============================================================================
# Host Transaction Manager
# ============================================================================

class TransactionStatus(str, Enum):
    """Outcome reported to completion listeners."""
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    UNKNOWN = "UNKNOWN"


CompletionListener = Callable[[TransactionStatus], None]


class TransactionManagerPort(ABC):
    """Commit/rollback notification contract of the host transaction manager."""

    @abstractmethod
    def is_transaction_active(self) -> bool:
        """Whether the ambient execution context is inside a transaction."""
        pass

    @abstractmethod
    def current_transaction_id(self) -> Optional[str]:
        """Stable identifier of the ambient transaction, None outside one."""
        pass

    @abstractmethod
    def register_completion_listener(self, listener: CompletionListener) -> None:
        """Call listener exactly once when the ambient transaction completes.

        Raises:
            CoordinatorError: If no transaction is active
        """
        pass


# ============================================================================
# Mutation Detection
# ============================================================================

class MutationDetectorPort(ABC):
    """Abstract contract for turning an intercepted mutation into a descriptor."""

    @abstractmethod
    def detect(self, target: Any, operation: OperationType) -> Optional[ChangeDescriptor]:
        """Build a ChangeDescriptor, or None if the target is not auditable.

        Raises:
            DetectionError: If the target is malformed
        """
        pass
