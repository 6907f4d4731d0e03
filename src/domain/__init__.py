"""Domain layer for txn-audit.

This module contains the change-audit models, ports and pure services.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .cdc_models import (
    PENDING,
    AuditPage,
    AuditRecord,
    ChangeDescriptor,
    ColumnMetadata,
    OperationType,
)

__all__ = [
    "PENDING",
    "AuditPage",
    "AuditRecord",
    "ChangeDescriptor",
    "ColumnMetadata",
    "OperationType",
]
