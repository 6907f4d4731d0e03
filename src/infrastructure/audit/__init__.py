"""Audit infrastructure components.

This package provides the transactional side of the change-audit pipeline:
the pipeline facade, per-transaction buffering and retried persistence.
"""

from src.infrastructure.audit.change_audit_logger import ChangeAuditLogger
from src.infrastructure.audit.persistence_writer import (
    AuditLogCommittedEvent,
    AuditLogsCommittedEvent,
    AuditWriteFailedEvent,
    PersistenceWriter,
)
from src.infrastructure.audit.transaction_coordinator import TransactionCoordinator

__all__ = [
    'ChangeAuditLogger',
    'PersistenceWriter',
    'TransactionCoordinator',
    'AuditLogCommittedEvent',
    'AuditLogsCommittedEvent',
    'AuditWriteFailedEvent',
]
