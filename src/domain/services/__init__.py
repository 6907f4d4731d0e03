"""Domain Services.

This package contains the pure parts of the change-audit pipeline: snapshot
resolution, audit record building and entity mapping. All I/O goes through
the ports in src.domain.ports.
"""

from src.domain.services.audit_record_builder import AuditRecordBuilder, serialize_snapshot
from src.domain.services.entity_mapper import EntityMapper, EntityMutationDetector
from src.domain.services.row_resolver import RowResolver, extract_predicate_keys, parse_default_literal

__all__ = [
    'AuditRecordBuilder',
    'EntityMapper',
    'EntityMutationDetector',
    'RowResolver',
    'extract_predicate_keys',
    'parse_default_literal',
    'serialize_snapshot',
]
