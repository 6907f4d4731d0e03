"""Application services built on the audit store."""

from src.services.audit_query_service import AuditQueryService, parse_time_range

__all__ = ["AuditQueryService", "parse_time_range"]
